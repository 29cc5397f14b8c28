import threading
import time

import pytest

from prismstream.errors import DownloadCancelled, NoPlayableRepresentationError
from prismstream.playback.profiles import PlaybackProfile
from prismstream.playback.quality import P480, P720
from prismstream.usecases.stream import StreamSessionCoordinator

from helpers import FakeFetcher

MEDIA_PLAYLIST = "#EXTM3U\n" + "".join(f"#EXTINF:2.0,\nhls/{i}.ts\n" for i in range(100))


class FakeClient:
    def __init__(self):
        self.fetcher = FakeFetcher()
        self.manifest_calls = []
        self.fail_manifest = False
        self.fail_reports = False
        self.block_manifest = False
        self.manifest_release = threading.Event()
        self.manifest_started = threading.Event()
        self.manifest_cancelled = []
        self.reports = []
        self._lock = threading.Lock()

    def stream_url(self, item_id, profile, *, media_source_id=None, max_bitrate=None, play_session_id=None):
        leaf = "master.m3u8" if profile.is_segmented else "stream"
        return f"http://jf.local/Videos/{item_id}/{profile.value}/{leaf}?br={max_bitrate}"

    def fetch_text(self, url, *, cancel=None):
        self.manifest_calls.append(url)
        self.manifest_started.set()
        if self.block_manifest:
            while not self.manifest_release.wait(0.01):
                if cancel is not None and cancel.is_set():
                    self.manifest_cancelled.append(url)
                    raise DownloadCancelled(url)
        if self.fail_manifest:
            raise ConnectionError("manifest unavailable")
        return MEDIA_PLAYLIST

    def fetch_segment(self, url, cancel):
        return self.fetcher(url, cancel)

    def _report(self, kind, item_id, position, **kwargs):
        with self._lock:
            self.reports.append((kind, item_id, position))
        if self.fail_reports:
            raise ConnectionError("catalog down")

    def report_playback_start(self, item_id, position, **kwargs):
        self._report("start", item_id, position)

    def report_playback_progress(self, item_id, position, **kwargs):
        self._report("progress", item_id, position)

    def report_playback_stopped(self, item_id, position, **kwargs):
        self._report("stopped", item_id, position)

    def kinds(self, kind):
        with self._lock:
            return [r for r in self.reports if r[0] == kind]


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def client():
    c = FakeClient()
    yield c
    c.fetcher.release.set()
    c.manifest_release.set()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def coordinator(client, store, clock):
    coord = StreamSessionCoordinator(client, store, clock=clock, checkpoint_interval=10.0)
    yield coord
    coord.close()


def test_start_uses_direct_profile(coordinator, client):
    req = coordinator.start("item1", 30.0)
    assert req.profile is PlaybackProfile.DIRECT
    assert req.url.endswith("/direct/stream?br=None")
    assert req.resume_position == 30.0
    assert wait_for(lambda: client.kinds("start") == [("start", "item1", 30.0)])


def test_direct_session_never_caches(coordinator, client, store):
    coordinator.start("item1")
    for t in (0.0, 1.0, 2.0):
        coordinator.on_playback_time(t)
    assert coordinator.flush(5)
    assert client.fetcher.calls == []
    assert client.manifest_calls == []
    assert store.cached_keys() == set()


def test_direct_ranges_come_from_player(coordinator):
    states = []
    coordinator.subscribe(states.append)
    coordinator.start("item1")
    coordinator.report_loaded_ranges([(0.0, 4.0), (4.2, 9.0), (20.0, 25.0)])
    assert coordinator.buffered_ranges == [(0.0, 9.0), (20.0, 25.0)]
    assert states[-1].buffered_ranges == ((0.0, 9.0), (20.0, 25.0))


def test_fallback_chain_resumes_at_failure_position(coordinator):
    coordinator.start("item1", 30.0)
    coordinator.on_playback_time(45.0)

    high = coordinator.report_fatal_error("format not supported")
    assert high.profile is PlaybackProfile.HIGH
    assert high.resume_position == 45.0
    assert "/high/master.m3u8" in high.url

    coordinator.on_playback_time(50.0)
    compatible = coordinator.report_fatal_error()
    assert compatible.profile is PlaybackProfile.COMPATIBLE
    assert compatible.resume_position == 50.0

    with pytest.raises(NoPlayableRepresentationError):
        coordinator.report_fatal_error("still broken")
    state = coordinator.state()
    assert state.profile is PlaybackProfile.COMPATIBLE
    assert state.error_message == "still broken"
    assert not state.is_active


def test_fallback_without_ticks_resumes_at_start_position(coordinator):
    coordinator.start("item1", 12.0)
    assert coordinator.report_fatal_error().resume_position == 12.0


def test_hls_session_prefetches_and_publishes_ranges(coordinator, client, store):
    states = []
    coordinator.subscribe(states.append)
    coordinator.start("item1")
    coordinator.on_playback_time(45.0)
    coordinator.report_fatal_error()

    assert wait_for(lambda: coordinator.state().buffered_ranges == ((44.0, 200.0),))
    assert client.manifest_calls == ["http://jf.local/Videos/item1/high/master.m3u8?br=None"]
    assert len(store.cached_keys()) == 78
    assert any(s.buffered_ranges == ((44.0, 200.0),) for s in states)


def test_ready_clears_retry_indicator(coordinator):
    coordinator.start("item1")
    coordinator.report_fatal_error()
    assert coordinator.state().is_retrying
    coordinator.report_ready()
    state = coordinator.state()
    assert not state.is_retrying
    assert state.profile is PlaybackProfile.HIGH


def test_new_session_tears_down_previous(coordinator, client, store):
    client.fetcher.block_all = True
    coordinator.start("item1")
    coordinator.report_fatal_error()
    assert wait_for(lambda: coordinator.session.playlist is not None)
    coordinator.on_playback_time(10.0)
    assert wait_for(lambda: len(client.fetcher.calls) > 0)

    store.write("http://jf.local/leftover.ts", b"x")
    req = coordinator.start("item2")

    assert req.profile is PlaybackProfile.DIRECT
    assert coordinator.session.item_id == "item2"
    assert store.cached_keys() == set()
    assert coordinator.scheduler.in_flight() == set()
    assert coordinator.scheduler.playlist is None
    assert wait_for(lambda: len(client.fetcher.cancelled) > 0)
    assert wait_for(lambda: client.kinds("stopped") == [("stopped", "item1", 10.0)])


def test_stop_clears_everything(coordinator, client, store):
    coordinator.start("item1")
    coordinator.report_fatal_error()
    assert wait_for(lambda: len(store.cached_keys()) > 0)

    coordinator.stop()

    assert coordinator.session is None
    assert store.cached_keys() == set()
    assert coordinator.buffered_ranges == []
    assert not coordinator.state().is_active
    assert wait_for(lambda: len(client.kinds("stopped")) == 1)


def test_ticks_after_stop_are_ignored(coordinator, client):
    coordinator.start("item1")
    coordinator.stop()
    coordinator.on_playback_time(5.0)
    assert coordinator.flush(5)
    assert client.kinds("progress") == []


def test_checkpoints_follow_interval(coordinator, client, clock):
    coordinator.start("item1")
    coordinator.on_playback_time(1.0)
    clock.now += 5
    coordinator.on_playback_time(6.0)
    clock.now += 5
    coordinator.on_playback_time(11.0)
    assert wait_for(lambda: len(client.kinds("progress")) == 2)
    assert sorted(r[2] for r in client.kinds("progress")) == [1.0, 11.0]


def test_checkpoint_failure_is_not_fatal(coordinator, client):
    client.fail_reports = True
    coordinator.start("item1")
    coordinator.on_playback_time(1.0)
    assert wait_for(lambda: len(client.kinds("progress")) == 1)
    assert coordinator.state().is_active
    assert coordinator.state().error_message is None


def test_manifest_failure_retried_on_later_tick(coordinator, client, clock):
    client.fail_manifest = True
    coordinator.start("item1")
    coordinator.report_fatal_error()
    assert wait_for(lambda: coordinator._manifest_failed_at is not None)

    client.fail_manifest = False
    coordinator.on_playback_time(1.0)
    assert coordinator.flush(5)
    assert len(client.manifest_calls) == 1

    clock.now += 6
    coordinator.on_playback_time(2.0)
    assert wait_for(lambda: coordinator.session.playlist is not None)
    assert len(client.manifest_calls) == 2


def test_change_quality(coordinator, client):
    coordinator.start("item1", 5.0)
    assert coordinator.change_quality(P720) is None

    coordinator.report_fatal_error()
    coordinator.on_playback_time(33.0)
    req = coordinator.change_quality(P480)
    assert req.profile is PlaybackProfile.HIGH
    assert req.resume_position == 33.0
    assert req.url.endswith("br=1500000")


def test_constructor_purges_stale_cache(client, store, clock):
    store.write("http://jf.local/old.ts", b"x")
    coord = StreamSessionCoordinator(client, store, clock=clock)
    try:
        assert not store.exists("http://jf.local/old.ts")
    finally:
        coord.close()


def test_fallback_ignores_zero_tick_before_initial_seek(coordinator):
    coordinator.start("item1", 100.0)
    coordinator.on_playback_time(0.0)
    req = coordinator.report_fatal_error()
    assert req.profile is PlaybackProfile.HIGH
    assert req.resume_position == 100.0


def test_first_prefetch_tick_uses_resume_point(coordinator, client):
    client.block_manifest = True
    coordinator.start("item1", 100.0)
    coordinator.report_fatal_error()
    assert client.manifest_started.wait(5)
    coordinator.on_playback_time(0.0)
    assert coordinator.flush(5)

    client.manifest_release.set()
    assert wait_for(lambda: coordinator.state().buffered_ranges == ((100.0, 200.0),))


def test_change_quality_after_exhausted_fallback_is_ignored(coordinator, client, store):
    coordinator.start("item1")
    coordinator.report_fatal_error()
    coordinator.report_fatal_error()
    with pytest.raises(NoPlayableRepresentationError):
        coordinator.report_fatal_error()
    url = coordinator.session.stream_url

    store.write("http://jf.local/kept.ts", b"x")
    assert coordinator.change_quality(P480) is None

    assert store.exists("http://jf.local/kept.ts")
    assert coordinator.session.stream_url == url
    assert coordinator.session.quality != P480
    assert not any("br=1500000" in u for u in client.manifest_calls)


def test_stop_aborts_running_manifest_fetch(coordinator, client):
    client.block_manifest = True
    coordinator.start("item1")
    coordinator.report_fatal_error()
    assert client.manifest_started.wait(5)

    coordinator.stop()

    assert wait_for(lambda: len(client.manifest_cancelled) == 1)
    assert coordinator.session is None
