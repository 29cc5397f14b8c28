from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple

from prismstream.api.client import JellyfinClient
from prismstream.config import Settings
from prismstream.errors import DownloadCancelled, NoPlayableRepresentationError
from prismstream.hls.playlist import Playlist
from prismstream.hls.prefetch import PrefetchScheduler
from prismstream.hls.ranges import BufferRangeTracker, Range, coalesce_ranges
from prismstream.hls.store import SegmentStore
from prismstream.hls.variants import load_media_playlist
from prismstream.playback.fallback import PlaybackProfileController
from prismstream.playback.profiles import PlaybackProfile
from prismstream.playback.quality import AUTO, VideoQuality

log = logging.getLogger(__name__)

MANIFEST_RETRY_SECONDS = 5.0


@dataclass(frozen=True)
class StreamRequest:
    """What the external player should load next."""

    item_id: str
    profile: PlaybackProfile
    url: str
    resume_position: float


@dataclass
class StreamSession:
    item_id: str
    media_source_id: Optional[str]
    profile: PlaybackProfile
    quality: VideoQuality = AUTO
    play_session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stream_url: str = ""
    playlist: Optional[Playlist] = None
    # Where the current load was asked to begin; players tick 0 before their
    # initial seek lands.
    start_position: float = 0.0
    last_known_position: float = 0.0
    is_active: bool = True

    def resume_point(self) -> float:
        if self.last_known_position > 0:
            return self.last_known_position
        return self.start_position


@dataclass(frozen=True)
class PlaybackState:
    item_id: Optional[str] = None
    profile: Optional[PlaybackProfile] = None
    stream_url: Optional[str] = None
    buffered_ranges: Tuple[Range, ...] = ()
    is_retrying: bool = False
    error_message: Optional[str] = None
    is_active: bool = False


StateListener = Callable[[PlaybackState], None]


class StreamSessionCoordinator:
    """Owns the single active playback session.

    The external player drives it with on_playback_time(), report_ready(),
    report_fatal_error() and (for direct play) report_loaded_ranges(); UI code
    observes it through subscribe().
    """

    def __init__(
        self,
        client: JellyfinClient,
        store: SegmentStore,
        *,
        scheduler: Optional[PrefetchScheduler] = None,
        lookahead: float = 600.0,
        cleanup: float = 300.0,
        tolerance: float = 0.5,
        max_workers: int = 8,
        checkpoint_interval: float = 10.0,
        progress: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        purge_on_start: bool = True,
    ) -> None:
        self.client = client
        self.store = store
        self.controller = PlaybackProfileController()
        self.tolerance = tolerance
        self.scheduler = scheduler or PrefetchScheduler(
            store,
            client.fetch_segment,
            lookahead=lookahead,
            cleanup=cleanup,
            max_workers=max_workers,
            tracker=BufferRangeTracker(store, tolerance=tolerance),
        )
        self.checkpoint_interval = float(checkpoint_interval)
        self.session: Optional[StreamSession] = None

        self._progress = progress
        self._clock = clock
        self._lock = threading.RLock()
        self._listeners: List[StateListener] = []
        self._ranges: List[Range] = []
        self._last_checkpoint: Optional[float] = None

        self._manifest_future: Optional[Future] = None
        self._manifest_cancel: Optional[threading.Event] = None
        self._manifest_failed_at: Optional[float] = None

        # Ticks are coalesced: only the newest pending position is processed.
        self._tick_cond = threading.Condition()
        self._pending_tick: Optional[float] = None
        self._tick_running = False

        self._tick_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="prismstream-tick")
        self._io_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="prismstream-io")

        self._unsubscribe_ranges = self.scheduler.subscribe(self._on_cache_ranges)

        if purge_on_start:
            store.purge_stale()

    @classmethod
    def from_settings(cls, client: JellyfinClient, settings: Settings, **kwargs) -> "StreamSessionCoordinator":
        store = SegmentStore(settings.segment_cache_dir())
        kwargs.setdefault("lookahead", settings.lookahead_seconds)
        kwargs.setdefault("cleanup", settings.cleanup_seconds)
        kwargs.setdefault("tolerance", settings.merge_tolerance)
        kwargs.setdefault("max_workers", settings.max_download_workers)
        kwargs.setdefault("checkpoint_interval", settings.checkpoint_interval)
        return cls(client, store, **kwargs)

    # -- observers -------------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def state(self) -> PlaybackState:
        session = self.session
        if session is None:
            return PlaybackState(
                is_retrying=self.controller.is_retrying,
                error_message=self.controller.error_message,
            )
        return PlaybackState(
            item_id=session.item_id,
            profile=session.profile,
            stream_url=session.stream_url,
            buffered_ranges=tuple(self._ranges),
            is_retrying=self.controller.is_retrying,
            error_message=self.controller.error_message,
            is_active=session.is_active,
        )

    def _publish(self) -> None:
        snapshot = self.state()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                log.exception("playback state listener failed")

    def _say(self, msg: str) -> None:
        log.info(msg)
        try:
            if self._progress:
                self._progress(msg)
        except Exception:
            pass

    # -- lifecycle -------------------------------------------------------

    def start(
        self,
        item_id: str,
        resume_position: float = 0.0,
        *,
        media_source_id: Optional[str] = None,
        quality: Optional[VideoQuality] = None,
    ) -> StreamRequest:
        resume = max(0.0, float(resume_position or 0.0))
        with self._lock:
            self._teardown()
            profile = self.controller.start()
            session = StreamSession(
                item_id=item_id,
                media_source_id=media_source_id,
                profile=profile,
                quality=quality or AUTO,
                last_known_position=resume,
            )
            self.session = session
            request = self._load(session, resume)
            self._best_effort(
                "playback start",
                self.client.report_playback_start,
                item_id,
                resume,
                media_source_id=media_source_id,
                play_session_id=session.play_session_id,
                play_method=self._play_method(profile),
            )
        self._say(f"starting {item_id} ({profile.value}) at {resume:.1f}s")
        self._publish()
        return request

    def stop(self) -> None:
        with self._lock:
            self._teardown()
        self._publish()

    def close(self) -> None:
        self.stop()
        self._unsubscribe_ranges()
        self.scheduler.shutdown()
        self._tick_pool.shutdown(wait=False, cancel_futures=True)
        # Let the final "stopped" checkpoint go out.
        self._io_pool.shutdown(wait=True)

    def _teardown(self) -> None:
        session = self.session
        self.session = None
        with self._tick_cond:
            self._pending_tick = None
        self._cancel_manifest()
        self._manifest_failed_at = None
        self.scheduler.reset()
        self.store.clear()
        self._ranges = []
        self._last_checkpoint = None

        if session is None:
            return
        session.is_active = False
        self._best_effort(
            "playback stopped",
            self.client.report_playback_stopped,
            session.item_id,
            session.last_known_position,
            media_source_id=session.media_source_id,
            play_session_id=session.play_session_id,
            play_method=self._play_method(session.profile),
        )
        log.info("tore down session for %s at %.1fs", session.item_id, session.last_known_position)

    @staticmethod
    def _play_method(profile: PlaybackProfile) -> str:
        return "DirectPlay" if profile is PlaybackProfile.DIRECT else "Transcode"

    def _load(self, session: StreamSession, resume_position: float) -> StreamRequest:
        max_bitrate = session.quality.bitrate if session.profile.is_segmented else None
        url = self.client.stream_url(
            session.item_id,
            session.profile,
            media_source_id=session.media_source_id,
            max_bitrate=max_bitrate,
            play_session_id=session.play_session_id,
        )
        session.stream_url = url
        session.playlist = None
        session.start_position = resume_position
        session.last_known_position = resume_position
        self._ranges = []
        if session.profile.is_segmented:
            self._request_manifest(session)
        log.debug("loading %s with profile %s: %s", session.item_id, session.profile.value, url)
        return StreamRequest(
            item_id=session.item_id,
            profile=session.profile,
            url=url,
            resume_position=resume_position,
        )

    # -- manifest --------------------------------------------------------

    def _cancel_manifest(self) -> None:
        if self._manifest_cancel is not None:
            self._manifest_cancel.set()
            self._manifest_cancel = None
        if self._manifest_future is not None:
            self._manifest_future.cancel()
            self._manifest_future = None

    def _request_manifest(self, session: StreamSession) -> None:
        self._cancel_manifest()
        url = session.stream_url
        max_bitrate = session.quality.bitrate
        cancel = threading.Event()
        try:
            self._manifest_future = self._io_pool.submit(self._load_manifest, session, url, max_bitrate, cancel)
        except RuntimeError:
            log.debug("io pool closed; manifest for %s not requested", session.item_id)
            return
        self._manifest_cancel = cancel

    def _load_manifest(
        self,
        session: StreamSession,
        url: str,
        max_bitrate: Optional[int],
        cancel: threading.Event,
    ) -> None:
        def fetch_text(u: str) -> str:
            return self.client.fetch_text(u, cancel=cancel)

        try:
            playlist = load_media_playlist(fetch_text, url, max_bitrate=max_bitrate)
        except DownloadCancelled:
            log.debug("manifest fetch cancelled for %s", session.item_id)
            return
        except Exception as exc:
            if cancel.is_set():
                return
            log.warning("manifest fetch failed for %s: %s", session.item_id, exc)
            with self._lock:
                if self.session is session and session.stream_url == url:
                    self._manifest_failed_at = self._clock()
            return

        with self._lock:
            if self.session is not session or session.stream_url != url:
                return
            session.playlist = playlist
            self._manifest_failed_at = None
            self.scheduler.set_playlist(playlist)
            position = session.resume_point()
        log.info(
            "playlist for %s: %d segments, %.1fs",
            session.item_id,
            len(playlist),
            playlist.total_duration,
        )
        self._submit_tick(position)

    def _maybe_retry_manifest(self, session: StreamSession) -> None:
        failed_at = self._manifest_failed_at
        if session.playlist is not None or failed_at is None:
            return
        if self._clock() - failed_at < MANIFEST_RETRY_SECONDS:
            return
        with self._lock:
            if self.session is not session or self._manifest_failed_at != failed_at:
                return
            self._manifest_failed_at = None
            self._request_manifest(session)

    # -- position ticks --------------------------------------------------

    def on_playback_time(self, t: float) -> None:
        session = self.session
        if session is None or not session.is_active:
            return
        session.last_known_position = float(t)
        if session.profile.is_segmented:
            self._submit_tick(float(t))
        self._maybe_checkpoint(session, float(t))

    def _submit_tick(self, t: float) -> None:
        with self._tick_cond:
            self._pending_tick = t
            if self._tick_running:
                return
            self._tick_running = True
        try:
            self._tick_pool.submit(self._drain_ticks)
        except RuntimeError:
            with self._tick_cond:
                self._tick_running = False
                self._tick_cond.notify_all()

    def _drain_ticks(self) -> None:
        while True:
            with self._tick_cond:
                t = self._pending_tick
                self._pending_tick = None
                if t is None:
                    self._tick_running = False
                    self._tick_cond.notify_all()
                    return
            session = self.session
            if session is None or not session.profile.is_segmented:
                continue
            try:
                self._maybe_retry_manifest(session)
                self.scheduler.on_playback_time(t)
            except Exception:
                log.exception("prefetch tick at %.1fs failed", t)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until queued ticks have been processed (not their downloads)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._tick_cond:
            while self._tick_running or self._pending_tick is not None:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._tick_cond.wait(remaining)
        return True

    def _maybe_checkpoint(self, session: StreamSession, t: float) -> None:
        now = self._clock()
        last = self._last_checkpoint
        if last is not None and now - last < self.checkpoint_interval:
            return
        self._last_checkpoint = now
        self._best_effort(
            "playback progress",
            self.client.report_playback_progress,
            session.item_id,
            t,
            media_source_id=session.media_source_id,
            play_session_id=session.play_session_id,
            play_method=self._play_method(session.profile),
        )

    def _best_effort(self, label: str, fn: Callable, *args, **kwargs) -> None:
        def run() -> None:
            try:
                fn(*args, **kwargs)
            except Exception as exc:
                log.warning("%s report failed: %s", label, exc)

        try:
            self._io_pool.submit(run)
        except RuntimeError:
            log.debug("io pool closed; %s report dropped", label)

    # -- buffered ranges -------------------------------------------------

    def _on_cache_ranges(self, ranges: List[Range]) -> None:
        session = self.session
        if session is None or not session.profile.is_segmented:
            return
        self._ranges = list(ranges)
        self._publish()

    def report_loaded_ranges(self, ranges: Iterable[Range]) -> None:
        """Player-side loaded ranges; only used for direct play, which has no cache."""
        session = self.session
        if session is None or session.profile.is_segmented:
            return
        self._ranges = coalesce_ranges(ranges, self.tolerance)
        self._publish()

    @property
    def buffered_ranges(self) -> List[Range]:
        return list(self._ranges)

    # -- player status ---------------------------------------------------

    def report_ready(self) -> None:
        self.controller.on_ready()
        self._publish()

    def report_fatal_error(self, message: Optional[str] = None) -> Optional[StreamRequest]:
        with self._lock:
            session = self.session
            if session is None:
                log.warning("fatal error reported with no active session: %s", message)
                return None
            position = session.resume_point()
            try:
                fb = self.controller.on_fatal_error(position, message)
            except NoPlayableRepresentationError:
                session.is_active = False
                with self._tick_cond:
                    self._pending_tick = None
                self._cancel_manifest()
                self.scheduler.reset()
                self.store.clear()
                self._ranges = []
                self._say(f"no playable representation for {session.item_id}")
                self._publish()
                raise

            self.scheduler.reset()
            self.store.clear()
            session.profile = fb.profile
            request = self._load(session, fb.resume_position)
        self._say(f"{fb.previous.value} failed; retrying as {fb.profile.value} from {fb.resume_position:.1f}s")
        self._publish()
        return request

    def change_quality(self, quality: VideoQuality) -> Optional[StreamRequest]:
        """Apply a bitrate cap. Direct play ignores it until a fallback happens."""
        with self._lock:
            session = self.session
            if session is None or not session.is_active or self.controller.failed:
                return None
            if session.quality == quality:
                return None
            session.quality = quality
            if not session.profile.is_segmented:
                return None
            self.scheduler.reset()
            self.store.clear()
            request = self._load(session, session.resume_point())
        self._say(f"quality -> {quality.name}")
        self._publish()
        return request
