from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from prismstream.errors import DownloadCancelled
from prismstream.hls.playlist import Playlist, Segment
from prismstream.hls.ranges import BufferRangeTracker, Range
from prismstream.hls.store import SegmentStore, cache_key

log = logging.getLogger(__name__)

# fetch(url, cancel) -> payload; expected to raise DownloadCancelled once
# cancel is set.
Fetcher = Callable[[str, threading.Event], bytes]
RangesListener = Callable[[List[Range]], None]

DEFAULT_LOOKAHEAD = 10 * 60.0
DEFAULT_CLEANUP = 5 * 60.0


@dataclass
class TickResult:
    position: float
    dispatched: List[Segment] = field(default_factory=list)
    evicted: List[Segment] = field(default_factory=list)
    ranges: List[Range] = field(default_factory=list)


@dataclass
class _InFlight:
    future: Future
    cancel: threading.Event


class PrefetchScheduler:
    """Keeps the store filled ahead of the playhead and trimmed behind it.

    on_playback_time() only dispatches work; downloads run on a thread pool and
    report back into the store. reset() cancels them outright.
    """

    def __init__(
        self,
        store: SegmentStore,
        fetch: Fetcher,
        *,
        lookahead: float = DEFAULT_LOOKAHEAD,
        cleanup: float = DEFAULT_CLEANUP,
        max_workers: int = 8,
        tracker: Optional[BufferRangeTracker] = None,
    ) -> None:
        self.store = store
        self.lookahead = float(lookahead)
        self.cleanup = float(cleanup)
        self.tracker = tracker or BufferRangeTracker(store)
        self._fetch = fetch
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="prismstream-segment")
        self._lock = threading.Lock()
        self._in_flight: Dict[str, _InFlight] = {}
        self._playlist: Optional[Playlist] = None
        self._generation = 0
        self._ranges: List[Range] = []
        self._listeners: List[RangesListener] = []
        self._closed = False

    @property
    def playlist(self) -> Optional[Playlist]:
        return self._playlist

    @property
    def buffered_ranges(self) -> List[Range]:
        return list(self._ranges)

    def set_playlist(self, playlist: Optional[Playlist]) -> None:
        with self._lock:
            self._playlist = playlist

    def in_flight(self) -> Set[str]:
        with self._lock:
            return set(self._in_flight)

    def subscribe(self, listener: RangesListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def on_playback_time(self, t: float) -> TickResult:
        result = TickResult(position=t)
        playlist = self._playlist
        if playlist is None or self._closed:
            return result

        window_end = t + self.lookahead
        threshold = t - self.cleanup
        cached = self.store.cached_keys()

        with self._lock:
            if self._playlist is not playlist:
                # Swapped or reset while we were listing the cache.
                return result
            generation = self._generation
            epoch = self.store.epoch
            for seg in playlist.in_window(t, window_end):
                if seg.url in self._in_flight or cache_key(seg.url) in cached:
                    continue
                cancel = threading.Event()
                try:
                    fut = self._executor.submit(self._download, seg, generation, epoch, cancel)
                except RuntimeError:
                    # Pool already shut down.
                    break
                self._in_flight[seg.url] = _InFlight(future=fut, cancel=cancel)
                result.dispatched.append(seg)

            stale = [] if threshold <= 0 else playlist.ended_before(threshold)
            for seg in stale:
                entry = self._in_flight.get(seg.url)
                if entry is not None and not seg.overlaps(t, window_end):
                    del self._in_flight[seg.url]
                    entry.cancel.set()
                    entry.future.cancel()

        for seg in stale:
            # A mis-ordered playlist can put a "stale" segment inside the window.
            if seg.overlaps(t, window_end):
                continue
            if cache_key(seg.url) in cached and self.store.delete(seg.url):
                result.evicted.append(seg)

        if result.dispatched:
            log.debug("t=%.1f dispatched %d segment downloads", t, len(result.dispatched))
        if result.evicted:
            log.debug("t=%.1f evicted %d segments", t, len(result.evicted))

        result.ranges = self._refresh_ranges(playlist)
        return result

    def _download(self, seg: Segment, generation: int, epoch: int, cancel: threading.Event) -> bool:
        ok = False
        try:
            if cancel.is_set():
                return False
            data = self._fetch(seg.url, cancel)
            if cancel.is_set() or generation != self._generation:
                return False
            ok = self.store.write(seg.url, data, epoch=epoch)
            return ok
        except DownloadCancelled:
            log.debug("download cancelled: %s", seg.url)
            return False
        except Exception as exc:
            # Left uncached; the next tick retries it if still in the window.
            log.warning("segment download failed for %s: %s", seg.url, exc)
            return False
        finally:
            with self._lock:
                entry = self._in_flight.get(seg.url)
                if entry is not None and entry.cancel is cancel:
                    del self._in_flight[seg.url]
            if ok and generation == self._generation:
                self._refresh_ranges(self._playlist)

    def _refresh_ranges(self, playlist: Optional[Playlist]) -> List[Range]:
        ranges = self.tracker.compute(playlist)
        self._ranges = ranges
        for listener in list(self._listeners):
            try:
                listener(list(ranges))
            except Exception:
                log.exception("buffered-range listener failed")
        return ranges

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the downloads dispatched so far have finished."""
        with self._lock:
            futures = [e.future for e in self._in_flight.values()]
        if not futures:
            return True
        _, pending = wait(futures, timeout=timeout)
        return not pending

    def reset(self) -> None:
        with self._lock:
            self._generation += 1
            entries = list(self._in_flight.values())
            self._in_flight.clear()
            self._playlist = None
        for entry in entries:
            entry.cancel.set()
            entry.future.cancel()
        if entries:
            log.debug("reset cancelled %d in-flight downloads", len(entries))
        self._refresh_ranges(None)

    def shutdown(self) -> None:
        self.reset()
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)
