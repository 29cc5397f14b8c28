import threading
from typing import Dict, Iterable, List, Set

from prismstream.errors import DownloadCancelled
from prismstream.hls.playlist import Playlist, Segment
from prismstream.hls.store import SegmentStore


def make_playlist(count: int, duration: float = 2.0, base: str = "http://media.local/seg") -> Playlist:
    segs = tuple(
        Segment(url=f"{base}/{i}.ts", start_time=i * duration, duration=duration)
        for i in range(count)
    )
    return Playlist(url=f"{base}/main.m3u8", segments=segs)


def fill(store: SegmentStore, playlist: Playlist, indexes: Iterable[int]) -> None:
    for i in indexes:
        assert store.write(playlist.segments[i].url, b"x")


def cached_indexes(store: SegmentStore, playlist: Playlist) -> List[int]:
    return [i for i, s in enumerate(playlist.segments) if store.exists(s.url)]


class FakeFetcher:
    """Stands in for JellyfinClient.fetch_segment.

    URLs in ``block`` wait for ``release`` (or cancellation) before returning;
    URLs in ``fail`` raise.
    """

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.block: Set[str] = set()
        self.block_all = False
        self.fail: Set[str] = set()
        self.release = threading.Event()
        self.started: Dict[str, threading.Event] = {}
        self.cancelled: List[str] = []
        self._lock = threading.Lock()

    def started_event(self, url: str) -> threading.Event:
        with self._lock:
            return self.started.setdefault(url, threading.Event())

    def __call__(self, url: str, cancel: threading.Event) -> bytes:
        with self._lock:
            self.calls.append(url)
        self.started_event(url).set()
        if self.block_all or url in self.block:
            while not self.release.is_set():
                if cancel.wait(0.01):
                    with self._lock:
                        self.cancelled.append(url)
                    raise DownloadCancelled(url)
        if url in self.fail:
            raise ConnectionError(f"boom: {url}")
        return f"payload:{url}".encode()
