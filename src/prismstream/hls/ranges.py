from __future__ import annotations

from typing import Iterable, List, Optional, Tuple

from prismstream.hls.playlist import Playlist
from prismstream.hls.store import SegmentStore, cache_key

Range = Tuple[float, float]

DEFAULT_TOLERANCE = 0.5


def coalesce_ranges(spans: Iterable[Range], tolerance: float = DEFAULT_TOLERANCE) -> List[Range]:
    """Merge spans into a minimal ordered list of disjoint closed ranges.

    Spans whose gap is within ``tolerance`` are joined so encoder rounding
    doesn't split the buffer bar into slivers.
    """
    out: List[Range] = []
    for start, end in sorted((s, e) for s, e in spans if e >= s):
        if out and start <= out[-1][1] + tolerance:
            last_start, last_end = out[-1]
            out[-1] = (last_start, max(last_end, end))
        else:
            out.append((start, end))
    return out


class BufferRangeTracker:
    """Buffered ranges derived from which playlist segments sit in the store."""

    def __init__(self, store: SegmentStore, *, tolerance: float = DEFAULT_TOLERANCE) -> None:
        self.store = store
        self.tolerance = tolerance
        self._keyed: Optional[Playlist] = None
        self._keys: List[str] = []

    def _keys_for(self, playlist: Playlist) -> List[str]:
        # Playlists are immutable snapshots, so keys only change on a swap.
        if playlist is not self._keyed:
            self._keys = [cache_key(seg.url) for seg in playlist.segments]
            self._keyed = playlist
        return self._keys

    def compute(self, playlist: Optional[Playlist]) -> List[Range]:
        if playlist is None or not playlist.segments:
            return []
        cached = self.store.cached_keys()
        if not cached:
            return []
        keys = self._keys_for(playlist)
        spans = [
            (seg.start_time, seg.end_time)
            for seg, key in zip(playlist.segments, keys)
            if key in cached
        ]
        return coalesce_ranges(spans, self.tolerance)
