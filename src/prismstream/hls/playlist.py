from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlparse

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Segment:
    url: str
    start_time: float
    duration: float

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def overlaps(self, start: float, end: float) -> bool:
        """True if [start_time, end_time) intersects [start, end)."""
        return self.end_time > start and self.start_time < end


@dataclass(frozen=True)
class Playlist:
    url: str
    segments: Tuple[Segment, ...] = field(default_factory=tuple)

    @property
    def total_duration(self) -> float:
        return math.fsum(s.duration for s in self.segments)

    def __len__(self) -> int:
        return len(self.segments)

    def in_window(self, start: float, end: float) -> List[Segment]:
        return [s for s in self.segments if s.overlaps(start, end)]

    def ended_before(self, t: float) -> List[Segment]:
        return [s for s in self.segments if s.end_time < t]


def _parse_extinf(line: str) -> float:
    # Format: #EXTINF:<duration>,[<title>]
    raw = line.split(":", 1)[1].split(",", 1)[0].strip()
    try:
        dur = float(raw)
    except ValueError:
        return 0.0
    if not math.isfinite(dur) or dur < 0:
        return 0.0
    return dur


def resolve_uri(uri: str, base_url: str) -> Optional[str]:
    """Resolve a playlist URI against the playlist's own URL.

    Returns None when the result isn't a fetchable http(s)/file URL.
    """
    if any(c.isspace() for c in uri):
        return None
    try:
        resolved = urljoin(base_url, uri)
        parsed = urlparse(resolved)
    except ValueError:
        return None
    if parsed.scheme in ("http", "https") and parsed.netloc:
        return resolved
    if parsed.scheme == "file" and parsed.path:
        return resolved
    return None


def is_master_playlist(text: str) -> bool:
    return "#EXT-X-STREAM-INF" in text


def parse_playlist(text: str, url: str) -> Playlist:
    segments: List[Segment] = []
    running = 0.0
    pending = 0.0

    for line in text.splitlines():
        s = line.strip()
        if not s:
            continue
        if s.startswith("#EXTINF:"):
            pending = _parse_extinf(s)
            continue
        if s.startswith("#"):
            continue

        seg_url = resolve_uri(s, url)
        if seg_url is None:
            log.debug("dropping unresolvable segment uri %r", s)
        else:
            segments.append(Segment(url=seg_url, start_time=running, duration=pending))
            running += pending
        pending = 0.0

    log.debug("parsed %d segments, total duration %.3fs", len(segments), running)
    return Playlist(url=url, segments=tuple(segments))
