from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class VideoQuality:
    id: str
    name: str
    bitrate: Optional[int] = None  # None = original / uncapped

    @property
    def height(self) -> int:
        try:
            return int(self.id.rstrip("p"))
        except ValueError:
            return 0


AUTO = VideoQuality(id="auto", name="Auto", bitrate=None)
P1080 = VideoQuality(id="1080p", name="1080p - 10 Mbps", bitrate=10_000_000)
P720 = VideoQuality(id="720p", name="720p - 4 Mbps", bitrate=4_000_000)
P480 = VideoQuality(id="480p", name="480p - 1.5 Mbps", bitrate=1_500_000)
P360 = VideoQuality(id="360p", name="360p - 0.7 Mbps", bitrate=700_000)

PRESETS = [P1080, P720, P480, P360]


def quality_by_id(quality_id: str) -> VideoQuality:
    for q in [AUTO] + PRESETS:
        if q.id == quality_id:
            return q
    return AUTO


def _primary_video_stream(item: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    sources = item.get("MediaSources") or []
    if not sources:
        return None
    for stream in sources[0].get("MediaStreams") or []:
        if stream.get("Type") == "Video":
            return stream
    return None


def available_qualities(item: Dict[str, Any]) -> List[VideoQuality]:
    """Original plus every preset that is actually a step down from the source."""
    source_bitrate = 2**63 - 1
    source_height = 1080
    name = "Original"

    video = _primary_video_stream(item)
    if video is not None:
        bitrate = video.get("BitRate")
        height = video.get("Height")
        source_bitrate = int(bitrate) if bitrate else 100_000_000
        source_height = int(height) if height else 1080
        resolution = f"{height}p" if height else "Source"
        rate = f"{int(bitrate) // 1_000_000} Mbps" if bitrate else "Direct"
        name = f"Original ({resolution} - {rate})"

    out = [VideoQuality(id="auto", name=name, bitrate=None)]
    for preset in PRESETS:
        if preset.bitrate is None or preset.bitrate >= source_bitrate:
            continue
        if preset.height == 0 or preset.height <= source_height:
            out.append(preset)
    return out
