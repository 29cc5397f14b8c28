from __future__ import annotations

from enum import Enum
from typing import Dict, Optional


class PlaybackProfile(str, Enum):
    """Stream representations, in fallback order."""

    DIRECT = "direct"
    HIGH = "high"
    COMPATIBLE = "compatible"

    @property
    def is_segmented(self) -> bool:
        return self is not PlaybackProfile.DIRECT

    def fallback(self) -> Optional["PlaybackProfile"]:
        if self is PlaybackProfile.DIRECT:
            return PlaybackProfile.HIGH
        if self is PlaybackProfile.HIGH:
            return PlaybackProfile.COMPATIBLE
        return None


# Query parameters for /Videos/{id}/stream (direct) and /Videos/{id}/master.m3u8.
_PROFILE_PARAMS: Dict[PlaybackProfile, Dict[str, str]] = {
    PlaybackProfile.DIRECT: {
        "static": "true",
    },
    # HEVC-first transcode in fMP4 segments; keeps surround audio.
    PlaybackProfile.HIGH: {
        "VideoCodec": "hevc,h264",
        "AudioCodec": "aac,ac3,eac3",
        "SegmentContainer": "mp4",
        "TranscodingMaxAudioChannels": "6",
        "RequireAvc": "false",
        "BreakOnNonKeyFrames": "true",
    },
    # Lowest common denominator: 8-bit H.264 + stereo AAC in MPEG-TS.
    PlaybackProfile.COMPATIBLE: {
        "VideoCodec": "h264",
        "AudioCodec": "aac",
        "SegmentContainer": "ts",
        "TranscodingMaxAudioChannels": "2",
        "RequireAvc": "true",
        "MaxVideoBitDepth": "8",
        "BreakOnNonKeyFrames": "true",
    },
}


def profile_params(profile: PlaybackProfile, *, max_bitrate: Optional[int] = None) -> Dict[str, str]:
    params = dict(_PROFILE_PARAMS[profile])
    # Direct play is the original file; there is no bitrate to negotiate.
    if profile.is_segmented and max_bitrate:
        params["MaxStreamingBitrate"] = str(int(max_bitrate))
        params["VideoBitrate"] = str(int(max_bitrate))
    return params
