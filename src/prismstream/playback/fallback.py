from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from prismstream.errors import NoPlayableRepresentationError
from prismstream.playback.profiles import PlaybackProfile

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Fallback:
    previous: PlaybackProfile
    profile: PlaybackProfile
    resume_position: float


class PlaybackProfileController:
    """direct -> high -> compatible -> failed.

    Each fatal load error moves one step down the chain. Failing at
    ``compatible`` is terminal: the profile stays put, ``failed`` is set and
    every further report raises NoPlayableRepresentationError.
    """

    def __init__(self) -> None:
        self.profile = PlaybackProfile.DIRECT
        self.failed = False
        self.is_retrying = False
        self.error_message: Optional[str] = None

    def start(self) -> PlaybackProfile:
        self.profile = PlaybackProfile.DIRECT
        self.failed = False
        self.is_retrying = False
        self.error_message = None
        return self.profile

    def on_fatal_error(self, position: float, message: Optional[str] = None) -> Fallback:
        if self.failed:
            raise NoPlayableRepresentationError(self.error_message or "Playback failed")

        nxt = self.profile.fallback()
        if nxt is None:
            self.failed = True
            self.is_retrying = False
            self.error_message = message or "Playback failed"
            log.error("no playable representation left after %s: %s", self.profile.value, self.error_message)
            raise NoPlayableRepresentationError(self.error_message)

        prev = self.profile
        self.profile = nxt
        self.is_retrying = True
        log.info("fallback %s -> %s at %.1fs (%s)", prev.value, nxt.value, position, message or "load failed")
        return Fallback(previous=prev, profile=nxt, resume_position=max(0.0, float(position)))

    def on_ready(self) -> None:
        if self.failed:
            return
        self.is_retrying = False
        self.error_message = None
