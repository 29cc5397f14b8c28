from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from prismstream.hls.playlist import Playlist, is_master_playlist, parse_playlist, resolve_uri

log = logging.getLogger(__name__)

_BANDWIDTH_RE = re.compile(r"(?:^|[:,])BANDWIDTH=(\d+)")


@dataclass
class VariantSelection:
    master_url: str
    variant_url: str
    bandwidth: Optional[int] = None


def list_variants(text: str, master_url: str) -> List[Tuple[Optional[int], str]]:
    lines = text.splitlines()
    out: List[Tuple[Optional[int], str]] = []
    for i, line in enumerate(lines):
        if not line.startswith("#EXT-X-STREAM-INF"):
            continue
        bw: Optional[int] = None
        m = _BANDWIDTH_RE.search(line)
        if m:
            bw = int(m.group(1))
        for nxt in lines[i + 1:]:
            s = nxt.strip()
            if not s or s.startswith("#"):
                continue
            url = resolve_uri(s, master_url)
            if url:
                out.append((bw, url))
            break
    return out


def select_variant(text: str, master_url: str, *, max_bitrate: Optional[int] = None) -> VariantSelection:
    variants = list_variants(text, master_url)
    if not variants:
        raise RuntimeError("Could not find a variant playlist in master")

    # Prefer the richest variant that still fits under the bitrate cap.
    if max_bitrate is not None:
        fitting = [(bw, u) for bw, u in variants if bw is not None and bw <= max_bitrate]
        if fitting:
            bw, url = max(fitting, key=lambda v: v[0])
            return VariantSelection(master_url=master_url, variant_url=url, bandwidth=bw)

    # Fallback: first listed variant (Jellyfin lists its transcode first).
    bw, url = variants[0]
    return VariantSelection(master_url=master_url, variant_url=url, bandwidth=bw)


def load_media_playlist(
    fetch_text: Callable[[str], str],
    url: str,
    *,
    max_bitrate: Optional[int] = None,
) -> Playlist:
    """Fetch ``url`` and return its segments, following one master level."""
    text = fetch_text(url)
    if is_master_playlist(text):
        sel = select_variant(text, url, max_bitrate=max_bitrate)
        log.debug("master %s -> variant %s (bandwidth=%s)", url, sel.variant_url, sel.bandwidth)
        url = sel.variant_url
        text = fetch_text(url)
    return parse_playlist(text, url)
