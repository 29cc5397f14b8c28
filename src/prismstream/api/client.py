from __future__ import annotations

import threading
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote, urlencode

import requests

from prismstream import __version__
from prismstream.errors import DownloadCancelled, StreamUrlError
from prismstream.playback.profiles import PlaybackProfile, profile_params

TICKS_PER_SECOND = 10_000_000


def to_ticks(seconds: float) -> int:
    return int(max(0.0, float(seconds)) * TICKS_PER_SECOND)


class JellyfinClient:
    CLIENT_NAME = "PrismStream"

    def __init__(
        self,
        server_url: str,
        *,
        access_token: str = "",
        user_id: str = "",
        device_name: str = "prismstream",
        device_id: str = "prismstream",
        timeout: float = 20,
    ) -> None:
        self.server_url = (server_url or "").rstrip("/")
        self.access_token = access_token
        self.user_id = user_id
        self.device_name = device_name
        self.device_id = device_id
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update(
            {
                "User-Agent": f"prismstream/{__version__}",
                "Accept": "application/json",
            }
        )
        self.session.headers["X-Emby-Authorization"] = self._auth_header()

        self.last_status: Optional[int] = None

    def _auth_header(self) -> str:
        parts = [
            f'Client="{self.CLIENT_NAME}"',
            f'Device="{self.device_name}"',
            f'DeviceId="{self.device_id}"',
            f'Version="{__version__}"',
        ]
        if self.access_token:
            parts.append(f'Token="{self.access_token}"')
        return "MediaBrowser " + ", ".join(parts)

    def set_token(self, access_token: str, user_id: str) -> None:
        self.access_token = access_token
        self.user_id = user_id
        self.session.headers["X-Emby-Authorization"] = self._auth_header()

    def _url(self, path: str) -> str:
        return f"{self.server_url}/{path.lstrip('/')}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        r = self.session.request(method, url, **kwargs)
        self.last_status = r.status_code
        return r

    def authenticate(self, username: str, password: str) -> Tuple[str, str]:
        """Log in and return (user_id, access_token)."""
        r = self._request(
            "POST",
            self._url("/Users/AuthenticateByName"),
            json={"Username": username, "Pw": password},
        )
        r.raise_for_status()
        data = r.json()
        user_id = str(((data.get("User") or {}).get("Id")) or "")
        token = str(data.get("AccessToken") or "")
        if not user_id or not token:
            raise RuntimeError("AuthenticateByName returned no user/token")
        self.set_token(token, user_id)
        return user_id, token

    def get_item(self, item_id: str) -> Dict[str, Any]:
        r = self._request("GET", self._url(f"/Users/{self.user_id}/Items/{quote(item_id)}"))
        r.raise_for_status()
        return r.json()

    def direct_stream_url(self, item_id: str, *, media_source_id: Optional[str] = None) -> str:
        return self.stream_url(item_id, PlaybackProfile.DIRECT, media_source_id=media_source_id)

    def stream_url(
        self,
        item_id: str,
        profile: PlaybackProfile,
        *,
        media_source_id: Optional[str] = None,
        max_bitrate: Optional[int] = None,
        play_session_id: Optional[str] = None,
    ) -> str:
        if not self.server_url or not item_id:
            raise StreamUrlError("Could not generate stream URL")

        params: Dict[str, str] = {"MediaSourceId": media_source_id or item_id}
        params.update(profile_params(profile, max_bitrate=max_bitrate))
        params["DeviceId"] = self.device_id
        if play_session_id:
            params["PlaySessionId"] = play_session_id
        if self.access_token:
            params["api_key"] = self.access_token

        if profile is PlaybackProfile.DIRECT:
            path = f"/Videos/{quote(item_id)}/stream"
        else:
            path = f"/Videos/{quote(item_id)}/master.m3u8"
        return f"{self._url(path)}?{urlencode(params)}"

    def fetch_text(self, url: str, *, cancel: Optional[threading.Event] = None) -> str:
        if cancel is not None:
            # HLS playlists are always UTF-8.
            return self.fetch_segment(url, cancel).decode("utf-8", errors="replace")
        r = self._request("GET", url, headers={"Accept": "*/*"})
        r.raise_for_status()
        return r.text

    def fetch_segment(self, url: str, cancel: threading.Event, *, chunk_size: int = 64 * 1024) -> bytes:
        """Download one segment, aborting between chunks once cancel is set."""
        if cancel.is_set():
            raise DownloadCancelled(url)
        buf = bytearray()
        with self._request("GET", url, stream=True, headers={"Accept": "*/*"}) as r:
            r.raise_for_status()
            for chunk in r.iter_content(chunk_size=chunk_size):
                if cancel.is_set():
                    raise DownloadCancelled(url)
                if chunk:
                    buf.extend(chunk)
        return bytes(buf)

    def _playing_payload(
        self,
        item_id: str,
        position: float,
        *,
        media_source_id: Optional[str] = None,
        play_session_id: Optional[str] = None,
        play_method: str = "DirectPlay",
        is_paused: bool = False,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "ItemId": item_id,
            "MediaSourceId": media_source_id or item_id,
            "PositionTicks": to_ticks(position),
            "IsPaused": bool(is_paused),
            "PlayMethod": play_method,
            "CanSeek": True,
        }
        if play_session_id:
            payload["PlaySessionId"] = play_session_id
        return payload

    def report_playback_start(self, item_id: str, position: float, **kwargs) -> None:
        r = self._request("POST", self._url("/Sessions/Playing"), json=self._playing_payload(item_id, position, **kwargs))
        r.raise_for_status()

    def report_playback_progress(self, item_id: str, position: float, **kwargs) -> None:
        r = self._request(
            "POST",
            self._url("/Sessions/Playing/Progress"),
            json=self._playing_payload(item_id, position, **kwargs),
        )
        r.raise_for_status()

    def report_playback_stopped(self, item_id: str, position: float, **kwargs) -> None:
        kwargs.pop("is_paused", None)
        r = self._request(
            "POST",
            self._url("/Sessions/Playing/Stopped"),
            json=self._playing_payload(item_id, position, **kwargs),
        )
        r.raise_for_status()
