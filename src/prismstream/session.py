import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from platformdirs import user_cache_dir

from prismstream.errors import NotLoggedInError


@dataclass
class ServerSession:
    server_url: str
    user_id: str
    access_token: str
    created_at: str

    def is_valid(self) -> bool:
        # Jellyfin tokens don't expire on their own; they are revoked server side.
        return bool(self.server_url and self.user_id and self.access_token)


def session_path() -> Path:
    cache_dir = Path(user_cache_dir("prismstream"))
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir / "session.json"


def load_session() -> Optional[ServerSession]:
    path = session_path()
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        sess = ServerSession(
            server_url=str(raw.get("server_url") or ""),
            user_id=str(raw.get("user_id") or ""),
            access_token=str(raw.get("access_token") or ""),
            created_at=str(raw.get("created_at") or ""),
        )
        if not sess.is_valid():
            return None
        return sess
    except Exception:
        return None


def require_session() -> ServerSession:
    sess = load_session()
    if sess is None:
        raise NotLoggedInError("Not logged in; run `prismstream login` first")
    return sess


def save_session(server_url: str, user_id: str, access_token: str) -> ServerSession:
    sess = ServerSession(
        server_url=server_url.rstrip("/"),
        user_id=user_id,
        access_token=access_token,
        created_at=datetime.now(timezone.utc).isoformat(),
    )
    path = session_path()
    path.write_text(json.dumps(asdict(sess), indent=2) + "\n", encoding="utf-8")
    return sess


def clear_session() -> None:
    path = session_path()
    try:
        if path.exists():
            path.unlink()
    except Exception:
        pass
