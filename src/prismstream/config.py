import json
import uuid
from dataclasses import dataclass, asdict, field
from pathlib import Path

from platformdirs import user_cache_dir, user_config_dir


@dataclass
class Settings:
    server_url: str = ""
    preferred_quality: str = "auto"

    # Rolling segment cache: keep this much ahead of the playhead and drop
    # anything that ended more than cleanup_seconds ago.
    lookahead_seconds: float = 600.0
    cleanup_seconds: float = 300.0
    merge_tolerance: float = 0.5
    max_download_workers: int = 8

    # Seconds between playback checkpoints sent to the server.
    checkpoint_interval: float = 10.0

    # Empty means the per-user cache directory.
    cache_dir: str = ""

    device_name: str = "prismstream"
    device_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def segment_cache_dir(self) -> Path:
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        return Path(user_cache_dir("prismstream")) / "segments"


def config_path() -> Path:
    cfg_dir = Path(user_config_dir("prismstream"))
    cfg_dir.mkdir(parents=True, exist_ok=True)
    return cfg_dir / "config.json"


def load_settings() -> Settings:
    path = config_path()
    if not path.exists():
        return Settings()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return Settings(**{k: v for k, v in raw.items() if k in Settings.__annotations__})
    except Exception:
        return Settings()


def save_settings(settings: Settings) -> None:
    path = config_path()
    path.write_text(json.dumps(asdict(settings), indent=2) + "\n", encoding="utf-8")
