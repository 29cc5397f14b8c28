from __future__ import annotations

import hashlib
import logging
import shutil
import threading
import uuid
from pathlib import Path, PurePosixPath
from typing import Optional, Set
from urllib.parse import unquote, urlparse

log = logging.getLogger(__name__)

_TMP_SUFFIX = ".part"


def cache_key(url: str) -> str:
    """Stable file name for a segment URL: <sha256 prefix>_<basename>.

    The hash covers the full URL (query included) so two segments that share a
    final path component never collide.
    """
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
    try:
        name = PurePosixPath(unquote(urlparse(url).path)).name
    except ValueError:
        name = ""
    safe = "".join(c if c.isalnum() or c in "_-." else "_" for c in name)[-80:]
    return f"{digest}_{safe or 'segment'}"


class SegmentStore:
    """Directory of cached segment payloads keyed by remote URL.

    Writes land in a hidden temp file and are promoted with an atomic rename,
    so exists()/read() never observe a partial payload. Every clear() bumps
    ``epoch``; a write tagged with an older epoch is discarded.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()
        self._epoch = 0
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def epoch(self) -> int:
        return self._epoch

    def path_for(self, url: str) -> Path:
        return self.root / cache_key(url)

    def exists(self, url: str) -> bool:
        return self.path_for(url).is_file()

    def read(self, url: str) -> Optional[bytes]:
        try:
            return self.path_for(url).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            log.warning("failed to read cached segment %s: %s", url, exc)
            return None

    def write(self, url: str, data: bytes, *, epoch: Optional[int] = None) -> bool:
        path = self.path_for(url)
        tmp = self.root / f".{path.name}.{uuid.uuid4().hex}{_TMP_SUFFIX}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(data)
            with self._lock:
                if epoch is not None and epoch != self._epoch:
                    log.debug("dropping write from stale epoch %d for %s", epoch, path.name)
                    return False
                tmp.replace(path)
            log.debug("cached segment %s (%d bytes)", path.name, len(data))
            return True
        except OSError as exc:
            log.warning("failed to cache segment %s: %s", url, exc)
            return False
        finally:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass

    def delete(self, url: str) -> bool:
        path = self.path_for(url)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as exc:
                log.warning("failed to delete cached segment %s: %s", path.name, exc)
                return False
        log.debug("deleted cached segment %s", path.name)
        return True

    def cached_keys(self) -> Set[str]:
        try:
            return {
                p.name
                for p in self.root.iterdir()
                if not p.name.startswith(".") and p.is_file()
            }
        except FileNotFoundError:
            return set()
        except OSError as exc:
            log.warning("failed to list segment cache %s: %s", self.root, exc)
            return set()

    def clear(self) -> int:
        """Remove every entry (temp files included). Never raises."""
        removed = 0
        with self._lock:
            self._epoch += 1
            try:
                entries = list(self.root.iterdir())
            except FileNotFoundError:
                entries = []
            except OSError as exc:
                log.warning("failed to list segment cache %s: %s", self.root, exc)
                entries = []
            for entry in entries:
                try:
                    if entry.is_dir() and not entry.is_symlink():
                        shutil.rmtree(entry)
                    else:
                        entry.unlink()
                    removed += 1
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    log.warning("failed to remove %s: %s", entry, exc)
            try:
                self.root.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                log.error("segment cache directory %s is unusable: %s", self.root, exc)
        return removed

    def purge_stale(self) -> int:
        """Drop anything left behind by a previous process."""
        removed = self.clear()
        if removed:
            log.info("purged %d stale cache entries from %s", removed, self.root)
        return removed
