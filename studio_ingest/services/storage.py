# studio_ingest/services/storage.py
# The two storage areas: temp (staging artifacts) and final (promoted files).
# Paths handed around the pipeline are always relative to an area's root.

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO, Optional

from studio_ingest.core.config import IngestConfig
from studio_ingest.core.errors import ConfigurationError, InvalidUploadError, StorageError, StorageWriteError
from studio_ingest.utils.http import safe_rel_under

_CHUNK = 1024 * 1024


class LocalStorage:
    """Filesystem-backed area. Writes land via temp file + os.replace."""

    backend = "local"

    def __init__(self, name: str, root: Path, url_prefix: str = "") -> None:
        self.name = name
        self.root = Path(root).resolve()
        self.url_prefix = (url_prefix or "").rstrip("/")

    def __repr__(self) -> str:
        return f"LocalStorage({self.name!r}, {str(self.root)!r})"

    # ---- paths ----

    def path(self, rel: str) -> Path:
        """Absolute path for `rel`; refuses anything escaping the root."""
        target = (self.root / rel).resolve()
        if not rel or safe_rel_under(self.root, target) is None:
            raise StorageError(f"path escapes {self.name} storage: {rel!r}")
        return target

    def exists(self, rel: str) -> bool:
        return self.path(rel).exists()

    def size(self, rel: str) -> int:
        return self.path(rel).stat().st_size

    def url(self, rel: Optional[str]) -> Optional[str]:
        if not rel:
            return None
        return f"{self.url_prefix}/{rel}" if self.url_prefix else None

    # ---- writes ----

    def _atomic_target(self, rel: str) -> tuple[Path, int, str]:
        dest = self.path(rel)
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".part-", dir=str(dest.parent))
        return dest, fd, tmp

    def write_bytes(self, rel: str, data: bytes) -> Path:
        try:
            dest, fd, tmp = self._atomic_target(rel)
        except OSError as e:
            raise StorageWriteError(f"cannot write {self.name}:{rel}: {e}") from e
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, dest)
        except OSError as e:
            raise StorageWriteError(f"cannot write {self.name}:{rel}: {e}") from e
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)
        return dest

    def save_stream(self, rel: str, stream: BinaryIO, *, max_bytes: Optional[int] = None) -> int:
        """Copy an upload stream in chunks. Returns bytes written."""
        written = 0
        try:
            dest, fd, tmp = self._atomic_target(rel)
        except OSError as e:
            raise StorageWriteError(f"cannot write {self.name}:{rel}: {e}") from e
        try:
            with os.fdopen(fd, "wb") as f:
                while True:
                    chunk = stream.read(_CHUNK)
                    if not chunk:
                        break
                    written += len(chunk)
                    if max_bytes and written > max_bytes:
                        raise InvalidUploadError(f"upload exceeds {max_bytes} bytes")
                    f.write(chunk)
            os.replace(tmp, dest)
        except OSError as e:
            raise StorageWriteError(f"cannot write {self.name}:{rel}: {e}") from e
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)
        return written

    def copy_from(self, source: Path, rel: str) -> Path:
        """Copy a file from anywhere into this area (metadata preserved)."""
        try:
            dest, fd, tmp = self._atomic_target(rel)
        except OSError as e:
            raise StorageWriteError(f"cannot copy into {self.name}:{rel}: {e}") from e
        os.close(fd)
        try:
            shutil.copy2(source, tmp)
            os.replace(tmp, dest)
        except OSError as e:
            raise StorageWriteError(f"cannot copy into {self.name}:{rel}: {e}") from e
        finally:
            if os.path.exists(tmp):
                os.unlink(tmp)
        return dest

    def delete(self, rel: Optional[str]) -> bool:
        if not rel:
            return False
        try:
            self.path(rel).unlink()
            return True
        except FileNotFoundError:
            return False


_BACKENDS = {"local": LocalStorage}


def build_storage(config: IngestConfig, area: str) -> LocalStorage:
    """Storage for 'temp' or 'final' per [storage.<area>]."""
    backend = str(config.get(f"storage.{area}.backend", "local"))
    cls = _BACKENDS.get(backend)
    if cls is None:
        raise ConfigurationError(f"unsupported storage backend for {area}: {backend!r}")
    return cls(area, config.storage_root(area), str(config.get(f"storage.{area}.url_prefix") or ""))
