"""
Storage Backend — durable artifact storage for backup executions.

Artifacts are addressed by a relative key; every write returns the SHA-256
checksum of the stored bytes so executions can be verified on read-back.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from dr_engine.errors import StorageError

logger = logging.getLogger(__name__)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class StorageBackend(Protocol):
    def put(self, key: str, data: bytes) -> str: ...

    def get(self, key: str, offset: int = 0, length: int | None = None) -> bytes: ...

    def delete(self, key: str) -> None: ...

    def exists(self, key: str) -> bool: ...


class FilesystemStorageBackend:
    """Stores artifacts as files below a root directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path_for(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in Path(key).parts:
            raise StorageError(f"Invalid storage key: {key!r}")
        return self.root / key

    def put(self, key: str, data: bytes) -> str:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a temp file and rename so a crash never leaves a partial artifact.
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"Failed to write {key}: {e}") from e
        logger.debug("Stored %s (%d bytes)", key, len(data))
        return sha256_hex(data)

    def get(self, key: str, offset: int = 0, length: int | None = None) -> bytes:
        path = self._path_for(key)
        if not path.exists():
            raise StorageError(f"Artifact not found: {key}")
        with path.open("rb") as fh:
            fh.seek(offset)
            return fh.read() if length is None else fh.read(length)

    def delete(self, key: str) -> None:
        self._path_for(key).unlink(missing_ok=True)

    def exists(self, key: str) -> bool:
        return self._path_for(key).exists()
