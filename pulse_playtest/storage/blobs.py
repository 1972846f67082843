"""Key/value blob stores for checkpoint persistence.

Keys are "/"-separated relative paths such as "sessions/abc/turn-003.json".
Values are JSON text. Missing keys raise KeyError.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Protocol


class BlobStore(Protocol):
    def read(self, key: str) -> str: ...
    def write(self, key: str, data: str) -> None: ...
    def exists(self, key: str) -> bool: ...
    def list(self, prefix: str = "") -> list[str]: ...


def _check_key(key: str) -> str:
    parts = key.split("/")
    if not key or key.startswith("/") or any(p in ("", ".", "..") for p in parts):
        raise ValueError(f"Invalid blob key: {key!r}")
    return key


class FileBlobStore:
    """Stores each key as a file under `base_path`.

    Writes go to a temporary file in the target directory and are moved
    into place, so a reader never sees a half-written blob.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    def _path(self, key: str) -> Path:
        return self._base.joinpath(*_check_key(key).split("/"))

    def read(self, key: str) -> str:
        path = self._path(key)
        if not path.is_file():
            raise KeyError(key)
        return path.read_text(encoding="utf-8")

    def write(self, key: str, data: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def list(self, prefix: str = "") -> list[str]:
        keys = []
        for path in self._base.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            key = path.relative_to(self._base).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)


class MemoryBlobStore:
    """In-process store, used by tests and dry runs."""

    def __init__(self) -> None:
        self._blobs: dict[str, str] = {}

    def read(self, key: str) -> str:
        return self._blobs[_check_key(key)]

    def write(self, key: str, data: str) -> None:
        self._blobs[_check_key(key)] = data

    def exists(self, key: str) -> bool:
        return _check_key(key) in self._blobs

    def list(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._blobs if k.startswith(prefix))
