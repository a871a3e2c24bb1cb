from __future__ import annotations

import os
from pathlib import Path
from uuid import uuid4

from habitdata.core.path_safety import resolve_under_root


class LocalStorageClient:
    """Stores artifacts as files under one root; locations are root-relative keys."""

    def __init__(self, root: Path):
        self._root = root.resolve(strict=False)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, location: str) -> Path:
        return resolve_under_root(self._root, location)

    def put(self, key: str, data: bytes) -> str:
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.{uuid4().hex}.tmp")
        try:
            with tmp_path.open("wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
        finally:
            tmp_path.unlink(missing_ok=True)
        return target.relative_to(self._root).as_posix()

    def get(self, location: str) -> bytes:
        return self._path(location).read_bytes()

    def delete(self, location: str) -> None:
        self._path(location).unlink(missing_ok=True)

    def exists(self, location: str) -> bool:
        return self._path(location).is_file()

    def local_path(self, location: str) -> str:
        return self._path(location).as_posix()
