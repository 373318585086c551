import logging
import os
from pathlib import Path
from typing import List

from backstage.errors import ObjectExists, ObjectMissing, StorageError

logger = logging.getLogger("backstage.storage")

RESERVED_NAMES = ("", ".", "..")


def safe_name(file_name: str) -> str:
    return file_name.replace("/", "_").replace("\\", "_")


def object_key(event_id: str, file_name: str) -> str:
    return f"{event_id}/{safe_name(file_name)}"


class LocalObjectStore:
    """Blob store on the local filesystem, keyed by ``<event_id>/<file_name>``."""

    def __init__(self, root):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        # keys must name a file strictly inside a first-level directory of root
        prefix, _, _ = key.partition("/")
        folder = (self.root / prefix).resolve()
        path = (self.root / key).resolve()
        if folder.parent != self.root or folder not in path.parents:
            raise StorageError(f"Invalid object key: {key}")
        return path

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def put(self, key: str, data: bytes, upsert: bool = False) -> str:
        path = self._path(key)
        if path.exists() and not upsert:
            raise ObjectExists(f"Object already exists: {key}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise ObjectMissing(f"Object not found: {key}")
        return path.read_bytes()

    def remove(self, key: str):
        path = self._path(key)
        if not path.is_file():
            raise ObjectMissing(f"Object not found: {key}")
        path.unlink()

    def list_paths(self) -> List[str]:
        keys = []
        for dirpath, _, filenames in os.walk(self.root):
            for name in filenames:
                full = Path(dirpath) / name
                keys.append(full.relative_to(self.root).as_posix())
        return sorted(keys)
