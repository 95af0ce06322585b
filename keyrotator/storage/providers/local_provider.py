from __future__ import annotations
import os
from pathlib import Path

from ...errors import ObjectNotFoundError, StoreIOError
from ..manifest_store import Datastore


class LocalDatastore(Datastore):
    """Manifest objects as files under a root directory."""
    name = "file"

    def __init__(self, root):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / key

    def get(self, key):
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as err:
            raise ObjectNotFoundError(f"{path} does not exist") from err
        except OSError as err:
            raise StoreIOError(f"couldn't read {path}: {err}") from err

    def put(self, key, data):
        path = self._path(key)
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as err:
            raise StoreIOError(f"couldn't write {path}: {err}") from err
