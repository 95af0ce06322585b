from __future__ import annotations
import posixpath
from typing import Dict, Optional

from ..errors import ObjectNotFoundError, StoreIOError
from ..logger import get_logger
from ..manifest import DataShareProcessorSpecificManifest, IngestorGlobalManifest
from .provider import ManifestStore

log = get_logger("keyrotator.storage")

GLOBAL_MANIFEST_NAME = "global"


class Datastore:
    """
    Blob store holding manifest objects. `get` raises ObjectNotFoundError for a
    missing object and StoreIOError for any other failure.
    """
    name: str = "base"

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError


class DatastoreManifestStore(ManifestStore):
    """ManifestStore over a Datastore, one JSON object per manifest."""

    def __init__(self, datastore: Datastore, key_prefix: str = "",
                 default_manifests: Optional[Dict[str, DataShareProcessorSpecificManifest]] = None):
        self.ds = datastore
        self.key_prefix = key_prefix
        self.default_manifests = dict(default_manifests or {})
        self.name = datastore.name

    def key_for(self, name: str) -> str:
        return posixpath.join(self.key_prefix, f"{name}-manifest.json")

    def _put(self, key: str, data: str) -> None:
        log.info(f"Writing manifest to {key!r}", extra={"storage": self.ds.name, "path": key})
        try:
            self.ds.put(key, data.encode("utf-8"))
        except StoreIOError as err:
            raise StoreIOError(f"couldn't put manifest to {key!r}: {err}") from err

    def put_data_share_processor_specific_manifest(self, name, manifest):
        self._put(self.key_for(name), manifest.to_json())

    def put_ingestor_global_manifest(self, manifest):
        self._put(self.key_for(GLOBAL_MANIFEST_NAME), manifest.to_json())

    def get_data_share_processor_specific_manifest(self, name):
        key = self.key_for(name)
        try:
            data = self.ds.get(key)
        except ObjectNotFoundError:
            default = self.default_manifests.get(name)
            if default is None:
                raise
            log.info(f"No manifest at {key!r}; using default manifest for {name}",
                     extra={"storage": self.ds.name, "path": key})
            return default
        return DataShareProcessorSpecificManifest.from_json(data)

    def get_ingestor_global_manifest(self):
        return IngestorGlobalManifest.from_json(self.ds.get(self.key_for(GLOBAL_MANIFEST_NAME)))
