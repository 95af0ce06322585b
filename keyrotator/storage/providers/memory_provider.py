from __future__ import annotations
import threading
from collections import Counter
from typing import Dict, Optional, Tuple

from ...errors import ObjectNotFoundError
from ...key import Key
from ...manifest import DataShareProcessorSpecificManifest, IngestorGlobalManifest
from ..manifest_store import Datastore
from ..provider import KeyStore, ManifestStore


class InMemoryKeyStore(KeyStore):
    """Dictionary-backed KeyStore that counts writes; used for tests and dry runs."""
    name = "memory"

    def __init__(self, batch_signing_keys: Optional[Dict[Tuple[str, str], Key]] = None,
                 packet_encryption_keys: Optional[Dict[str, Key]] = None):
        self._lock = threading.Lock()
        self.batch_signing_keys: Dict[Tuple[str, str], Key] = dict(batch_signing_keys or {})
        self.packet_encryption_keys: Dict[str, Key] = dict(packet_encryption_keys or {})
        self.batch_signing_key_puts: Counter = Counter()
        self.packet_encryption_key_puts: Counter = Counter()

    def get_batch_signing_key(self, locality, ingestor):
        with self._lock:
            return self.batch_signing_keys.get((locality, ingestor), Key())

    def get_packet_encryption_key(self, locality):
        with self._lock:
            return self.packet_encryption_keys.get(locality, Key())

    def put_batch_signing_key(self, locality, ingestor, key):
        with self._lock:
            self.batch_signing_keys[(locality, ingestor)] = key
            self.batch_signing_key_puts[(locality, ingestor)] += 1

    def put_packet_encryption_key(self, locality, key):
        with self._lock:
            self.packet_encryption_keys[locality] = key
            self.packet_encryption_key_puts[locality] += 1

    @property
    def put_count(self) -> int:
        with self._lock:
            return sum(self.batch_signing_key_puts.values()) + sum(self.packet_encryption_key_puts.values())


class InMemoryManifestStore(ManifestStore):
    name = "memory"

    def __init__(self, manifests: Optional[Dict[str, DataShareProcessorSpecificManifest]] = None,
                 global_manifest: Optional[IngestorGlobalManifest] = None):
        self._lock = threading.Lock()
        self.manifests: Dict[str, DataShareProcessorSpecificManifest] = dict(manifests or {})
        self.global_manifest = global_manifest
        self.manifest_puts: Counter = Counter()

    def get_data_share_processor_specific_manifest(self, name):
        with self._lock:
            m = self.manifests.get(name)
        if m is None:
            raise ObjectNotFoundError(f"no manifest for {name!r}")
        return m

    def put_data_share_processor_specific_manifest(self, name, manifest):
        with self._lock:
            self.manifests[name] = manifest
            self.manifest_puts[name] += 1

    def get_ingestor_global_manifest(self):
        with self._lock:
            m = self.global_manifest
        if m is None:
            raise ObjectNotFoundError("no global manifest")
        return m

    def put_ingestor_global_manifest(self, manifest):
        with self._lock:
            self.global_manifest = manifest
            self.manifest_puts["global"] += 1

    @property
    def put_count(self) -> int:
        with self._lock:
            return sum(self.manifest_puts.values())


class InMemoryDatastore(Datastore):
    name = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self.objects: Dict[str, bytes] = {}

    def get(self, key):
        with self._lock:
            if key not in self.objects:
                raise ObjectNotFoundError(f"object {key!r} does not exist")
            return self.objects[key]

    def put(self, key, data):
        with self._lock:
            self.objects[key] = bytes(data)
