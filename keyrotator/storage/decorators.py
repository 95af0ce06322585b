"""
keyrotator.storage.decorators
-----------------------------
Stores that wrap other stores: mirrored backup writes, and dry-run stores that
log what would have been written instead of writing it.
"""

from __future__ import annotations

from ..errors import KeyRotatorError, StoreIOError
from ..key import Key
from ..logger import get_logger
from ..manifest import DataShareProcessorSpecificManifest, IngestorGlobalManifest
from .provider import KeyStore, ManifestStore

log = get_logger("keyrotator.storage")


class BackupKeyStore(KeyStore):
    """
    Mirrors every write into a backup store. Reads are served by the main
    store only; the backup is never read.
    """
    name = "backup"

    def __init__(self, main: KeyStore, backup: KeyStore):
        self.main = main
        self.backup = backup

    def _put(self, write_main, write_backup):
        try:
            write_main()
        except KeyRotatorError as err:
            raise StoreIOError(f"couldn't write to main storage: {err}") from err
        try:
            write_backup()
        except KeyRotatorError as err:
            raise StoreIOError(f"couldn't write to backup storage: {err}") from err

    def put_batch_signing_key(self, locality, ingestor, key):
        self._put(lambda: self.main.put_batch_signing_key(locality, ingestor, key),
                  lambda: self.backup.put_batch_signing_key(locality, ingestor, key))

    def put_packet_encryption_key(self, locality, key):
        self._put(lambda: self.main.put_packet_encryption_key(locality, key),
                  lambda: self.backup.put_packet_encryption_key(locality, key))

    def get_batch_signing_key(self, locality, ingestor):
        return self.main.get_batch_signing_key(locality, ingestor)

    def get_packet_encryption_key(self, locality):
        return self.main.get_packet_encryption_key(locality)


def _describe(what: str, read_current, new) -> str:
    # Best effort: a store that can't be read still gets a dry-run message.
    try:
        current = read_current()
    except KeyRotatorError as err:
        log.debug(f"couldn't read current {what} for diff: {err}")
        return f"DRY RUN: would have written {what}"
    diff = new.diff(current)
    if not diff:
        return f"DRY RUN: would have written {what} (unchanged)"
    return f"DRY RUN: would have written {what}: {diff}"


class DryRunKeyStore(KeyStore):
    name = "dry-run"

    def __init__(self, inner: KeyStore):
        self.inner = inner

    def put_batch_signing_key(self, locality, ingestor, key: Key):
        log.info(_describe(f"batch signing key for ({locality}, {ingestor})",
                           lambda: self.inner.get_batch_signing_key(locality, ingestor), key),
                 extra={"locality": locality, "ingestor": ingestor, "kind": "batch-signing"})

    def put_packet_encryption_key(self, locality, key: Key):
        log.info(_describe(f"packet encryption key for {locality}",
                           lambda: self.inner.get_packet_encryption_key(locality), key),
                 extra={"locality": locality, "kind": "packet-encryption"})

    def get_batch_signing_key(self, locality, ingestor):
        return self.inner.get_batch_signing_key(locality, ingestor)

    def get_packet_encryption_key(self, locality):
        return self.inner.get_packet_encryption_key(locality)


class DryRunManifestStore(ManifestStore):
    name = "dry-run"

    def __init__(self, inner: ManifestStore):
        self.inner = inner

    def put_data_share_processor_specific_manifest(self, name, manifest: DataShareProcessorSpecificManifest):
        log.info(_describe(f"manifest for {name}",
                           lambda: self.inner.get_data_share_processor_specific_manifest(name), manifest))

    def put_ingestor_global_manifest(self, manifest: IngestorGlobalManifest):
        log.info(_describe("global manifest", self.inner.get_ingestor_global_manifest, manifest))

    def get_data_share_processor_specific_manifest(self, name):
        return self.inner.get_data_share_processor_specific_manifest(name)

    def get_ingestor_global_manifest(self):
        return self.inner.get_ingestor_global_manifest()
