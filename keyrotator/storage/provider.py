from __future__ import annotations

from ..key import Key
from ..manifest import DataShareProcessorSpecificManifest, IngestorGlobalManifest


def batch_signing_key_name(env: str, locality: str, ingestor: str) -> str:
    return f"{env}-{locality}-{ingestor}-batch-signing-key"


def packet_encryption_key_name(env: str, locality: str) -> str:
    return f"{env}-{locality}-ingestion-packet-decryption-key"


class KeyStore:
    """
    Store of versioned keys, addressed by (locality, ingestor) for batch
    signing keys and by locality for packet encryption keys.

    A key that was never written reads as the empty Key. Backend failures
    raise StoreIOError; undecodable stored data raises SerializationError.
    Implementations must be safe to call from several threads at once.
    """
    name: str = "base"

    def get_batch_signing_key(self, locality: str, ingestor: str) -> Key:
        raise NotImplementedError

    def get_packet_encryption_key(self, locality: str) -> Key:
        raise NotImplementedError

    def put_batch_signing_key(self, locality: str, ingestor: str, key: Key) -> None:
        raise NotImplementedError

    def put_packet_encryption_key(self, locality: str, key: Key) -> None:
        raise NotImplementedError


class ManifestStore:
    """Store of manifests, addressed by data share processor name."""
    name: str = "base"

    def get_data_share_processor_specific_manifest(self, name: str) -> DataShareProcessorSpecificManifest:
        raise NotImplementedError

    def put_data_share_processor_specific_manifest(self, name: str,
                                                   manifest: DataShareProcessorSpecificManifest) -> None:
        raise NotImplementedError

    def get_ingestor_global_manifest(self) -> IngestorGlobalManifest:
        raise NotImplementedError

    def put_ingestor_global_manifest(self, manifest: IngestorGlobalManifest) -> None:
        raise NotImplementedError
