# keyrotator/storage/__init__.py

from .provider import KeyStore, ManifestStore, batch_signing_key_name, packet_encryption_key_name
from .decorators import BackupKeyStore, DryRunKeyStore, DryRunManifestStore
from .manifest_store import Datastore, DatastoreManifestStore
from .providers.memory_provider import InMemoryDatastore, InMemoryKeyStore, InMemoryManifestStore
from .providers.sqlite_provider import SQLiteKeyStore
from .providers.local_provider import LocalDatastore
from ..errors import ConfigValidationError
from typing import Dict, Optional
from urllib.parse import urlparse
import os, posixpath


def load_key_store(config: dict | None = None) -> KeyStore:
    """
    Factory resolver for selecting the key store backend.

        - kubernetes (default): secrets in `namespace`
        - sqlite: local keyring file
        - memory
    """
    config = config or {}
    provider = config.get("provider") or os.getenv("KEYROTATOR_KEY_STORE", "kubernetes")
    env = config.get("env", "")

    if provider == "memory":
        return InMemoryKeyStore()

    if provider == "sqlite":
        db_path = config.get("sqlite_path") or os.getenv("KEYROTATOR_DB_PATH", "db/keyrotator.db")
        return SQLiteKeyStore(db_path, env=env)

    if provider == "kubernetes":
        from .providers.kubernetes_provider import KubernetesKeyStore
        namespace = config.get("namespace") or os.getenv("KEYROTATOR_KUBERNETES_NAMESPACE", "")
        if not namespace:
            raise ConfigValidationError("a kubernetes namespace is required for the kubernetes key store")
        return KubernetesKeyStore(namespace, env,
                                  kubeconfig=config.get("kubeconfig"))
    raise ConfigValidationError(f"Unknown key store: {provider}")


def load_backup_key_store(spec: str, env: str, aws_region: Optional[str] = None) -> KeyStore:
    """Build a backup key store from "aws" or "gcp:<project-id>"."""
    if spec == "aws":
        from .providers.aws_provider import AWSSecretsManagerKeyStore
        return AWSSecretsManagerKeyStore(env, region=aws_region)
    if spec.startswith("gcp:"):
        project_id = spec[len("gcp:"):]
        if not project_id:
            raise ConfigValidationError("backup store \"gcp:\" needs a project ID")
        from .providers.gcp_provider import GCPSecretManagerKeyStore
        return GCPSecretManagerKeyStore(env, project_id)
    raise ConfigValidationError(f"Unknown backup key store: {spec!r} (want \"aws\" or \"gcp:<project>\")")


def load_manifest_store(url: str, key_prefix: str = "",
                        default_manifests: Optional[Dict] = None,
                        aws_region: Optional[str] = None) -> DatastoreManifestStore:
    """
    Build a manifest store from a bucket URL: s3://bucket[/prefix],
    gs://bucket[/prefix], file:///dir or memory://.
    """
    parsed = urlparse(url)
    url_prefix = parsed.path.strip("/")
    if not parsed.netloc and parsed.scheme in ("s3", "gs"):
        raise ConfigValidationError(f"manifest bucket URL {url!r} has no bucket")

    if parsed.scheme == "s3":
        from .providers.aws_provider import S3Datastore
        ds: Datastore = S3Datastore(parsed.netloc, region=aws_region)
    elif parsed.scheme == "gs":
        from .providers.gcp_provider import GCSDatastore
        ds = GCSDatastore(parsed.netloc)
    elif parsed.scheme == "file":
        ds = LocalDatastore(parsed.netloc + parsed.path)
        url_prefix = ""
    elif parsed.scheme == "memory":
        ds = InMemoryDatastore()
    else:
        raise ConfigValidationError(f"bad manifest bucket URL {url!r}")

    prefix = posixpath.join(url_prefix, key_prefix) if url_prefix and key_prefix else (url_prefix or key_prefix)
    return DatastoreManifestStore(ds, key_prefix=prefix, default_manifests=default_manifests)


__all__ = [
    "KeyStore",
    "ManifestStore",
    "Datastore",
    "DatastoreManifestStore",
    "BackupKeyStore",
    "DryRunKeyStore",
    "DryRunManifestStore",
    "InMemoryDatastore",
    "InMemoryKeyStore",
    "InMemoryManifestStore",
    "LocalDatastore",
    "SQLiteKeyStore",
    "batch_signing_key_name",
    "packet_encryption_key_name",
    "load_key_store",
    "load_backup_key_store",
    "load_manifest_store",
]
