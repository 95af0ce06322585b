"""
keyrotator.storage.providers.kubernetes_provider
------------------------------------------------
KeyStore over Kubernetes secrets, through the official `kubernetes` client.

Each key lives in one secret with three data entries:

- key_versions: the Key JSON (the source of truth)
- secret_key:   the live versions in the single-key encoding older workloads
                read (PKCS#8 of the primary for batch signing keys, the
                comma-joined raw rotation format of every version for packet
                encryption keys)
- primary_kid:  the key identifier of the primary version
"""

from __future__ import annotations
from typing import Callable, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ...errors import SerializationError, StoreIOError
from ...key import Key, Material, Version
from ...logger import get_logger
from ...utils import b64d, b64e
from ..provider import KeyStore, batch_signing_key_name, packet_encryption_key_name

log = get_logger("keyrotator.storage.kubernetes")

KEY_VERSIONS_SECRET_KEY = "key_versions"
LIVE_VERSIONS_SECRET_KEY = "secret_key"
PRIMARY_KID_SECRET_KEY = "primary_kid"

# written by provisioning into secret_key before any real key exists
SECRET_KEY_UNFILLED_VALUE = "not-a-real-key"


def primary_kid(secret_name: str, key: Key) -> str:
    if key.is_empty() or key.primary.creation_timestamp == 0:
        return secret_name
    return f"{secret_name}-{key.primary.creation_timestamp}"


def serialize_batch_signing_secret_key(key: Key) -> str:
    return key.primary.material.as_pkcs8()


def parse_batch_signing_secret_key(value: str) -> Material:
    return Material.from_pkcs8(value)


def serialize_packet_encryption_secret_key(key: Key) -> str:
    return ",".join(v.material.as_raw_rotation_format() for v in key)


def parse_packet_encryption_secret_key(value: str) -> Material:
    # only the first (primary) entry is needed to seed a key
    return Material.from_raw_rotation_format(value.split(",")[0])


def core_v1_api(kubeconfig: Optional[str] = None) -> client.CoreV1Api:
    """In-cluster credentials when running in a pod, otherwise a kubeconfig file."""
    try:
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig)
        else:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                config.load_kube_config()
    except config.ConfigException as err:
        raise StoreIOError(f"couldn't load Kubernetes client configuration: {err}") from err
    return client.CoreV1Api()


class KubernetesKeyStore(KeyStore):
    name = "kubernetes"

    def __init__(self, namespace: str, env: str, api: Optional[client.CoreV1Api] = None,
                 kubeconfig: Optional[str] = None):
        self.namespace = namespace
        self.env = env
        self.api = api or core_v1_api(kubeconfig)

    # --------- KeyStore ----------
    def get_batch_signing_key(self, locality, ingestor):
        return self._get_key(batch_signing_key_name(self.env, locality, ingestor),
                             parse_batch_signing_secret_key)

    def get_packet_encryption_key(self, locality):
        return self._get_key(packet_encryption_key_name(self.env, locality),
                             parse_packet_encryption_secret_key)

    def put_batch_signing_key(self, locality, ingestor, key):
        self._put_key("batch-signing", batch_signing_key_name(self.env, locality, ingestor),
                      key, serialize_batch_signing_secret_key)

    def put_packet_encryption_key(self, locality, key):
        self._put_key("packet-encryption", packet_encryption_key_name(self.env, locality),
                      key, serialize_packet_encryption_secret_key)

    # --------- secrets ----------
    def _read_secret(self, secret_name: str) -> Optional[client.V1Secret]:
        try:
            return self.api.read_namespaced_secret(secret_name, self.namespace)
        except ApiException as err:
            if err.status == 404:
                return None
            raise StoreIOError(f"couldn't retrieve secret {secret_name!r}: {err.status} {err.reason}") from err
        except urllib3.exceptions.HTTPError as err:
            raise StoreIOError(f"couldn't retrieve secret {secret_name!r}: {err}") from err

    def _write_secret(self, secret_name: str, secret: Optional[client.V1Secret], data: dict) -> None:
        try:
            if secret is None:
                self.api.create_namespaced_secret(self.namespace, client.V1Secret(
                    metadata=client.V1ObjectMeta(name=secret_name, namespace=self.namespace),
                    type="Opaque",
                    data=data,
                ))
                return
            # keeps the resourceVersion of the read; a concurrent update fails with 409
            secret.data = data
            self.api.replace_namespaced_secret(secret_name, self.namespace, secret)
        except ApiException as err:
            verb = "create" if secret is None else "update"
            raise StoreIOError(f"couldn't {verb} secret {secret_name!r}: {err.status} {err.reason}") from err
        except urllib3.exceptions.HTTPError as err:
            raise StoreIOError(f"couldn't write secret {secret_name!r}: {err}") from err

    # --------- keys ----------
    def _get_key(self, secret_name: str, parse_secret_key: Callable[[str], Material]) -> Key:
        secret = self._read_secret(secret_name)
        if secret is None:
            log.info(f"Secret {secret_name!r} does not exist", extra={"storage": self.name, "secret": secret_name})
            return Key()
        data = secret.data or {}

        if KEY_VERSIONS_SECRET_KEY in data:
            try:
                return Key.from_json(b64d(data[KEY_VERSIONS_SECRET_KEY]))
            except SerializationError as err:
                raise SerializationError(f"couldn't parse key versions from secret {secret_name!r}: {err}") from err

        live = data.get(LIVE_VERSIONS_SECRET_KEY)
        if live is not None:
            value = b64d(live).decode("ascii", errors="replace")
            if value != SECRET_KEY_UNFILLED_VALUE:
                try:
                    material = parse_secret_key(value)
                except SerializationError as err:
                    raise SerializationError(
                        f"couldn't interpret secret {secret_name!r} secret key as key: {err}") from err
                return Key.from_versions(Version(material=material, creation_timestamp=0))

        return Key()

    def _put_key(self, kind: str, secret_name: str, key: Key, serialize_live_versions: Callable[[Key], str]) -> None:
        log.info(f"Writing key to secret {secret_name!r}",
                 extra={"storage": self.name, "kind": kind, "secret": secret_name})
        try:
            live_versions = serialize_live_versions(key)
        except SerializationError as err:
            raise SerializationError(f"couldn't serialize secret key: {err}") from err
        data = {
            KEY_VERSIONS_SECRET_KEY: b64e(key.to_json().encode("utf-8")),
            LIVE_VERSIONS_SECRET_KEY: b64e(live_versions.encode("ascii")),
            PRIMARY_KID_SECRET_KEY: b64e(primary_kid(secret_name, key).encode("ascii")),
        }
        self._write_secret(secret_name, self._read_secret(secret_name), data)
