"""
GCP-backed stores: a Secret Manager KeyStore (used as the backup key store)
and a Cloud Storage Datastore for manifests. Credentials come from
Application Default Credentials unless a client is passed in.
"""
from __future__ import annotations
from typing import Optional

from google.api_core import exceptions as gexc
from google.auth import exceptions as gauth_exc
from google.cloud import secretmanager
from google.cloud import storage as gcs_storage

from ...errors import ObjectNotFoundError, SerializationError, StoreIOError
from ...key import Key
from ...logger import get_logger
from ..manifest_store import Datastore
from ..provider import KeyStore, batch_signing_key_name, packet_encryption_key_name

log = get_logger("keyrotator.storage.gcp")


class GCPSecretManagerKeyStore(KeyStore):
    name = "gcp"

    def __init__(self, env: str, project_id: str, client=None):
        self.env = env
        self.project_id = project_id
        if client is None:
            try:
                client = secretmanager.SecretManagerServiceClient()
            except gauth_exc.GoogleAuthError as err:
                raise StoreIOError(f"couldn't create GCP Secret Manager client: {err}") from err
        self.sm = client

    def get_batch_signing_key(self, locality, ingestor):
        return self._get_key(batch_signing_key_name(self.env, locality, ingestor))

    def get_packet_encryption_key(self, locality):
        return self._get_key(packet_encryption_key_name(self.env, locality))

    def put_batch_signing_key(self, locality, ingestor, key):
        self._put_key("batch-signing", batch_signing_key_name(self.env, locality, ingestor), key)

    def put_packet_encryption_key(self, locality, key):
        self._put_key("packet-encryption", packet_encryption_key_name(self.env, locality), key)

    def _put_key(self, kind: str, secret_name: str, key: Key) -> None:
        log.info(f"Writing key to secret {secret_name!r}",
                 extra={"storage": self.name, "kind": kind, "secret": secret_name})
        key_bytes = key.to_json().encode("utf-8")

        try:
            self.sm.create_secret(request={
                "parent": f"projects/{self.project_id}",
                "secret_id": secret_name,
                "secret": {"replication": {"automatic": {}}},
            })
        except gexc.AlreadyExists:
            log.debug(f"Secret {secret_name!r} already exists", extra={"storage": self.name, "secret": secret_name})
        except gexc.GoogleAPIError as err:
            raise StoreIOError(f"couldn't create GCP secret {secret_name!r}: {err}") from err

        try:
            self.sm.add_secret_version(request={
                "parent": f"projects/{self.project_id}/secrets/{secret_name}",
                "payload": {"data": key_bytes},
            })
        except gexc.GoogleAPIError as err:
            raise StoreIOError(f"couldn't add GCP secret version to {secret_name!r}: {err}") from err

    def _get_key(self, secret_name: str) -> Key:
        try:
            sv = self.sm.access_secret_version(request={
                "name": f"projects/{self.project_id}/secrets/{secret_name}/versions/latest",
            })
        except gexc.NotFound:
            return Key()
        except gexc.GoogleAPIError as err:
            raise StoreIOError(f"couldn't retrieve secret {secret_name!r}: {err}") from err
        try:
            return Key.from_json(sv.payload.data)
        except SerializationError as err:
            raise SerializationError(f"couldn't parse key from secret {secret_name!r}: {err}") from err


class GCSDatastore(Datastore):
    name = "gcs"

    def __init__(self, bucket: str, client=None):
        self.bucket_name = bucket
        if client is None:
            try:
                client = gcs_storage.Client()
            except gauth_exc.GoogleAuthError as err:
                raise StoreIOError(f"couldn't create GCS client: {err}") from err
        self.client = client
        self.bucket = self.client.bucket(bucket)

    def get(self, key):
        blob = self.bucket.blob(key)
        try:
            return blob.download_as_bytes()
        except gexc.NotFound as err:
            raise ObjectNotFoundError(f"gs://{self.bucket_name}/{key} does not exist") from err
        except gexc.GoogleAPIError as err:
            raise StoreIOError(f"couldn't get gs://{self.bucket_name}/{key}: {err}") from err

    def put(self, key, data):
        blob = self.bucket.blob(key)
        blob.cache_control = "no-cache"
        try:
            blob.upload_from_string(data, content_type="application/json; charset=UTF-8")
        except gexc.GoogleAPIError as err:
            raise StoreIOError(f"couldn't put gs://{self.bucket_name}/{key}: {err}") from err
