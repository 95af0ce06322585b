"""
AWS-backed stores using boto3: a Secrets Manager KeyStore (used as the backup
key store) and an S3 Datastore for manifests.

Both accept an already-built client so callers can share a session or pass
in stubs; otherwise standard boto3 configuration (env vars, shared
credentials, instance role) is used.
"""
from __future__ import annotations
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ...errors import ObjectNotFoundError, SerializationError, StoreIOError
from ...key import Key
from ...logger import get_logger
from ..manifest_store import Datastore
from ..provider import KeyStore, batch_signing_key_name, packet_encryption_key_name

log = get_logger("keyrotator.storage.aws")


def _error_code(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Code", "")


def _client(service: str, region: Optional[str]):
    try:
        return boto3.client(service, region_name=region)
    except BotoCoreError as err:
        # e.g. NoRegionError when neither the flag nor AWS_REGION is set
        raise StoreIOError(f"couldn't create AWS {service} client: {err}") from err


class AWSSecretsManagerKeyStore(KeyStore):
    name = "aws"

    def __init__(self, env: str, region: Optional[str] = None, client=None):
        self.env = env
        self.sm = client or _client("secretsmanager", region)

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
            self.sm.create_secret(Name=secret_name)
        except ClientError as err:
            if _error_code(err) != "ResourceExistsException":
                raise StoreIOError(f"couldn't create AWS secret {secret_name!r}: {err}") from err
        except BotoCoreError as err:
            raise StoreIOError(f"couldn't create AWS secret {secret_name!r}: {err}") from err

        try:
            self.sm.put_secret_value(SecretId=secret_name, SecretBinary=key_bytes)
        except (ClientError, BotoCoreError) as err:
            raise StoreIOError(f"couldn't add AWS secret version to {secret_name!r}: {err}") from err

    def _get_key(self, secret_name: str) -> Key:
        try:
            out = self.sm.get_secret_value(SecretId=secret_name)
        except ClientError as err:
            if _error_code(err) == "ResourceNotFoundException":
                return Key()
            raise StoreIOError(f"couldn't retrieve secret {secret_name!r}: {err}") from err
        except BotoCoreError as err:
            raise StoreIOError(f"couldn't retrieve secret {secret_name!r}: {err}") from err
        try:
            return Key.from_json(out["SecretBinary"])
        except (KeyError, SerializationError) as err:
            raise SerializationError(f"couldn't parse key from secret {secret_name!r}: {err}") from err


class S3Datastore(Datastore):
    """Publicly readable manifest objects in an S3 bucket."""
    name = "s3"

    def __init__(self, bucket: str, region: Optional[str] = None, client=None):
        self.bucket = bucket
        self.client = client or _client("s3", region)

    def get(self, key):
        try:
            out = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as err:
            if _error_code(err) in ("NoSuchKey", "404"):
                raise ObjectNotFoundError(f"s3://{self.bucket}/{key} does not exist") from err
            raise StoreIOError(f"couldn't get s3://{self.bucket}/{key}: {err}") from err
        except BotoCoreError as err:
            raise StoreIOError(f"couldn't get s3://{self.bucket}/{key}: {err}") from err
        return out["Body"].read()

    def put(self, key, data):
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ACL="public-read",
                CacheControl="no-cache",
                ContentType="application/json; charset=UTF-8",
            )
        except (ClientError, BotoCoreError) as err:
            raise StoreIOError(f"couldn't put s3://{self.bucket}/{key}: {err}") from err
