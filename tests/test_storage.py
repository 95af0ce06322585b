import io, logging
from types import SimpleNamespace

import pytest
import urllib3
from botocore.exceptions import ClientError, NoRegionError
from google.api_core import exceptions as gexc
from google.auth.exceptions import DefaultCredentialsError
from kubernetes import client as k8s_client, config as k8s_config
from kubernetes.client.rest import ApiException

from keyrotator.errors import ConfigValidationError, ObjectNotFoundError, SerializationError, StoreIOError
from keyrotator.key import Key, Version
from keyrotator.key.testing import material
from keyrotator.manifest import DataShareProcessorSpecificManifest, IngestorGlobalManifest, ServerIdentity
from keyrotator.storage import (
    BackupKeyStore, DatastoreManifestStore, DryRunKeyStore, DryRunManifestStore,
    InMemoryDatastore, InMemoryKeyStore, InMemoryManifestStore, LocalDatastore, SQLiteKeyStore,
    batch_signing_key_name, load_backup_key_store, load_key_store, load_manifest_store,
    packet_encryption_key_name,
)
from keyrotator.storage.providers.aws_provider import AWSSecretsManagerKeyStore, S3Datastore
from keyrotator.storage.providers.gcp_provider import GCPSecretManagerKeyStore, GCSDatastore
from keyrotator.storage.providers.kubernetes_provider import KubernetesKeyStore, primary_kid
from keyrotator.utils import b64d, b64e

ENV = "prio-env"


def k(*stamps):
    return Key.from_versions(*[Version(material=material(ts), creation_timestamp=ts) for ts in stamps])


class FailingKeyStore(InMemoryKeyStore):
    def put_batch_signing_key(self, locality, ingestor, key):
        raise StoreIOError("disk on fire")

    def put_packet_encryption_key(self, locality, key):
        raise StoreIOError("disk on fire")

    def get_batch_signing_key(self, locality, ingestor):
        raise StoreIOError("disk on fire")

    def get_packet_encryption_key(self, locality):
        raise StoreIOError("disk on fire")


def test_key_names():
    assert batch_signing_key_name(ENV, "asgard", "ingestor-1") == "prio-env-asgard-ingestor-1-batch-signing-key"
    assert packet_encryption_key_name(ENV, "asgard") == "prio-env-asgard-ingestion-packet-decryption-key"


# --------- memory ----------
def test_memory_key_store():
    s = InMemoryKeyStore()
    assert s.get_batch_signing_key("asgard", "ingestor-1").is_empty()
    assert s.get_packet_encryption_key("asgard").is_empty()

    s.put_batch_signing_key("asgard", "ingestor-1", k(1))
    s.put_packet_encryption_key("asgard", k(2))
    assert s.get_batch_signing_key("asgard", "ingestor-1") == k(1)
    assert s.get_packet_encryption_key("asgard") == k(2)
    assert s.put_count == 2
    assert s.batch_signing_key_puts[("asgard", "ingestor-1")] == 1


def test_memory_manifest_store_missing_manifest():
    s = InMemoryManifestStore()
    with pytest.raises(ObjectNotFoundError):
        s.get_data_share_processor_specific_manifest("asgard-ingestor-1")
    with pytest.raises(ObjectNotFoundError):
        s.get_ingestor_global_manifest()


# --------- decorators ----------
def test_backup_key_store_writes_both_reads_main():
    main, backup = InMemoryKeyStore(), InMemoryKeyStore()
    s = BackupKeyStore(main, backup)
    s.put_batch_signing_key("asgard", "ingestor-1", k(1))
    s.put_packet_encryption_key("asgard", k(2))
    assert main.get_batch_signing_key("asgard", "ingestor-1") == k(1)
    assert backup.get_batch_signing_key("asgard", "ingestor-1") == k(1)
    assert backup.get_packet_encryption_key("asgard") == k(2)

    backup.put_packet_encryption_key("asgard", k(3))
    assert s.get_packet_encryption_key("asgard") == k(2)


def test_backup_key_store_backup_failure():
    main = InMemoryKeyStore()
    s = BackupKeyStore(main, FailingKeyStore())
    with pytest.raises(StoreIOError, match="backup storage"):
        s.put_packet_encryption_key("asgard", k(1))
    # main written first
    assert main.get_packet_encryption_key("asgard") == k(1)


def test_backup_key_store_main_failure_skips_backup():
    backup = InMemoryKeyStore()
    s = BackupKeyStore(FailingKeyStore(), backup)
    with pytest.raises(StoreIOError, match="main storage"):
        s.put_batch_signing_key("asgard", "ingestor-1", k(1))
    assert backup.put_count == 0


def test_dry_run_key_store_logs_diff(caplog):
    inner = InMemoryKeyStore(packet_encryption_keys={"asgard": k(1)})
    s = DryRunKeyStore(inner)
    with caplog.at_level(logging.INFO, logger="keyrotator"):
        s.put_packet_encryption_key("asgard", k(2, 1))
        s.put_batch_signing_key("asgard", "ingestor-1", k(5))
    assert inner.put_count == 0
    assert inner.get_packet_encryption_key("asgard") == k(1)
    msgs = [r.getMessage() for r in caplog.records]
    assert ("DRY RUN: would have written packet encryption key for asgard: "
            "changed primary version 1 → 2; added version 2") in msgs
    assert any(m.startswith("DRY RUN: would have written batch signing key for (asgard, ingestor-1)") for m in msgs)


def test_dry_run_key_store_unreadable_inner(caplog):
    s = DryRunKeyStore(FailingKeyStore())
    with caplog.at_level(logging.INFO, logger="keyrotator"):
        s.put_packet_encryption_key("asgard", k(2))
    assert "DRY RUN: would have written packet encryption key for asgard" in [r.getMessage() for r in caplog.records]


def test_dry_run_manifest_store(caplog):
    inner = InMemoryManifestStore()
    s = DryRunManifestStore(inner)
    with caplog.at_level(logging.INFO, logger="keyrotator"):
        s.put_data_share_processor_specific_manifest("asgard-ingestor-1", DataShareProcessorSpecificManifest())
        s.put_ingestor_global_manifest(IngestorGlobalManifest())
    assert inner.put_count == 0
    msgs = [r.getMessage() for r in caplog.records]
    assert "DRY RUN: would have written manifest for asgard-ingestor-1" in msgs
    assert "DRY RUN: would have written global manifest" in msgs


# --------- sqlite ----------
def test_sqlite_key_store_roundtrip(tmp_path):
    db_path = tmp_path / "keys" / "keyring.db"
    s = SQLiteKeyStore(str(db_path), env=ENV)
    assert s.get_batch_signing_key("asgard", "ingestor-1").is_empty()

    s.put_batch_signing_key("asgard", "ingestor-1", k(1))
    s.put_batch_signing_key("asgard", "ingestor-1", k(2, 1))
    s.put_packet_encryption_key("asgard", k(3))
    assert s.get_batch_signing_key("asgard", "ingestor-1") == k(2, 1)
    assert s.get_packet_encryption_key("asgard") == k(3)

    names = [r["secret_name"] for r in s.list_keys()]
    assert names == [
        "prio-env-asgard-ingestion-packet-decryption-key",
        "prio-env-asgard-ingestor-1-batch-signing-key",
    ]
    events = s.audit_events("key_written")
    assert [e["payload"]["versions"] for e in events] == [[1], [2, 1], [3]]
    s.close()

    reopened = SQLiteKeyStore(str(db_path), env=ENV)
    assert reopened.get_packet_encryption_key("asgard") == k(3)


# --------- manifests over datastores ----------
def test_datastore_manifest_store_roundtrip(tmp_path):
    s = DatastoreManifestStore(LocalDatastore(tmp_path), key_prefix="manifests")
    m = DataShareProcessorSpecificManifest(format=1, ingestion_bucket="s3://bucket")
    s.put_data_share_processor_specific_manifest("asgard-ingestor-1", m)
    assert (tmp_path / "manifests" / "asgard-ingestor-1-manifest.json").exists()
    assert s.get_data_share_processor_specific_manifest("asgard-ingestor-1") == m

    g = IngestorGlobalManifest(format=1, server_identity=ServerIdentity(aws_iam_entity="arn"))
    s.put_ingestor_global_manifest(g)
    assert (tmp_path / "manifests" / "global-manifest.json").exists()
    assert s.get_ingestor_global_manifest() == g


def test_datastore_manifest_store_defaults():
    default = DataShareProcessorSpecificManifest(format=1, ingestion_bucket="s3://template")
    s = DatastoreManifestStore(InMemoryDatastore(), default_manifests={"asgard-ingestor-1": default})
    assert s.get_data_share_processor_specific_manifest("asgard-ingestor-1") == default
    with pytest.raises(ObjectNotFoundError):
        s.get_data_share_processor_specific_manifest("asgard-ingestor-2")


def test_datastore_manifest_store_bad_json():
    ds = InMemoryDatastore()
    ds.put("asgard-ingestor-1-manifest.json", b"not json")
    with pytest.raises(SerializationError):
        DatastoreManifestStore(ds).get_data_share_processor_specific_manifest("asgard-ingestor-1")


def test_local_datastore_missing_object(tmp_path):
    with pytest.raises(ObjectNotFoundError):
        LocalDatastore(tmp_path).get("nope.json")


# --------- kubernetes ----------
class FakeCoreV1Api:
    """Answers the secrets subset of CoreV1Api from a dict."""

    def __init__(self, secrets=None):
        self.secrets = {}
        self.calls = []
        for name, data in (secrets or {}).items():
            self.secrets[name] = k8s_client.V1Secret(
                metadata=k8s_client.V1ObjectMeta(name=name, namespace="ns"), data=data)

    def read_namespaced_secret(self, name, namespace):
        assert namespace == "ns"
        self.calls.append(("read", name))
        if name not in self.secrets:
            raise ApiException(status=404, reason="Not Found")
        stored = self.secrets[name]
        return k8s_client.V1Secret(
            metadata=k8s_client.V1ObjectMeta(name=name, namespace=namespace,
                                             resource_version=stored.metadata.resource_version),
            data=dict(stored.data or {}))

    def create_namespaced_secret(self, namespace, body):
        self.calls.append(("create", body.metadata.name))
        if body.metadata.name in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        self.secrets[body.metadata.name] = body
        return body

    def replace_namespaced_secret(self, name, namespace, body):
        self.calls.append(("replace", name))
        self.secrets[name] = body
        return body


def k8s_store(secrets=None):
    api = FakeCoreV1Api(secrets)
    return KubernetesKeyStore("ns", ENV, api=api), api


def secret_value(api, name, field):
    return b64d(api.secrets[name].data[field]).decode("utf-8")


def test_kubernetes_missing_secret_is_empty_key():
    s, _ = k8s_store()
    assert s.get_batch_signing_key("asgard", "ingestor-1").is_empty()


def test_kubernetes_put_creates_then_updates():
    s, api = k8s_store()
    name = "prio-env-asgard-ingestor-1-batch-signing-key"
    s.put_batch_signing_key("asgard", "ingestor-1", k(100, 50))
    assert ("create", name) in api.calls
    assert api.secrets[name].type == "Opaque"
    assert api.secrets[name].metadata.namespace == "ns"
    assert Key.from_json(secret_value(api, name, "key_versions")) == k(100, 50)
    assert secret_value(api, name, "primary_kid") == f"{name}-100"
    assert secret_value(api, name, "secret_key") == material(100).as_pkcs8()

    api.secrets[name].metadata.resource_version = "7"
    s.put_batch_signing_key("asgard", "ingestor-1", k(200, 100))
    assert api.calls[-1] == ("replace", name)
    assert api.secrets[name].metadata.resource_version == "7"
    assert s.get_batch_signing_key("asgard", "ingestor-1") == k(200, 100)


def test_kubernetes_packet_encryption_legacy_encoding():
    s, api = k8s_store()
    name = "prio-env-asgard-ingestion-packet-decryption-key"
    s.put_packet_encryption_key("asgard", k(200, 100))
    assert secret_value(api, name, "secret_key") == ",".join(
        [material(200).as_raw_rotation_format(), material(100).as_raw_rotation_format()])


def test_kubernetes_reads_legacy_secret_key():
    batch = "prio-env-asgard-ingestor-1-batch-signing-key"
    packet = "prio-env-asgard-ingestion-packet-decryption-key"
    s, _ = k8s_store({
        batch: {"secret_key": b64e(material("b").as_pkcs8().encode())},
        packet: {"secret_key": b64e(material("p").as_raw_rotation_format().encode())},
    })
    assert s.get_batch_signing_key("asgard", "ingestor-1") == Key.from_versions(
        Version(material=material("b"), creation_timestamp=0))
    assert s.get_packet_encryption_key("asgard") == Key.from_versions(
        Version(material=material("p"), creation_timestamp=0))


def test_kubernetes_placeholder_secret_key_is_empty():
    name = "prio-env-asgard-ingestion-packet-decryption-key"
    s, _ = k8s_store({name: {"secret_key": b64e(b"not-a-real-key")}})
    assert s.get_packet_encryption_key("asgard").is_empty()


def test_kubernetes_secret_without_data_is_empty():
    name = "prio-env-asgard-ingestion-packet-decryption-key"
    s, _ = k8s_store({name: None})
    assert s.get_packet_encryption_key("asgard").is_empty()


def test_kubernetes_bad_key_versions():
    name = "prio-env-asgard-ingestion-packet-decryption-key"
    s, _ = k8s_store({name: {"key_versions": b64e(b"{oops")}})
    with pytest.raises(SerializationError):
        s.get_packet_encryption_key("asgard")


def test_kubernetes_api_error():
    class BrokenApi(FakeCoreV1Api):
        def read_namespaced_secret(self, name, namespace):
            raise ApiException(status=500, reason="Internal Server Error")

    s = KubernetesKeyStore("ns", ENV, api=BrokenApi())
    with pytest.raises(StoreIOError, match="500"):
        s.get_packet_encryption_key("asgard")


def test_kubernetes_update_conflict():
    class RacingApi(FakeCoreV1Api):
        def replace_namespaced_secret(self, name, namespace, body):
            raise ApiException(status=409, reason="Conflict")

    name = "prio-env-asgard-ingestion-packet-decryption-key"
    s = KubernetesKeyStore("ns", ENV, api=RacingApi({name: {}}))
    with pytest.raises(StoreIOError, match="couldn't update secret"):
        s.put_packet_encryption_key("asgard", k(1))


def test_kubernetes_connection_error():
    class UnreachableApi(FakeCoreV1Api):
        def read_namespaced_secret(self, name, namespace):
            raise urllib3.exceptions.ProtocolError("connection refused")

    s = KubernetesKeyStore("ns", ENV, api=UnreachableApi())
    with pytest.raises(StoreIOError, match="connection refused"):
        s.put_packet_encryption_key("asgard", k(1))


def test_kubernetes_client_configuration_error(monkeypatch):
    from keyrotator.storage.providers import kubernetes_provider

    def no_config(*args, **kwargs):
        raise k8s_config.ConfigException("Service host/port is not set.")

    monkeypatch.setattr(kubernetes_provider.config, "load_incluster_config", no_config)
    monkeypatch.setattr(kubernetes_provider.config, "load_kube_config", no_config)
    with pytest.raises(StoreIOError, match="Kubernetes client configuration"):
        KubernetesKeyStore("ns", ENV)


def test_primary_kid():
    assert primary_kid("secret", Key()) == "secret"
    assert primary_kid("secret", k(0)) == "secret"
    assert primary_kid("secret", k(5, 0)) == "secret-5"


# --------- aws ----------
def client_error(code, op):
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class FakeSecretsManager:
    def __init__(self):
        self.secrets = {}

    def create_secret(self, Name):
        if Name in self.secrets:
            raise client_error("ResourceExistsException", "CreateSecret")
        self.secrets[Name] = []

    def put_secret_value(self, SecretId, SecretBinary):
        self.secrets[SecretId].append(SecretBinary)

    def get_secret_value(self, SecretId):
        if not self.secrets.get(SecretId):
            raise client_error("ResourceNotFoundException", "GetSecretValue")
        return {"SecretBinary": self.secrets[SecretId][-1]}


def test_aws_key_store():
    sm = FakeSecretsManager()
    s = AWSSecretsManagerKeyStore(ENV, client=sm)
    assert s.get_batch_signing_key("asgard", "ingestor-1").is_empty()
    s.put_batch_signing_key("asgard", "ingestor-1", k(1))
    s.put_batch_signing_key("asgard", "ingestor-1", k(2, 1))
    assert len(sm.secrets["prio-env-asgard-ingestor-1-batch-signing-key"]) == 2
    assert s.get_batch_signing_key("asgard", "ingestor-1") == k(2, 1)


def test_aws_key_store_create_error():
    class DeniedSecretsManager(FakeSecretsManager):
        def create_secret(self, Name):
            raise client_error("AccessDeniedException", "CreateSecret")

    with pytest.raises(StoreIOError, match="couldn't create AWS secret"):
        AWSSecretsManagerKeyStore(ENV, client=DeniedSecretsManager()).put_packet_encryption_key("asgard", k(1))


class FakeS3:
    def __init__(self):
        self.objects = {}
        self.puts = []

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}

    def put_object(self, **kwargs):
        self.puts.append(kwargs)
        self.objects[(kwargs["Bucket"], kwargs["Key"])] = kwargs["Body"]


def test_s3_datastore():
    s3 = FakeS3()
    ds = S3Datastore("manifests", client=s3)
    with pytest.raises(ObjectNotFoundError):
        ds.get("x.json")
    ds.put("x.json", b"{}")
    assert ds.get("x.json") == b"{}"
    assert s3.puts[0]["ACL"] == "public-read"
    assert s3.puts[0]["CacheControl"] == "no-cache"
    assert s3.puts[0]["ContentType"] == "application/json; charset=UTF-8"


def test_aws_client_creation_error(monkeypatch):
    from keyrotator.storage.providers import aws_provider

    def no_region(*args, **kwargs):
        raise NoRegionError()

    monkeypatch.setattr(aws_provider.boto3, "client", no_region)
    with pytest.raises(StoreIOError, match="secretsmanager"):
        AWSSecretsManagerKeyStore(ENV)
    with pytest.raises(StoreIOError, match="s3"):
        S3Datastore("manifests")


# --------- gcp ----------
class FakeGCPSecretManager:
    def __init__(self):
        self.secrets = {}

    def create_secret(self, request):
        name = f"{request['parent']}/secrets/{request['secret_id']}"
        if name in self.secrets:
            raise gexc.AlreadyExists("exists")
        assert request["secret"] == {"replication": {"automatic": {}}}
        self.secrets[name] = []

    def add_secret_version(self, request):
        self.secrets[request["parent"]].append(request["payload"]["data"])

    def access_secret_version(self, request):
        name = request["name"][:-len("/versions/latest")]
        if not self.secrets.get(name):
            raise gexc.NotFound("missing")
        return SimpleNamespace(payload=SimpleNamespace(data=self.secrets[name][-1]))


def test_gcp_key_store():
    sm = FakeGCPSecretManager()
    s = GCPSecretManagerKeyStore(ENV, "my-project", client=sm)
    assert s.get_packet_encryption_key("asgard").is_empty()
    s.put_packet_encryption_key("asgard", k(1))
    s.put_packet_encryption_key("asgard", k(2, 1))
    assert len(sm.secrets["projects/my-project/secrets/prio-env-asgard-ingestion-packet-decryption-key"]) == 2
    assert s.get_packet_encryption_key("asgard") == k(2, 1)


class FakeBlob:
    def __init__(self, bucket, name):
        self.bucket, self.name = bucket, name
        self.cache_control = None

    def download_as_bytes(self):
        if self.name not in self.bucket.objects:
            raise gexc.NotFound("no such object")
        return self.bucket.objects[self.name]

    def upload_from_string(self, data, content_type=None):
        self.bucket.objects[self.name] = data
        self.bucket.meta[self.name] = (content_type, self.cache_control)


class FakeBucket:
    def __init__(self):
        self.objects, self.meta = {}, {}

    def blob(self, name):
        return FakeBlob(self, name)


def test_gcs_datastore():
    bucket = FakeBucket()
    ds = GCSDatastore("manifests", client=SimpleNamespace(bucket=lambda name: bucket))
    with pytest.raises(ObjectNotFoundError):
        ds.get("x.json")
    ds.put("x.json", b"{}")
    assert ds.get("x.json") == b"{}"
    assert bucket.meta["x.json"] == ("application/json; charset=UTF-8", "no-cache")


def test_gcp_client_creation_error(monkeypatch):
    from keyrotator.storage.providers import gcp_provider

    def no_credentials(*args, **kwargs):
        raise DefaultCredentialsError("no default credentials")

    monkeypatch.setattr(gcp_provider.secretmanager, "SecretManagerServiceClient", no_credentials)
    monkeypatch.setattr(gcp_provider.gcs_storage, "Client", no_credentials)
    with pytest.raises(StoreIOError, match="no default credentials"):
        GCPSecretManagerKeyStore(ENV, "my-project")
    with pytest.raises(StoreIOError, match="no default credentials"):
        GCSDatastore("manifests")


# --------- factories ----------
def test_load_key_store(tmp_path, monkeypatch):
    assert isinstance(load_key_store({"provider": "memory"}), InMemoryKeyStore)
    s = load_key_store({"provider": "sqlite", "sqlite_path": str(tmp_path / "k.db"), "env": ENV})
    assert isinstance(s, SQLiteKeyStore)

    monkeypatch.delenv("KEYROTATOR_KUBERNETES_NAMESPACE", raising=False)
    monkeypatch.setenv("KEYROTATOR_KEY_STORE", "memory")
    assert isinstance(load_key_store(), InMemoryKeyStore)

    with pytest.raises(ConfigValidationError):
        load_key_store({"provider": "floppy"})
    with pytest.raises(ConfigValidationError):
        load_key_store({"provider": "kubernetes"})


def test_load_backup_key_store_rejects_unknown():
    with pytest.raises(ConfigValidationError):
        load_backup_key_store("azure", ENV)
    with pytest.raises(ConfigValidationError):
        load_backup_key_store("gcp:", ENV)


def test_load_manifest_store(tmp_path):
    s = load_manifest_store(f"file://{tmp_path}")
    assert isinstance(s.ds, LocalDatastore)
    s.put_data_share_processor_specific_manifest("asgard-ingestor-1", DataShareProcessorSpecificManifest())
    assert (tmp_path / "asgard-ingestor-1-manifest.json").exists()

    m = load_manifest_store("memory://", key_prefix="pfx")
    assert isinstance(m.ds, InMemoryDatastore)
    assert m.key_for("global") == "pfx/global-manifest.json"

    for bad in ("ftp://bucket", "s3://", "bucket-name"):
        with pytest.raises(ConfigValidationError):
            load_manifest_store(bad)
