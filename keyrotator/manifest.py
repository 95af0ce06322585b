"""
keyrotator.manifest
-------------------
Manifest documents advertised to peers, and recomputation of their key
sections from the current versioned keys.

A data share processor specific manifest lists every live batch signing
public key version (so peers can verify batches signed with any of them) and
a CSR for the primary packet encryption key version (the only one peers
should encrypt to). Only the key sections are owned here; bucket names and
identities are carried through untouched.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import KeyValidationError, ManifestValidationError, SerializationError
from .key import Key
from .utils import rfc3339, semicolon_join

# Validity period advertised for newly published batch signing public keys.
BATCH_SIGNING_PUBLIC_KEY_VALIDITY = timedelta(days=100 * 365)


def batch_signing_key_id_prefix(environment: str, locality: str, ingestor: str) -> str:
    return f"{environment}-{locality}-{ingestor}-batch-signing-key"


def packet_encryption_key_id_prefix(environment: str, locality: str) -> str:
    return f"{environment}-{locality}-ingestion-packet-decryption-key"


def key_id(prefix: str, creation_timestamp: int) -> str:
    # timestamp 0 marks a key that predates rotation; it keeps its bare name
    if creation_timestamp != 0:
        return f"{prefix}-{creation_timestamp}"
    return prefix


@dataclass(frozen=True)
class BatchSigningPublicKey:
    public_key: str   # PEM PKIX SubjectPublicKeyInfo; must be a P-256 key
    expiration: str   # RFC 3339 UTC

    def to_dict(self) -> Dict[str, Any]:
        return {"public-key": self.public_key, "expiration": self.expiration}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchSigningPublicKey":
        return cls(public_key=data.get("public-key", ""), expiration=data.get("expiration", ""))

    def to_public_key(self) -> ec.EllipticCurvePublicKey:
        try:
            pub = serialization.load_pem_public_key(self.public_key.encode("ascii"))
        except ValueError as err:
            raise SerializationError(f"couldn't parse as PKIX: {err}") from err
        if not isinstance(pub, ec.EllipticCurvePublicKey):
            raise SerializationError(f"PKIX public key was a {type(pub).__name__}, want an EC public key")
        return pub


@dataclass(frozen=True)
class PacketEncryptionCertificate:
    certificate_signing_request: str  # PEM PKCS#10

    def to_dict(self) -> Dict[str, Any]:
        return {"certificate-signing-request": self.certificate_signing_request}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PacketEncryptionCertificate":
        return cls(certificate_signing_request=data.get("certificate-signing-request", ""))

    def to_public_key(self) -> ec.EllipticCurvePublicKey:
        try:
            csr = x509.load_pem_x509_csr(self.certificate_signing_request.encode("ascii"))
        except ValueError as err:
            raise SerializationError(f"couldn't parse as CSR: {err}") from err
        pub = csr.public_key()
        if not isinstance(pub, ec.EllipticCurvePublicKey):
            raise SerializationError(f"CSR public key was a {type(pub).__name__}, want an EC public key")
        return pub


def _map_from_dict(data, cls):
    return {kid: cls.from_dict(v) for kid, v in (data or {}).items()}


def _map_to_dict(m):
    return {kid: v.to_dict() for kid, v in m.items()}


def _diff_maps(kind: str, new: Dict[str, Any], old: Dict[str, Any]):
    diffs = []
    for kid in sorted(new.keys() | old.keys()):
        if kid not in old:
            diffs.append(f"added {kind} key version {kid!r}")
        elif kid not in new:
            diffs.append(f"removed {kind} key version {kid!r}")
        elif old[kid] != new[kid]:
            diffs.append(f"modified key material for {kind} key version {kid!r}")
    return diffs


def _parse_json(data, what: str) -> Dict[str, Any]:
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    try:
        parsed = json.loads(data)
    except ValueError as err:
        raise SerializationError(f"couldn't unmarshal {what} from JSON: {err}") from err
    if not isinstance(parsed, dict):
        raise SerializationError(f"{what} JSON must be an object")
    return parsed


@dataclass(frozen=True)
class DataShareProcessorSpecificManifest:
    """The manifest advertised by a single data share processor."""
    format: int = 0
    ingestion_identity: str = ""
    ingestion_bucket: str = ""
    peer_validation_identity: str = ""
    peer_validation_bucket: str = ""
    batch_signing_public_keys: Dict[str, BatchSigningPublicKey] = field(default_factory=dict)
    packet_encryption_keys: Dict[str, PacketEncryptionCertificate] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"format": self.format}
        if self.ingestion_identity:
            d["ingestion-identity"] = self.ingestion_identity
        d["ingestion-bucket"] = self.ingestion_bucket
        if self.peer_validation_identity:
            d["peer-validation-identity"] = self.peer_validation_identity
        d["peer-validation-bucket"] = self.peer_validation_bucket
        d["batch-signing-public-keys"] = _map_to_dict(self.batch_signing_public_keys)
        d["packet-encryption-keys"] = _map_to_dict(self.packet_encryption_keys)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataShareProcessorSpecificManifest":
        try:
            return cls(
                format=int(data.get("format", 0)),
                ingestion_identity=data.get("ingestion-identity", ""),
                ingestion_bucket=data.get("ingestion-bucket", ""),
                peer_validation_identity=data.get("peer-validation-identity", ""),
                peer_validation_bucket=data.get("peer-validation-bucket", ""),
                batch_signing_public_keys=_map_from_dict(
                    data.get("batch-signing-public-keys"), BatchSigningPublicKey),
                packet_encryption_keys=_map_from_dict(
                    data.get("packet-encryption-keys"), PacketEncryptionCertificate),
            )
        except (AttributeError, TypeError, ValueError) as err:
            raise SerializationError(f"malformed manifest: {err}") from err

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data) -> "DataShareProcessorSpecificManifest":
        return cls.from_dict(_parse_json(data, "manifest"))

    def equal_modulo_keys(self, other: "DataShareProcessorSpecificManifest") -> bool:
        return (self.format == other.format
                and self.ingestion_identity == other.ingestion_identity
                and self.ingestion_bucket == other.ingestion_bucket
                and self.peer_validation_identity == other.peer_validation_identity
                and self.peer_validation_bucket == other.peer_validation_bucket)

    def diff(self, old: "DataShareProcessorSpecificManifest") -> str:
        """Describe the changes from `old` to this manifest, for logging."""
        diffs = []
        if self.format != old.format:
            diffs.append(f"changed format {old.format} → {self.format}")
        if self.ingestion_identity != old.ingestion_identity:
            diffs.append(f"changed ingestion identity {old.ingestion_identity!r} → {self.ingestion_identity!r}")
        if self.ingestion_bucket != old.ingestion_bucket:
            diffs.append(f"changed ingestion bucket {old.ingestion_bucket!r} → {self.ingestion_bucket!r}")
        if self.peer_validation_identity != old.peer_validation_identity:
            diffs.append(f"changed peer validation identity "
                         f"{old.peer_validation_identity!r} → {self.peer_validation_identity!r}")
        if self.peer_validation_bucket != old.peer_validation_bucket:
            diffs.append(f"changed peer validation bucket "
                         f"{old.peer_validation_bucket!r} → {self.peer_validation_bucket!r}")
        diffs += _diff_maps("batch signing", self.batch_signing_public_keys, old.batch_signing_public_keys)
        diffs += _diff_maps("packet encryption", self.packet_encryption_keys, old.packet_encryption_keys)
        return semicolon_join(*diffs)

    def update_keys(self, cfg: "UpdateKeysConfig") -> "DataShareProcessorSpecificManifest":
        """Return a copy of this manifest with key sections rebuilt from cfg's keys.

        Entries for key versions already listed are reused verbatim, so
        updating twice with the same keys yields the same manifest.
        """
        cfg.validate()
        if not cfg.skip_pre_update_validations:
            try:
                _validate_pre_update(cfg, self)
                _validate_key_material(cfg, self)
            except ManifestValidationError as err:
                raise ManifestValidationError(f"manifest pre-update validation error: {err}") from err

        now = cfg.now or datetime.now(timezone.utc)
        bspks: Dict[str, BatchSigningPublicKey] = {}
        for v in cfg.batch_signing_key:
            kid = cfg.batch_signing_key_id(v.creation_timestamp)
            existing = self.batch_signing_public_keys.get(kid)
            if existing is not None:
                bspks[kid] = existing
                continue
            bspks[kid] = BatchSigningPublicKey(
                public_key=v.material.public_as_pkix(),
                expiration=rfc3339(now + BATCH_SIGNING_PUBLIC_KEY_VALIDITY),
            )

        primary = cfg.packet_encryption_key.primary
        kid = cfg.packet_encryption_key_id(primary.creation_timestamp)
        pec = self.packet_encryption_keys.get(kid)
        if pec is None:
            try:
                csr = primary.material.public_as_csr(cfg.packet_encryption_key_csr_fqdn)
            except SerializationError as err:
                raise SerializationError(
                    f"couldn't create CSR for packet encryption key version with creation "
                    f"timestamp {primary.creation_timestamp}: {err}") from err
            pec = PacketEncryptionCertificate(certificate_signing_request=csr)

        new_m = replace(self, batch_signing_public_keys=bspks, packet_encryption_keys={kid: pec})

        if not cfg.skip_post_update_validations:
            try:
                _validate_post_update(cfg, new_m, self)
                _validate_key_material(cfg, new_m)
            except ManifestValidationError as err:
                raise ManifestValidationError(f"manifest post-update validation error: {err}") from err
        return new_m


@dataclass(frozen=True)
class UpdateKeysConfig:
    batch_signing_key: Key
    batch_signing_key_id_prefix: str
    packet_encryption_key: Key
    packet_encryption_key_id_prefix: str
    packet_encryption_key_csr_fqdn: str
    skip_pre_update_validations: bool = False
    skip_post_update_validations: bool = False
    now: Optional[datetime] = None  # used for expiration of new batch signing entries

    def validate(self) -> None:
        if self.batch_signing_key.is_empty():
            raise KeyValidationError("invalid update config: batch signing key has no key versions")
        if self.packet_encryption_key.is_empty():
            raise KeyValidationError("invalid update config: packet encryption key has no key versions")

    def batch_signing_key_id(self, ts: int) -> str:
        return key_id(self.batch_signing_key_id_prefix, ts)

    def packet_encryption_key_id(self, ts: int) -> str:
        return key_id(self.packet_encryption_key_id_prefix, ts)


def _validate_pre_update(cfg: UpdateKeysConfig, m: DataShareProcessorSpecificManifest) -> None:
    # A manifest that already lists batch signing keys must list the new primary.
    if m.batch_signing_public_keys:
        kid = cfg.batch_signing_key_id(cfg.batch_signing_key.primary.creation_timestamp)
        if kid not in m.batch_signing_public_keys:
            raise ManifestValidationError(f"update's batch signing key primary version {kid!r} not included in manifest")

    # Every listed packet encryption key version must still exist.
    if m.packet_encryption_keys:
        known = {cfg.packet_encryption_key_id(v.creation_timestamp) for v in cfg.packet_encryption_key}
        for kid in sorted(m.packet_encryption_keys):
            if kid not in known:
                raise ManifestValidationError(f"manifest packet encryption key version {kid!r} not included in update")


def _validate_post_update(cfg: UpdateKeysConfig, m: DataShareProcessorSpecificManifest,
                          old: DataShareProcessorSpecificManifest) -> None:
    if not m.batch_signing_public_keys:
        raise ManifestValidationError("no batch signing public keys")

    want = {cfg.batch_signing_key_id(v.creation_timestamp) for v in cfg.batch_signing_key}
    for kid in sorted(m.batch_signing_public_keys):
        if kid not in want:
            raise ManifestValidationError(f"manifest included unexpected batch signing key version {kid!r}")
    missing = sorted(want - m.batch_signing_public_keys.keys())
    if missing:
        raise ManifestValidationError(f"manifest missing expected batch signing key version {missing[0]!r}")

    if len(m.packet_encryption_keys) != 1:
        raise ManifestValidationError(
            f"expected exactly one packet encryption public key (had {len(m.packet_encryption_keys)})")
    pek_kid = cfg.packet_encryption_key_id(cfg.packet_encryption_key.primary.creation_timestamp)
    for kid in m.packet_encryption_keys:
        if kid != pek_kid:
            raise ManifestValidationError(f"manifest included unexpected packet encryption key version {kid!r}")

    if not m.equal_modulo_keys(old):
        raise ManifestValidationError("non-key data modified")

    for kid, entry in m.batch_signing_public_keys.items():
        if kid in old.batch_signing_public_keys and old.batch_signing_public_keys[kid] != entry:
            raise ManifestValidationError(f"pre-existing batch signing key {kid!r} modified")
    for kid, entry in m.packet_encryption_keys.items():
        if kid in old.packet_encryption_keys and old.packet_encryption_keys[kid] != entry:
            raise ManifestValidationError(f"pre-existing packet encryption key {kid!r} modified")


def _validate_key_material(cfg: UpdateKeysConfig, m: DataShareProcessorSpecificManifest) -> None:
    # Only versions present in both the key and the manifest are compared.
    checks = (
        ("batch signing", cfg.batch_signing_key, cfg.batch_signing_key_id, m.batch_signing_public_keys),
        ("packet encryption", cfg.packet_encryption_key, cfg.packet_encryption_key_id, m.packet_encryption_keys),
    )
    for kind, k, kid_for, entries in checks:
        for v in k:
            kid = kid_for(v.creation_timestamp)
            entry = entries.get(kid)
            if entry is None:
                continue
            try:
                manifest_pub = entry.to_public_key()
            except SerializationError as err:
                raise ManifestValidationError(
                    f"couldn't parse {kind} key version {kid!r} from manifest: {err}") from err
            if manifest_pub.public_numbers() != v.material.public_key().public_numbers():
                raise ManifestValidationError(f"public key mismatch in {kind} key version {kid!r}")


@dataclass(frozen=True)
class ServerIdentity:
    aws_iam_entity: str = ""
    gcp_service_account_id: str = ""
    gcp_service_account_email: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aws-iam-entity": self.aws_iam_entity,
            "gcp-service-account-id": self.gcp_service_account_id,
            "gcp-service-account-email": self.gcp_service_account_email,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ServerIdentity":
        data = data or {}
        return cls(
            aws_iam_entity=data.get("aws-iam-entity", ""),
            gcp_service_account_id=str(data.get("gcp-service-account-id", "")),
            gcp_service_account_email=data.get("gcp-service-account-email", ""),
        )


@dataclass(frozen=True)
class IngestorGlobalManifest:
    """The global manifest advertised by an ingestion server."""
    format: int = 0
    server_identity: ServerIdentity = field(default_factory=ServerIdentity)
    batch_signing_public_keys: Dict[str, BatchSigningPublicKey] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.format,
            "server-identity": self.server_identity.to_dict(),
            "batch-signing-public-keys": _map_to_dict(self.batch_signing_public_keys),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestorGlobalManifest":
        try:
            return cls(
                format=int(data.get("format", 0)),
                server_identity=ServerIdentity.from_dict(data.get("server-identity")),
                batch_signing_public_keys=_map_from_dict(
                    data.get("batch-signing-public-keys"), BatchSigningPublicKey),
            )
        except (AttributeError, TypeError, ValueError) as err:
            raise SerializationError(f"malformed global manifest: {err}") from err

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data) -> "IngestorGlobalManifest":
        return cls.from_dict(_parse_json(data, "global manifest"))

    def diff(self, old: "IngestorGlobalManifest") -> str:
        diffs = []
        if self.format != old.format:
            diffs.append(f"changed format {old.format} → {self.format}")
        if self.server_identity != old.server_identity:
            diffs.append("changed server identity")
        diffs += _diff_maps("batch signing", self.batch_signing_public_keys, old.batch_signing_public_keys)
        return semicolon_join(*diffs)
