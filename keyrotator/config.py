"""
keyrotator.config
-----------------
Run configuration for the key-rotator process.

Every flag has an environment-variable default (KEYROTATOR_<FLAG>, upper-cased
with dashes as underscores) so the job can be configured from a Kubernetes
CronJob spec without a long argument list.
"""

from __future__ import annotations
import argparse, json, os, re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from .errors import ConfigValidationError, SerializationError
from .key import KeyType, RotationConfig
from .manifest import DataShareProcessorSpecificManifest

_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "9h", "1h30m", "168h", "30s" or "0"."""
    s = value.strip()
    sign = 1
    if s[:1] in ("+", "-"):
        sign = -1 if s[0] == "-" else 1
        s = s[1:]
    if s == "0":
        return timedelta(0)
    if not s:
        raise ConfigValidationError(f"invalid duration {value!r}")
    total = timedelta(0)
    pos = 0
    for m in _DURATION_RE.finditer(s):
        if m.start() != pos:
            raise ConfigValidationError(f"invalid duration {value!r}")
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(s):
        raise ConfigValidationError(f"invalid duration {value!r}")
    return sign * total


def format_duration(td: timedelta) -> str:
    secs = int(td.total_seconds())
    if secs == 0:
        return "0"
    h, rem = divmod(secs, 3600)
    m, s = divmod(rem, 60)
    return "".join(f"{v}{u}" for v, u in ((h, "h"), (m, "m"), (s, "s")) if v)


# 9 months, 1 week and 13 months, in 30-day months
DEFAULT_CREATE_MIN_AGE = timedelta(days=9 * 30)
DEFAULT_BATCH_SIGNING_PRIMARY_MIN_AGE = timedelta(days=7)
DEFAULT_DELETE_MIN_AGE = timedelta(days=13 * 30)
DEFAULT_DELETE_MIN_COUNT = 2
DEFAULT_TIMEOUT = timedelta(minutes=10)


@dataclass
class KeyKindSettings:
    enable_rotation: bool = True
    create_min_age: timedelta = DEFAULT_CREATE_MIN_AGE
    primary_min_age: timedelta = timedelta(0)
    delete_min_age: timedelta = DEFAULT_DELETE_MIN_AGE
    delete_min_count: int = DEFAULT_DELETE_MIN_COUNT
    always_write: bool = False

    def rotation_config(self) -> RotationConfig:
        return RotationConfig(
            create_key=KeyType.P256.new,
            create_min_age=self.create_min_age,
            primary_min_age=self.primary_min_age,
            delete_min_age=self.delete_min_age,
            delete_min_key_count=self.delete_min_count,
        )


@dataclass
class RotatorSettings:
    prio_environment: str = ""
    kubernetes_namespace: str = ""
    manifest_bucket_url: str = ""
    locality: str = ""
    ingestors: List[str] = field(default_factory=list)
    csr_fqdn: str = ""

    batch_signing: KeyKindSettings = field(
        default_factory=lambda: KeyKindSettings(primary_min_age=DEFAULT_BATCH_SIGNING_PRIMARY_MIN_AGE))
    packet_encryption: KeyKindSettings = field(default_factory=KeyKindSettings)
    skip_manifest_pre_update_validations: bool = False
    skip_manifest_post_update_validations: bool = False

    backup: str = ""
    dry_run: bool = True
    timeout: timedelta = DEFAULT_TIMEOUT
    default_manifest_by_ingestor: Dict[str, DataShareProcessorSpecificManifest] = field(default_factory=dict)
    aws_region: Optional[str] = None
    push_gateway: str = ""
    key_store: str = "kubernetes"
    sqlite_path: str = "db/keyrotator.db"
    kubeconfig: Optional[str] = None
    console_logs: bool = False

    def validate(self) -> None:
        for name in ("prio_environment", "manifest_bucket_url", "locality", "csr_fqdn"):
            if not getattr(self, name):
                raise ConfigValidationError(f"--{name.replace('_', '-')} is required")
        if self.key_store == "kubernetes" and not self.kubernetes_namespace:
            raise ConfigValidationError("--kubernetes-namespace is required")
        if not self.ingestors or any(not i for i in self.ingestors):
            raise ConfigValidationError("--ingestors must be comma-separated list of ingestor names")
        if self.timeout < timedelta(0):
            raise ConfigValidationError("--timeout must be non-negative")
        for kind, s in (("batch-signing-key", self.batch_signing), ("packet-encryption-key", self.packet_encryption)):
            try:
                s.rotation_config().validate()
            except ConfigValidationError as err:
                raise ConfigValidationError(f"invalid --{kind}-* flags: {err}") from err

    def default_manifest_by_dsp(self) -> Dict[str, DataShareProcessorSpecificManifest]:
        return {f"{self.locality}-{ingestor}": m for ingestor, m in self.default_manifest_by_ingestor.items()}

    @property
    def timeout_seconds(self) -> Optional[float]:
        # zero disables the deadline
        secs = self.timeout.total_seconds()
        return secs if secs > 0 else None

    @classmethod
    def from_args(cls, argv=None) -> "RotatorSettings":
        args = build_parser().parse_args(argv)
        return cls.from_namespace(args)

    @classmethod
    def from_namespace(cls, args: argparse.Namespace) -> "RotatorSettings":
        def kind(prefix: str) -> KeyKindSettings:
            return KeyKindSettings(
                enable_rotation=getattr(args, f"{prefix}_enable_rotation"),
                create_min_age=getattr(args, f"{prefix}_create_min_age"),
                primary_min_age=getattr(args, f"{prefix}_primary_min_age"),
                delete_min_age=getattr(args, f"{prefix}_delete_min_age"),
                delete_min_count=getattr(args, f"{prefix}_delete_min_count"),
                always_write=getattr(args, f"{prefix}_always_write"),
            )

        return cls(
            prio_environment=args.prio_environment,
            kubernetes_namespace=args.kubernetes_namespace,
            manifest_bucket_url=args.manifest_bucket_url,
            locality=args.locality,
            ingestors=[i.strip() for i in args.ingestors.split(",")] if args.ingestors else [],
            csr_fqdn=args.csr_fqdn,
            batch_signing=kind("batch_signing_key"),
            packet_encryption=kind("packet_encryption_key"),
            skip_manifest_pre_update_validations=args.unsafe_skip_manifest_pre_update_validations,
            skip_manifest_post_update_validations=args.unsafe_skip_manifest_post_update_validations,
            backup=args.backup,
            dry_run=args.dry_run,
            timeout=args.timeout,
            default_manifest_by_ingestor=parse_default_manifests(args.default_manifest_by_ingestor),
            aws_region=args.aws_region or None,
            push_gateway=args.push_gateway,
            key_store=args.key_store,
            sqlite_path=args.sqlite_path,
            kubeconfig=args.kubeconfig or None,
            console_logs=args.console_logs,
        )


def parse_default_manifests(value: str) -> Dict[str, DataShareProcessorSpecificManifest]:
    if not value:
        return {}
    try:
        raw = json.loads(value)
    except ValueError as err:
        raise ConfigValidationError(f"--default-manifest-by-ingestor cannot be deserialized: {err}") from err
    if not isinstance(raw, dict):
        raise ConfigValidationError("--default-manifest-by-ingestor must be a JSON object")
    try:
        return {ingestor: DataShareProcessorSpecificManifest.from_dict(m) for ingestor, m in raw.items()}
    except SerializationError as err:
        raise ConfigValidationError(f"--default-manifest-by-ingestor cannot be deserialized: {err}") from err


# --------- argparse ----------
def _env(flag: str, default: str = "") -> str:
    return os.getenv("KEYROTATOR_" + flag.replace("-", "_").upper(), default)


def _env_bool(flag: str, default: bool) -> bool:
    v = _env(flag)
    if not v:
        return default
    return v.lower() in ("1", "true", "yes", "on")


def _duration_arg(value: str) -> timedelta:
    try:
        return parse_duration(value)
    except ConfigValidationError as err:
        raise argparse.ArgumentTypeError(str(err)) from err


def _add_kind_flags(p: argparse.ArgumentParser, prefix: str, label: str,
                    primary_default: timedelta) -> None:
    g = p.add_argument_group(f"{label} key rotation")
    flag = f"{prefix}-enable-rotation"
    g.add_argument(f"--{flag}", action=argparse.BooleanOptionalAction, default=_env_bool(flag, True),
                   help=f"Rotate {label} keys. A key with no versions gets one regardless")
    flag = f"{prefix}-create-min-age"
    g.add_argument(f"--{flag}", type=_duration_arg,
                   default=parse_duration(_env(flag, format_duration(DEFAULT_CREATE_MIN_AGE))),
                   help=f"How frequently to create a new {label} key version")
    flag = f"{prefix}-primary-min-age"
    g.add_argument(f"--{flag}", type=_duration_arg,
                   default=parse_duration(_env(flag, format_duration(primary_default))),
                   help=f"How old a {label} key version must be before it can become primary")
    flag = f"{prefix}-delete-min-age"
    g.add_argument(f"--{flag}", type=_duration_arg,
                   default=parse_duration(_env(flag, format_duration(DEFAULT_DELETE_MIN_AGE))),
                   help=f"How old a {label} key version must be before it can be deleted")
    flag = f"{prefix}-delete-min-count"
    g.add_argument(f"--{flag}", type=int, default=int(_env(flag, str(DEFAULT_DELETE_MIN_COUNT))),
                   help=f"Minimum number of {label} key versions left undeleted after rotation")
    flag = f"{prefix}-always-write"
    g.add_argument(f"--{flag}", action=argparse.BooleanOptionalAction, default=_env_bool(flag, False),
                   help=f"Always write {label} keys, even if unchanged")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="key-rotator", description="Rotate Prio keys and update manifests.")

    p.add_argument("--prio-environment", default=_env("prio-environment"),
                   help="The prio environment, e.g. 'prod-us'")
    p.add_argument("--kubernetes-namespace", default=_env("kubernetes-namespace"),
                   help="The Kubernetes namespace holding key secrets")
    p.add_argument("--manifest-bucket-url", default=_env("manifest-bucket-url"),
                   help="Manifest bucket, e.g. 's3://bucket-name', 'gs://bucket-name' or 'file:///dir'")
    p.add_argument("--locality", default=_env("locality"), help="The Prio locality, e.g. 'us-ca'")
    p.add_argument("--ingestors", default=_env("ingestors"),
                   help="Comma-separated list of ingestors, e.g. 'apple,g-enpa'")
    p.add_argument("--csr-fqdn", default=_env("csr-fqdn"), help="FQDN used as common name in generated CSRs")

    _add_kind_flags(p, "batch-signing-key", "batch signing", DEFAULT_BATCH_SIGNING_PRIMARY_MIN_AGE)
    _add_kind_flags(p, "packet-encryption-key", "packet encryption", timedelta(0))

    p.add_argument("--unsafe-skip-manifest-pre-update-validations", action="store_true",
                   default=_env_bool("unsafe-skip-manifest-pre-update-validations", False),
                   help="Skip manifest pre-update validations; only for incident response")
    p.add_argument("--unsafe-skip-manifest-post-update-validations", action="store_true",
                   default=_env_bool("unsafe-skip-manifest-post-update-validations", False),
                   help="Skip manifest post-update validations; only for incident response")

    p.add_argument("--backup", default=_env("backup"),
                   help="'aws' or 'gcp:<project-id>' to mirror keys to a cloud secret manager")
    p.add_argument("--dry-run", action=argparse.BooleanOptionalAction, default=_env_bool("dry-run", True),
                   help="Only report what would have been written (default on)")
    p.add_argument("--timeout", type=_duration_arg, default=parse_duration(_env("timeout", "10m")),
                   help="Deadline for the whole run; 0 disables it")
    p.add_argument("--default-manifest-by-ingestor", default=_env("default-manifest-by-ingestor"),
                   help="JSON map from ingestor to a template manifest for newly provisioned localities")
    p.add_argument("--aws-region", default=_env("aws-region"), help="AWS region for manifest and backup storage")
    p.add_argument("--push-gateway", default=_env("push-gateway"), help="Prometheus push gateway address")
    p.add_argument("--key-store", choices=["kubernetes", "sqlite", "memory"],
                   default=_env("key-store", "kubernetes"), help="Key store backend")
    p.add_argument("--sqlite-path", default=_env("sqlite-path", "db/keyrotator.db"),
                   help="Keyring file for --key-store=sqlite")
    p.add_argument("--kubeconfig", default=_env("kubeconfig"),
                   help="kubeconfig file for the kubernetes key store; defaults to in-cluster credentials")
    p.add_argument("--console-logs", action="store_true", default=_env_bool("console-logs", False),
                   help="Human-readable log lines instead of JSON")
    return p
