"""
keyrotator.rotator
------------------
Rotation of every key belonging to one locality, and publication of the
corresponding public keys in each ingestor's manifest.

A run is: read all keys and manifests (concurrently), rotate keys, recompute
every manifest, write changed keys (concurrently), then write changed
manifests (concurrently). Keys are always written before any manifest so a
crash can never leave a published public key whose private half was lost;
since manifests are recomputed from scratch on every run, the next run
finishes any manifest write that a crash interrupted.
"""

from __future__ import annotations
import threading, time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from .errors import ConfigValidationError, DeadlineExceededError, KeyRotatorError, wrap
from .key import Key, RotationConfig
from .logger import get_logger
from .manifest import (
    DataShareProcessorSpecificManifest, UpdateKeysConfig,
    batch_signing_key_id_prefix, packet_encryption_key_id_prefix,
)
from .metrics import RotatorMetrics
from .storage.provider import KeyStore, ManifestStore
from .utils import Timestamp, semicolon_join, unix_seconds

log = get_logger("keyrotator.rotator")


def dsp_name(locality: str, ingestor: str) -> str:
    return f"{locality}-{ingestor}"


@dataclass
class RotateKeyConfig:
    enable_rotation: bool = True   # if False, non-empty keys are carried forward unchanged
    always_write: bool = False     # write keys back even when unchanged
    rotation_cfg: RotationConfig = field(default_factory=RotationConfig)


@dataclass
class RotateKeysConfig:
    key_store: KeyStore
    manifest_store: ManifestStore
    now: Timestamp
    locality: str
    ingestors: Sequence[str]
    environment: str
    csr_fqdn: str
    batch_cfg: RotateKeyConfig
    packet_cfg: RotateKeyConfig
    skip_manifest_pre_update_validations: bool = False
    skip_manifest_post_update_validations: bool = False
    metrics: Optional[RotatorMetrics] = None
    timeout: Optional[float] = None            # seconds for the whole run
    cancel: Optional[threading.Event] = None   # set by the caller to abort the run

    def validate(self) -> None:
        if not self.locality:
            raise ConfigValidationError("locality must be set")
        if not self.environment:
            raise ConfigValidationError("environment must be set")
        if not self.csr_fqdn:
            raise ConfigValidationError("csr_fqdn must be set")
        if not self.ingestors:
            raise ConfigValidationError("at least one ingestor must be given")
        if len(set(self.ingestors)) != len(self.ingestors):
            raise ConfigValidationError(f"duplicate ingestors in {list(self.ingestors)}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigValidationError("timeout must be positive")
        for kind, c in (("batch signing", self.batch_cfg), ("packet encryption", self.packet_cfg)):
            try:
                c.rotation_cfg.validate()
            except ConfigValidationError as err:
                raise ConfigValidationError(f"invalid {kind} rotation config: {err}") from err


@dataclass
class RotationResult:
    packet_encryption_key: Key
    batch_signing_keys: Dict[str, Key]
    manifests: Dict[str, DataShareProcessorSpecificManifest]
    keys_written: int = 0
    manifests_written: int = 0


# --------- fan-out ----------
class _RunContext:
    """Cancellation and deadline shared by every task of one run."""

    def __init__(self, timeout: Optional[float], cancel: Optional[threading.Event]):
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self.cancel = cancel or threading.Event()

    def check(self) -> None:
        if self.cancel.is_set():
            raise DeadlineExceededError("run cancelled")
        if self.deadline is not None and time.monotonic() > self.deadline:
            self.cancel.set()
            raise DeadlineExceededError("run deadline exceeded")

    def run_all(self, tasks: List[Callable[[], None]]) -> None:
        """Run tasks concurrently; on the first failure, cancel the rest and re-raise it."""
        self.check()
        if not tasks:
            return

        def guarded(task):
            self.check()
            task()

        first_err: Optional[BaseException] = None
        with ThreadPoolExecutor(max_workers=len(tasks)) as pool:
            futures = [pool.submit(guarded, t) for t in tasks]
            for fut in as_completed(futures):
                if fut.cancelled():
                    continue
                err = fut.exception()
                if err is not None and first_err is None:
                    first_err = err
                    self.cancel.set()
                    for other in futures:
                        other.cancel()
        if first_err is not None:
            raise first_err


# --------- pipeline ----------
def rotate_keys(cfg: RotateKeysConfig) -> RotationResult:
    """Rotate all keys for cfg.locality and update its manifests."""
    cfg.validate()
    run = _RunContext(cfg.timeout, cfg.cancel)
    ctx = {"locality": cfg.locality}

    log.info("Reading keys & manifests", extra=ctx)
    try:
        old_pek, old_bsk_by_ingestor, old_manifest_by_ingestor = read_keys_and_manifests(
            cfg.key_store, cfg.manifest_store, cfg.locality, cfg.ingestors, run=run)
    except KeyRotatorError as err:
        raise wrap(err, "couldn't get keys & manifests") from err

    log.info("Rotating keys & updating manifests", extra=ctx)
    if old_pek.is_empty() or cfg.packet_cfg.enable_rotation:
        try:
            new_pek = old_pek.rotate(cfg.now, cfg.packet_cfg.rotation_cfg)
        except KeyRotatorError as err:
            raise wrap(err, f"couldn't rotate packet encryption key for {cfg.locality!r}") from err
    else:
        log.info(f"Skipping rotation of packet encryption key for {cfg.locality!r}: rotation disabled", extra=ctx)
        new_pek = old_pek

    new_bsk_by_ingestor: Dict[str, Key] = {}
    for ingestor in cfg.ingestors:
        old_key = old_bsk_by_ingestor[ingestor]
        if old_key.is_empty() or cfg.batch_cfg.enable_rotation:
            try:
                new_bsk_by_ingestor[ingestor] = old_key.rotate(cfg.now, cfg.batch_cfg.rotation_cfg)
            except KeyRotatorError as err:
                raise wrap(err, f"couldn't rotate batch signing key for ({cfg.locality!r}, {ingestor!r})") from err
        else:
            log.info(f"Skipping rotation of batch signing key for ({cfg.locality!r}, {ingestor!r}): rotation disabled",
                     extra={**ctx, "ingestor": ingestor})
            new_bsk_by_ingestor[ingestor] = old_key

    # Every manifest is recomputed, not only those whose keys changed, so a
    # run that wrote keys but died before writing manifests is completed here.
    now_dt = datetime.fromtimestamp(unix_seconds(cfg.now), timezone.utc)
    new_manifest_by_ingestor: Dict[str, DataShareProcessorSpecificManifest] = {}
    for ingestor in cfg.ingestors:
        try:
            new_manifest_by_ingestor[ingestor] = old_manifest_by_ingestor[ingestor].update_keys(UpdateKeysConfig(
                batch_signing_key=new_bsk_by_ingestor[ingestor],
                batch_signing_key_id_prefix=batch_signing_key_id_prefix(cfg.environment, cfg.locality, ingestor),
                packet_encryption_key=new_pek,
                packet_encryption_key_id_prefix=packet_encryption_key_id_prefix(cfg.environment, cfg.locality),
                packet_encryption_key_csr_fqdn=cfg.csr_fqdn,
                skip_pre_update_validations=cfg.skip_manifest_pre_update_validations,
                skip_post_update_validations=cfg.skip_manifest_post_update_validations,
                now=now_dt,
            ))
        except KeyRotatorError as err:
            raise wrap(err, f"couldn't update manifest for ({cfg.locality!r}, {ingestor!r})") from err

    result = RotationResult(
        packet_encryption_key=new_pek,
        batch_signing_keys=new_bsk_by_ingestor,
        manifests=new_manifest_by_ingestor,
    )

    # Keys strictly before manifests.
    log.info("Writing keys", extra=ctx)
    try:
        result.keys_written = write_keys(cfg, old_pek, old_bsk_by_ingestor, new_pek, new_bsk_by_ingestor, run=run)
    except KeyRotatorError as err:
        raise wrap(err, "couldn't write keys") from err

    log.info("Writing manifests", extra=ctx)
    try:
        result.manifests_written = write_manifests(cfg, old_manifest_by_ingestor, new_manifest_by_ingestor, run=run)
    except KeyRotatorError as err:
        raise wrap(err, "couldn't write manifests") from err
    return result


def read_keys_and_manifests(key_store: KeyStore, manifest_store: ManifestStore, locality: str,
                            ingestors: Sequence[str], run: Optional[_RunContext] = None):
    """Fetch the packet encryption key, and each ingestor's batch signing key and manifest."""
    run = run or _RunContext(None, None)
    lock = threading.Lock()
    pek: List[Key] = []
    bsk_by_ingestor: Dict[str, Key] = {}
    manifest_by_ingestor: Dict[str, DataShareProcessorSpecificManifest] = {}

    def get_packet_encryption_key():
        try:
            k = key_store.get_packet_encryption_key(locality)
        except KeyRotatorError as err:
            raise wrap(err, f"couldn't get packet encryption key for {locality!r}") from err
        with lock:
            pek.append(k)

    def get_batch_signing_key(ingestor):
        try:
            k = key_store.get_batch_signing_key(locality, ingestor)
        except KeyRotatorError as err:
            raise wrap(err, f"couldn't get batch signing key for ({locality!r}, {ingestor!r})") from err
        with lock:
            bsk_by_ingestor[ingestor] = k

    def get_manifest(ingestor):
        try:
            m = manifest_store.get_data_share_processor_specific_manifest(dsp_name(locality, ingestor))
        except KeyRotatorError as err:
            raise wrap(err, f"couldn't get manifest for ({locality!r}, {ingestor!r})") from err
        with lock:
            manifest_by_ingestor[ingestor] = m

    tasks: List[Callable[[], None]] = [get_packet_encryption_key]
    for ingestor in ingestors:
        tasks.append(lambda i=ingestor: get_batch_signing_key(i))
        tasks.append(lambda i=ingestor: get_manifest(i))
    run.run_all(tasks)
    return pek[0], bsk_by_ingestor, manifest_by_ingestor


def write_keys(cfg: RotateKeysConfig, old_pek: Key, old_bsk_by_ingestor: Dict[str, Key],
               new_pek: Key, new_bsk_by_ingestor: Dict[str, Key], run: Optional[_RunContext] = None) -> int:
    """Write every key that changed (or all, with always_write). Returns the number written."""
    run = run or _RunContext(None, None)
    lock = threading.Lock()
    written = [0]

    def count(kind):
        with lock:
            written[0] += 1
        if cfg.metrics is not None:
            cfg.metrics.key_written(kind)

    def write_packet_encryption_key():
        ctx = {"locality": cfg.locality, "kind": "packet-encryption"}
        if not cfg.packet_cfg.always_write and old_pek == new_pek:
            log.debug(f"Skipping write for packet encryption key for {cfg.locality!r}: key unchanged", extra=ctx)
            return
        diffs = new_pek.diff(old_pek)
        if cfg.packet_cfg.always_write:
            diffs = semicolon_join("always-write is set for packet encryption keys", diffs)
        log.info(f"Writing packet encryption key for {cfg.locality!r} because: {diffs}", extra=ctx)
        try:
            cfg.key_store.put_packet_encryption_key(cfg.locality, new_pek)
        except KeyRotatorError as err:
            raise wrap(err, f"couldn't write packet encryption key for {cfg.locality!r}") from err
        count("packet-encryption")

    def write_batch_signing_key(ingestor):
        ctx = {"locality": cfg.locality, "ingestor": ingestor, "kind": "batch-signing"}
        old_key, new_key = old_bsk_by_ingestor[ingestor], new_bsk_by_ingestor[ingestor]
        if not cfg.batch_cfg.always_write and old_key == new_key:
            log.debug(f"Skipping write for batch signing key for ({cfg.locality!r}, {ingestor!r}): key unchanged",
                      extra=ctx)
            return
        diffs = new_key.diff(old_key)
        if cfg.batch_cfg.always_write:
            diffs = semicolon_join("always-write is set for batch signing keys", diffs)
        log.info(f"Writing batch signing key for ({cfg.locality!r}, {ingestor!r}) because: {diffs}", extra=ctx)
        try:
            cfg.key_store.put_batch_signing_key(cfg.locality, ingestor, new_key)
        except KeyRotatorError as err:
            raise wrap(err, f"couldn't write batch signing key for ({cfg.locality!r}, {ingestor!r})") from err
        count("batch-signing")

    tasks: List[Callable[[], None]] = [write_packet_encryption_key]
    tasks += [lambda i=ingestor: write_batch_signing_key(i) for ingestor in new_bsk_by_ingestor]
    run.run_all(tasks)
    return written[0]


def write_manifests(cfg: RotateKeysConfig,
                    old_manifest_by_ingestor: Dict[str, DataShareProcessorSpecificManifest],
                    new_manifest_by_ingestor: Dict[str, DataShareProcessorSpecificManifest],
                    run: Optional[_RunContext] = None) -> int:
    """Write every manifest that changed. Returns the number written."""
    run = run or _RunContext(None, None)
    lock = threading.Lock()
    written = [0]

    def write_manifest(ingestor):
        ctx = {"locality": cfg.locality, "ingestor": ingestor}
        old_m, new_m = old_manifest_by_ingestor[ingestor], new_manifest_by_ingestor[ingestor]
        if old_m == new_m:
            log.debug(f"Skipping write for manifest for ({cfg.locality!r}, {ingestor!r}): manifest unchanged",
                      extra=ctx)
            return
        log.info(f"Writing manifest for ({cfg.locality!r}, {ingestor!r}): {new_m.diff(old_m)}", extra=ctx)
        try:
            cfg.manifest_store.put_data_share_processor_specific_manifest(dsp_name(cfg.locality, ingestor), new_m)
        except KeyRotatorError as err:
            raise wrap(err, f"couldn't write manifest for ({cfg.locality!r}, {ingestor!r})") from err
        with lock:
            written[0] += 1
        if cfg.metrics is not None:
            cfg.metrics.manifest_written()

    run.run_all([lambda i=ingestor: write_manifest(i) for ingestor in new_manifest_by_ingestor])
    return written[0]
