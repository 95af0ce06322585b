"""
keyrotator.cli
--------------
Process entry point: `key-rotator [flags]`. Exits 0 on success (including a
dry run), 1 on any failure.
"""

from __future__ import annotations
import sys
from datetime import datetime, timezone
from typing import Optional

from .config import RotatorSettings, build_parser
from .errors import KeyRotatorError
from .logger import get_logger, use_console_output
from .metrics import RotatorMetrics
from .rotator import RotateKeyConfig, RotateKeysConfig, rotate_keys
from .storage import (
    BackupKeyStore, DryRunKeyStore, DryRunManifestStore,
    load_backup_key_store, load_key_store, load_manifest_store,
)

log = get_logger("keyrotator.cli")


def build_rotate_keys_config(settings: RotatorSettings, metrics: Optional[RotatorMetrics] = None,
                             now: Optional[datetime] = None) -> RotateKeysConfig:
    """Construct the stores and run configuration described by `settings`."""
    log.info("Creating key store", extra={"storage": settings.key_store})
    key_store = load_key_store({
        "provider": settings.key_store,
        "env": settings.prio_environment,
        "namespace": settings.kubernetes_namespace,
        "sqlite_path": settings.sqlite_path,
        "kubeconfig": settings.kubeconfig,
    })
    if settings.backup:
        log.info(f"Backing up keys to {settings.backup}")
        key_store = BackupKeyStore(key_store, load_backup_key_store(
            settings.backup, settings.prio_environment, aws_region=settings.aws_region))

    log.info("Creating manifest store")
    manifest_store = load_manifest_store(
        settings.manifest_bucket_url,
        default_manifests=settings.default_manifest_by_dsp(),
        aws_region=settings.aws_region,
    )

    if settings.dry_run:
        log.info("--dry-run is specified: no writes will actually occur")
        key_store = DryRunKeyStore(key_store)
        manifest_store = DryRunManifestStore(manifest_store)

    return RotateKeysConfig(
        key_store=key_store,
        manifest_store=manifest_store,
        now=now or datetime.now(timezone.utc),
        locality=settings.locality,
        ingestors=settings.ingestors,
        environment=settings.prio_environment,
        csr_fqdn=settings.csr_fqdn,
        batch_cfg=RotateKeyConfig(
            enable_rotation=settings.batch_signing.enable_rotation,
            always_write=settings.batch_signing.always_write,
            rotation_cfg=settings.batch_signing.rotation_config(),
        ),
        packet_cfg=RotateKeyConfig(
            enable_rotation=settings.packet_encryption.enable_rotation,
            always_write=settings.packet_encryption.always_write,
            rotation_cfg=settings.packet_encryption.rotation_config(),
        ),
        skip_manifest_pre_update_validations=settings.skip_manifest_pre_update_validations,
        skip_manifest_post_update_validations=settings.skip_manifest_post_update_validations,
        metrics=metrics,
        timeout=settings.timeout_seconds,
    )


def _push(metrics: RotatorMetrics, settings: Optional[RotatorSettings]) -> None:
    if settings is None:
        return
    try:
        metrics.push(settings.push_gateway, settings.locality)
    except OSError as err:
        log.error(f"Couldn't push metrics: {err}")


def main(argv=None) -> int:
    metrics = RotatorMetrics()
    settings: Optional[RotatorSettings] = None
    try:
        settings = RotatorSettings.from_namespace(build_parser().parse_args(argv))
        get_logger(console=settings.console_logs)
        if settings.console_logs:
            use_console_output(True)
        settings.validate()

        log.info("Starting up", extra={"locality": settings.locality})
        if settings.skip_manifest_pre_update_validations:
            log.warning("--unsafe-skip-manifest-pre-update-validations is set; this flag is inherently unsafe "
                        "and should only be set temporarily in order to fix an ongoing incident")
        if settings.skip_manifest_post_update_validations:
            log.warning("--unsafe-skip-manifest-post-update-validations is set; this flag is inherently unsafe "
                        "and should only be set temporarily in order to fix an ongoing incident")

        result = rotate_keys(build_rotate_keys_config(settings, metrics=metrics))
    except KeyRotatorError as err:
        log.error(f"Couldn't rotate keys: {err}", exc_info=True,
                  extra={"locality": settings.locality if settings else None})
        metrics.mark_failure()
        _push(metrics, settings)
        return 1

    metrics.mark_success()
    _push(metrics, settings)
    log.info(f"Keys rotated successfully ({result.keys_written} keys, "
             f"{result.manifests_written} manifests written)", extra={"locality": settings.locality})
    return 0


if __name__ == "__main__":
    sys.exit(main())
