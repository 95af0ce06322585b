"""
keyrotator.metrics
------------------
Prometheus metrics for a rotation run. The key rotator is a batch job, so
metrics are pushed to a Pushgateway at the end of the run rather than scraped.
"""

from __future__ import annotations
import time
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, push_to_gateway

from .logger import get_logger

log = get_logger("keyrotator.metrics")

JOB_NAME = "key-rotator"


class RotatorMetrics:
    """Metrics sink for one run; each instance owns its own registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.keys_written = Counter(
            "key_rotator_keys_written",
            "Number of keys written to the key store",
            ["kind"],
            registry=self.registry,
        )
        self.manifests_written = Counter(
            "key_rotator_manifests_written",
            "Number of manifests written to the manifest store",
            registry=self.registry,
        )
        self.last_success = Gauge(
            "key_rotator_last_success",
            "Unix time of the last successful run",
            registry=self.registry,
        )
        self.last_failure = Gauge(
            "key_rotator_last_failure",
            "Unix time of the last failed run",
            registry=self.registry,
        )

    def key_written(self, kind: str) -> None:
        self.keys_written.labels(kind=kind).inc()

    def manifest_written(self) -> None:
        self.manifests_written.inc()

    def mark_success(self, now: Optional[float] = None) -> None:
        self.last_success.set(now if now is not None else time.time())

    def mark_failure(self, now: Optional[float] = None) -> None:
        self.last_failure.set(now if now is not None else time.time())

    def value(self, name: str, labels: Optional[dict] = None) -> float:
        """Current sample value, or 0 if the sample has not been recorded."""
        v = self.registry.get_sample_value(name, labels or {})
        return v or 0.0

    def push(self, gateway: Optional[str], locality: str) -> None:
        if not gateway:
            log.debug("No push gateway configured; not pushing metrics")
            return
        log.info(f"Pushing metrics to {gateway}", extra={"locality": locality})
        push_to_gateway(gateway, job=JOB_NAME, registry=self.registry, grouping_key={"locality": locality})
