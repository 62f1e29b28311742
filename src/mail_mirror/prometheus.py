# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the sync engine.

All metrics use the ``mm_`` prefix (mail-mirror).

Metrics exposed:
    - ``mm_sync_total``: Counter of successful resource syncs per kind.
    - ``mm_sync_errors_total``: Counter of failed resource syncs per kind.
    - ``mm_remote_operations_total``: Counter of successful mutating
      operations per operation name.
    - ``mm_remote_operation_errors_total``: Counter of failed mutating
      operations per operation name.
    - ``mm_server_online``: Gauge, 1 when the last status sync of a server
      succeeded, 0 otherwise.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SyncMetrics:
    """Prometheus metrics collector for the sync engine.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        syncs: Counter of successful syncs.
        sync_errors: Counter of failed syncs.
        operations: Counter of successful mutating operations.
        operation_errors: Counter of failed mutating operations.
        online: Gauge of server reachability.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. If not provided,
                a new registry is created.
        """
        self.registry = registry or CollectorRegistry()
        self.syncs = Counter(
            "mm_sync_total",
            "Total successful resource syncs",
            ["kind"],
            registry=self.registry,
        )
        self.sync_errors = Counter(
            "mm_sync_errors_total",
            "Total failed resource syncs",
            ["kind"],
            registry=self.registry,
        )
        self.operations = Counter(
            "mm_remote_operations_total",
            "Total successful mutating operations",
            ["operation"],
            registry=self.registry,
        )
        self.operation_errors = Counter(
            "mm_remote_operation_errors_total",
            "Total failed mutating operations",
            ["operation"],
            registry=self.registry,
        )
        self.online = Gauge(
            "mm_server_online",
            "1 if the last status sync succeeded",
            ["server_id"],
            registry=self.registry,
        )

    def inc_sync(self, kind: str) -> None:
        self.syncs.labels(kind=kind).inc()

    def inc_sync_error(self, kind: str) -> None:
        self.sync_errors.labels(kind=kind).inc()

    def inc_operation(self, operation: str) -> None:
        self.operations.labels(operation=operation).inc()

    def inc_operation_error(self, operation: str) -> None:
        self.operation_errors.labels(operation=operation).inc()

    def set_online(self, server_id: int, online: bool) -> None:
        self.online.labels(server_id=str(server_id)).set(1 if online else 0)

    def generate_latest(self) -> bytes:
        """Return the Prometheus text exposition of all metrics."""
        return generate_latest(self.registry)
