"""Prometheus metrics for dispatches, circuits and audit writes."""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from .models import ExecutionRequest, ExecutionResult, Failure


CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class GatewayMetrics:
    """Collectors live on their own registry so several gateways can share a process."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.dispatch_total = Counter(
            "gateway_dispatch_total",
            "Dispatches by adapter, tool and outcome",
            ["adapter", "tool", "outcome"],
            registry=self.registry,
        )
        self.dispatch_duration_seconds = Histogram(
            "gateway_dispatch_duration_seconds",
            "Dispatch duration in seconds",
            ["adapter", "tool"],
            registry=self.registry,
        )
        self.errors_total = Counter(
            "gateway_errors_total",
            "Failed dispatches by error code",
            ["adapter", "code"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "gateway_circuit_state",
            "Circuit state per adapter (0 closed, 1 half open, 2 open)",
            ["adapter"],
            registry=self.registry,
        )
        self.audit_failures_total = Counter(
            "gateway_audit_failures_total",
            "Audit records that could not be written",
            registry=self.registry,
        )
        self._circuit_adapters: set = set()

    def observe_dispatch(
        self, request: ExecutionRequest, result: ExecutionResult, duration_ms: float
    ) -> None:
        outcome = "success"
        if isinstance(result, Failure):
            outcome = result.kind.value.lower()
            self.errors_total.labels(request.adapter_name, result.kind.value).inc()
        self.dispatch_total.labels(request.adapter_name, request.tool_name, outcome).inc()
        self.dispatch_duration_seconds.labels(request.adapter_name, request.tool_name).observe(
            duration_ms / 1000
        )

    def observe_audit_failure(self) -> None:
        self.audit_failures_total.inc()

    def update_circuits(self, snapshots: Mapping[str, Mapping[str, object]]) -> None:
        for adapter, snapshot in snapshots.items():
            self.circuit_state.labels(adapter).set(CIRCUIT_STATE_VALUES[str(snapshot["state"])])
        self._forget_circuits(set(self._circuit_adapters) - set(snapshots))
        self._circuit_adapters = set(snapshots)

    def _forget_circuits(self, adapters: Iterable[str]) -> None:
        for adapter in adapters:
            self.circuit_state.remove(adapter)

    def render(self) -> bytes:
        return generate_latest(self.registry)
