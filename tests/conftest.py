"""Shared fixtures for the gateway test suite."""

from typing import Any, Dict, List, Optional

import httpx
import pytest

from adapter_gateway.audit import InMemoryAuditSink
from adapter_gateway.auth_strategies import AuthStrategyFactory
from adapter_gateway.circuit_breaker import CircuitBreakerManager
from adapter_gateway.credentials import CredentialProvider
from adapter_gateway.executors import UpstreamExecutor
from adapter_gateway.manifests import descriptor_from_manifest
from adapter_gateway.models import AdapterDescriptor
from adapter_gateway.pipeline import ExecutionPipeline
from adapter_gateway.ratelimit import RateLimiter
from adapter_gateway.registry import AdapterRegistry


class FakeClock:
    """Manually advanced clock usable as ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


PAYSTACK_MANIFEST: Dict[str, Any] = {
    "name": "paystack-api",
    "version": "1.0.0",
    "baseUrl": "https://api.paystack.test",
    "authType": "bearer",
    "description": "Paystack payments API",
    "category": "payments",
    "tools": [
        {
            "name": "verify_transaction",
            "description": "Confirm the status of a transaction",
            "method": "GET",
            "path": "/transaction/verify/{reference}",
            "inputSchema": {
                "type": "object",
                "properties": {"reference": {"type": "string"}},
                "required": ["reference"],
            },
        },
        {
            "name": "initialize_transaction",
            "method": "POST",
            "path": "/transaction/initialize",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "email": {"type": "string"},
                    "amount": {"type": "integer"},
                    "currency": {"type": "string", "enum": ["NGN", "USD"]},
                },
                "required": ["email", "amount"],
            },
        },
    ],
}


def make_descriptor(
    name: str = "paystack-api",
    auth_type: str = "bearer",
    auth_config: Optional[Dict[str, Any]] = None,
    **overrides: Any,
) -> AdapterDescriptor:
    manifest = dict(PAYSTACK_MANIFEST)
    manifest.update({"name": name, "authType": auth_type, "authConfig": auth_config or {}})
    manifest.update(overrides)
    return descriptor_from_manifest(manifest)


def build_pipeline(
    handler,
    descriptors=None,
    credentials: Optional[Dict[str, Dict[str, Any]]] = None,
    clock: Optional[FakeClock] = None,
    sleep: Optional[RecordingSleep] = None,
    audit_sink=None,
    rate_limiter: Optional[RateLimiter] = None,
    failure_threshold: int = 5,
    max_attempts: int = 3,
) -> ExecutionPipeline:
    """Pipeline whose upstream traffic (API and token endpoint) goes to ``handler``."""
    clock = clock or FakeClock()
    sleep = sleep or RecordingSleep()
    transport = httpx.MockTransport(handler)
    registry = AdapterRegistry(descriptors if descriptors is not None else [make_descriptor()])
    return ExecutionPipeline(
        registry,
        rate_limiter=rate_limiter or RateLimiter(clock=clock),
        circuit_breakers=CircuitBreakerManager(failure_threshold=failure_threshold, clock=clock),
        auth_factory=AuthStrategyFactory(clock=clock, sleep=sleep, transport=transport),
        credentials=CredentialProvider(
            credentials if credentials is not None else {"paystack-api": {"token": "sk_test_123"}},
            environ={},
        ),
        executor=UpstreamExecutor(max_attempts=max_attempts, transport=transport, sleep=sleep),
        audit_sink=audit_sink if audit_sink is not None else InMemoryAuditSink(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def paystack() -> AdapterDescriptor:
    return make_descriptor()
