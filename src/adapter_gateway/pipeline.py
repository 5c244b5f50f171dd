"""Execution pipeline: one dispatch, one result, one audit record."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .audit import AuditSink, LoggingAuditSink
from .auth_strategies import AuthStrategy, AuthStrategyFactory
from .circuit_breaker import CircuitBreaker, CircuitBreakerManager, CircuitPermit
from .config import Settings
from .credentials import CredentialProvider
from .errors import (
    AuditWriteFailed,
    ErrorKind,
    GatewayError,
    RateLimitExceeded,
    UpstreamError,
    UpstreamRejected,
    status_for,
)
from .executors import UpstreamExecutor
from .logging import redact_payload
from .metrics import GatewayMetrics
from .models import (
    AdapterDescriptor,
    AuditRecord,
    AuthType,
    ExecutionRequest,
    ExecutionResult,
    Failure,
    OutgoingRequest,
    Success,
    ToolDescriptor,
)
from .ratelimit import RateLimitDecision, RateLimiter
from .registry import AdapterRegistry
from .schema import validate_parameters


logger = logging.getLogger(__name__)


def _snapshot(value: Any) -> Dict[str, Any]:
    if isinstance(value, Mapping):
        return redact_payload(value)
    return {"value": repr(value)}


@dataclass
class DispatchContext:
    request: ExecutionRequest
    descriptor: Optional[AdapterDescriptor] = None
    tool: Optional[ToolDescriptor] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    breaker: Optional[CircuitBreaker] = None
    permit: Optional[CircuitPermit] = None
    permit_settled: bool = False
    rate_limit: Optional[RateLimitDecision] = None
    strategy: Optional[AuthStrategy] = None
    credentials: Dict[str, Any] = field(default_factory=dict)
    base_request: Optional[OutgoingRequest] = None
    outgoing: Optional[OutgoingRequest] = None
    data: Any = None
    attempts: int = 0


Stage = Callable[[DispatchContext], Awaitable[None]]


class ExecutionPipeline:
    """Runs every dispatch through the same ordered stages.

    A stage either returns (continue) or raises a GatewayError (stop). The
    failure is converted to a ``Failure`` result; anything else that escapes a
    stage is logged and reported as an internal upstream error. Whatever the
    outcome, exactly one audit record is appended, and a failing audit sink
    never changes the result handed back to the caller.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        circuit_breakers: Optional[CircuitBreakerManager] = None,
        auth_factory: Optional[AuthStrategyFactory] = None,
        credentials: Optional[CredentialProvider] = None,
        executor: Optional[UpstreamExecutor] = None,
        audit_sink: Optional[AuditSink] = None,
        max_concurrency: int = 50,
        metrics: Optional[GatewayMetrics] = None,
        audit_timeout: float = 5.0,
    ) -> None:
        self.registry = registry
        self.rate_limiter = rate_limiter or RateLimiter()
        self.circuit_breakers = circuit_breakers or CircuitBreakerManager()
        self.auth_factory = auth_factory or AuthStrategyFactory()
        self.credentials = credentials or CredentialProvider()
        self.executor = executor or UpstreamExecutor()
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.audit_timeout = audit_timeout
        self.metrics = metrics or GatewayMetrics()
        self.semaphore = asyncio.Semaphore(max_concurrency)
        self.stages: List[Stage] = [
            self._resolve_adapter,
            self._resolve_tool,
            self._validate,
            self._acquire_circuit,
            self._check_rate_limit,
            self._inject_credentials,
            self._call_upstream,
        ]

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: AdapterRegistry,
        *,
        rate_limiter: RateLimiter,
        audit_sink: AuditSink,
        credentials: CredentialProvider,
    ) -> "ExecutionPipeline":
        return cls(
            registry,
            rate_limiter=rate_limiter,
            circuit_breakers=CircuitBreakerManager(
                failure_threshold=settings.gateway_circuit_failure_threshold,
                window_seconds=settings.gateway_circuit_window_seconds,
                cooldown_seconds=settings.gateway_circuit_cooldown_seconds,
                max_cooldown_seconds=settings.gateway_circuit_max_cooldown_seconds,
            ),
            auth_factory=AuthStrategyFactory(
                refresh_timeout=settings.gateway_oauth_refresh_timeout_seconds,
                refresh_attempts=settings.gateway_oauth_refresh_attempts,
            ),
            credentials=credentials,
            executor=UpstreamExecutor(
                timeout_seconds=settings.gateway_upstream_timeout_seconds,
                max_attempts=settings.gateway_upstream_max_attempts,
                base_delay=settings.gateway_retry_base_delay_seconds,
                max_delay=settings.gateway_retry_max_delay_seconds,
            ),
            audit_sink=audit_sink,
            max_concurrency=settings.gateway_max_concurrency,
            audit_timeout=settings.gateway_audit_timeout_seconds,
        )

    async def dispatch(self, request: ExecutionRequest) -> ExecutionResult:
        async with self.semaphore:
            logger.info(
                "Executing adapter=%s tool=%s caller=%s parameters=%s",
                request.adapter_name,
                request.tool_name,
                request.caller_id,
                _snapshot(request.parameters),
            )
            started = time.perf_counter()
            context = DispatchContext(request=request)
            try:
                for stage in self.stages:
                    await stage(context)
                result: ExecutionResult = Success(
                    data=context.data, duration_ms=self._elapsed_ms(started)
                )
            except GatewayError as exc:
                logger.warning(
                    "Execution failed adapter=%s tool=%s code=%s message=%s",
                    request.adapter_name,
                    request.tool_name,
                    exc.code,
                    exc.message,
                )
                result = Failure(kind=exc.kind, message=exc.message, details=exc.details)
            except asyncio.CancelledError:
                logger.warning(
                    "Execution cancelled adapter=%s tool=%s",
                    request.adapter_name,
                    request.tool_name,
                )
                self._release_unsettled_permit(context)
                cancelled = Failure(
                    kind=ErrorKind.UPSTREAM_ERROR,
                    message="request cancelled",
                    details={
                        "adapter": request.adapter_name,
                        "tool": request.tool_name,
                        "cancelled": True,
                    },
                )
                await self._finish(context, cancelled, self._elapsed_ms(started), shielded=True)
                raise
            except Exception:
                logger.exception(
                    "Unexpected error executing adapter=%s tool=%s",
                    request.adapter_name,
                    request.tool_name,
                )
                result = Failure(
                    kind=ErrorKind.UPSTREAM_ERROR,
                    message="internal error",
                    details={"adapter": request.adapter_name, "tool": request.tool_name},
                )
            finally:
                self._release_unsettled_permit(context)

            await self._finish(context, result, self._elapsed_ms(started))
            return result

    def refresh_adapters(self) -> None:
        """Drop cached auth and circuit state for adapters no longer registered."""
        active = list(self.registry.snapshot.keys())
        self.auth_factory.prune(active)
        self.circuit_breakers.prune(active)

    async def aclose(self) -> None:
        await self.executor.aclose()
        await self.audit_sink.aclose()

    # Stages

    async def _resolve_adapter(self, context: DispatchContext) -> None:
        context.descriptor = self.registry.lookup(context.request.adapter_name)

    async def _resolve_tool(self, context: DispatchContext) -> None:
        context.descriptor, context.tool = self.registry.resolve_tool(
            context.request.adapter_name, context.request.tool_name
        )

    async def _validate(self, context: DispatchContext) -> None:
        context.parameters = validate_parameters(context.tool, context.request.parameters)

    async def _acquire_circuit(self, context: DispatchContext) -> None:
        context.breaker = self.circuit_breakers.get(context.descriptor.name)
        context.permit = context.breaker.acquire()

    async def _check_rate_limit(self, context: DispatchContext) -> None:
        descriptor = context.descriptor
        decision = await self.rate_limiter.allow(
            context.request.caller_id, descriptor.name, descriptor.rate_limit
        )
        context.rate_limit = decision
        if not decision.allowed:
            raise RateLimitExceeded(
                f"Rate limit exceeded for adapter '{descriptor.name}'",
                details={
                    "adapter": descriptor.name,
                    "limit": decision.limit,
                    "reset_at": decision.reset_at,
                },
            )

    async def _inject_credentials(self, context: DispatchContext) -> None:
        descriptor = context.descriptor
        context.strategy = self.auth_factory.for_adapter(descriptor)
        context.credentials = self.credentials.resolve(descriptor.name)
        context.base_request = self.executor.build_request(
            descriptor, context.tool, context.parameters
        )
        context.outgoing = await context.strategy.inject(context.base_request, context.credentials)

    async def _call_upstream(self, context: DispatchContext) -> None:
        descriptor = context.descriptor
        reauthorize = None
        if descriptor.auth_type == AuthType.OAUTH2:

            async def reauthorize() -> OutgoingRequest:
                context.strategy.invalidate()
                return await context.strategy.inject(context.base_request, context.credentials)

        try:
            context.data, context.attempts = await self.executor.send(
                context.outgoing,
                adapter_name=descriptor.name,
                tool_name=context.tool.name,
                reauthorize=reauthorize,
            )
        except UpstreamRejected:
            self._settle(context, success=True)
            raise
        except UpstreamError:
            self._settle(context, success=False)
            raise
        self._settle(context, success=True)

    # Helpers

    def _settle(self, context: DispatchContext, success: bool) -> None:
        if context.breaker is None or context.permit is None:
            return
        if success:
            context.breaker.record_success(context.permit)
        else:
            context.breaker.record_failure(context.permit)
        context.permit_settled = True

    def _release_unsettled_permit(self, context: DispatchContext) -> None:
        if context.breaker is not None and context.permit is not None and not context.permit_settled:
            context.breaker.release(context.permit)
            context.permit_settled = True

    async def _finish(
        self,
        context: DispatchContext,
        result: ExecutionResult,
        duration_ms: float,
        shielded: bool = False,
    ) -> None:
        self.metrics.observe_dispatch(context.request, result, duration_ms)
        audit = self._audit(context, result, duration_ms)
        if shielded:
            # The caller is already cancelled; let the record land anyway.
            await asyncio.shield(audit)
        else:
            await audit

    async def _audit(self, context: DispatchContext, result: ExecutionResult, duration_ms: float) -> None:
        request = context.request
        if isinstance(result, Success):
            status_code = 200
            result_snapshot: Dict[str, Any] = {"ok": True, "attempts": context.attempts}
        else:
            status_code = status_for(result.kind)
            result_snapshot = {
                "ok": False,
                "code": result.kind.value,
                "message": result.message,
                "details": _snapshot(result.details),
            }
        record = AuditRecord(
            adapter_name=request.adapter_name,
            tool_name=request.tool_name,
            caller_id=request.caller_id,
            request_snapshot={
                "parameters": _snapshot(request.parameters),
                "metadata": _snapshot(request.metadata),
            },
            result_snapshot=result_snapshot,
            status_code=status_code,
            duration_ms=duration_ms,
        )
        try:
            await asyncio.wait_for(self.audit_sink.append(record), timeout=self.audit_timeout)
        except Exception as exc:
            error = AuditWriteFailed(
                f"Audit write failed for adapter '{request.adapter_name}'",
                details={"adapter": request.adapter_name, "cause": repr(exc)},
            )
            logger.error("%s %s cause=%s", error.code, error.message, error.details["cause"])
            self.metrics.observe_audit_failure()

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 3)

