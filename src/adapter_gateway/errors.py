"""Error taxonomy shared by the pipeline and the HTTP surface."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    ADAPTER_NOT_FOUND = "ADAPTER_NOT_FOUND"
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    AUDIT_WRITE_FAILED = "AUDIT_WRITE_FAILED"


HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.ADAPTER_NOT_FOUND: 404,
    ErrorKind.TOOL_NOT_FOUND: 404,
    ErrorKind.VALIDATION_ERROR: 422,
    ErrorKind.AUTHENTICATION_FAILED: 401,
    ErrorKind.RATE_LIMIT_EXCEEDED: 429,
    ErrorKind.CIRCUIT_OPEN: 503,
    ErrorKind.UPSTREAM_ERROR: 503,
    ErrorKind.UPSTREAM_TIMEOUT: 503,
    ErrorKind.AUDIT_WRITE_FAILED: 500,
}


def status_for(kind: ErrorKind) -> int:
    return HTTP_STATUS.get(kind, 500)


class ErrorResponse(BaseModel):
    """Caller-facing error body."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class GatewayError(Exception):
    """Base exception for gateway failures."""

    kind: ErrorKind = ErrorKind.UPSTREAM_ERROR
    default_message = "Gateway error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.kind.value

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(code=self.code, message=self.message, details=self.details)


class AdapterNotFound(GatewayError):
    kind = ErrorKind.ADAPTER_NOT_FOUND
    default_message = "Adapter not found"


class ToolNotFound(GatewayError):
    kind = ErrorKind.TOOL_NOT_FOUND
    default_message = "Tool not found"


class ValidationFailed(GatewayError):
    kind = ErrorKind.VALIDATION_ERROR
    default_message = "Parameter validation failed"


class AuthenticationFailed(GatewayError):
    kind = ErrorKind.AUTHENTICATION_FAILED
    default_message = "Authentication failed"


class RateLimitExceeded(GatewayError):
    kind = ErrorKind.RATE_LIMIT_EXCEEDED
    default_message = "Rate limit exceeded"


class CircuitOpen(GatewayError):
    kind = ErrorKind.CIRCUIT_OPEN
    default_message = "Circuit breaker is open"


class UpstreamError(GatewayError):
    kind = ErrorKind.UPSTREAM_ERROR
    default_message = "Upstream call failed"


class UpstreamRejected(UpstreamError):
    """The provider answered with a 4xx; it is healthy, the call itself was refused."""

    default_message = "Upstream rejected the request"


class UpstreamTimeout(UpstreamError):
    kind = ErrorKind.UPSTREAM_TIMEOUT
    default_message = "Upstream call timed out"


class AuditWriteFailed(GatewayError):
    kind = ErrorKind.AUDIT_WRITE_FAILED
    default_message = "Audit write failed"
