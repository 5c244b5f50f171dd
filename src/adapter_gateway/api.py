"""REST surface: execution, adapter discovery, health and admin routes."""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Callable, Dict, List, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .auth import AuthContext, InboundAuthenticator
from .descriptor_store import DescriptorStore
from .errors import AuthenticationFailed, ErrorKind, GatewayError, ValidationFailed, status_for
from .manifests import ManifestError, descriptor_from_manifest
from .models import AdapterDescriptor, ExecutionRequest, Failure, utcnow
from .pipeline import ExecutionPipeline


logger = logging.getLogger(__name__)

DescriptorLoader = Callable[[], List[AdapterDescriptor]]

_PUBLIC_PATHS = {"/health", "/metrics"}


def error_response(
    kind: ErrorKind,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body = {
        "error": {"code": kind.value, "message": message, "details": details or {}},
        "timestamp": utcnow().isoformat(),
    }
    return JSONResponse(body, status_code=status_for(kind), headers=headers)


def _from_error(exc: GatewayError) -> JSONResponse:
    return error_response(exc.kind, exc.message, exc.details)


def caller_id_for(request: Request) -> str:
    auth = getattr(request.state, "auth", None)
    if isinstance(auth, AuthContext) and auth.subject:
        return auth.subject
    header = request.headers.get("x-caller-id", "").strip()
    if header:
        return header
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def attach_auth(app, authenticator: InboundAuthenticator) -> None:  # type: ignore[no-untyped-def]
    async def auth_middleware(request, call_next):  # type: ignore[no-untyped-def]
        if request.method == "OPTIONS" or request.url.path in _PUBLIC_PATHS:
            return await call_next(request)
        try:
            request.state.auth = await authenticator.authenticate(request.headers.get("authorization"))
        except AuthenticationFailed as exc:
            return _from_error(exc)
        return await call_next(request)

    app.add_middleware(BaseHTTPMiddleware, dispatch=auth_middleware)


def mount_gateway_api(  # type: ignore[no-untyped-def]
    app,
    pipeline: ExecutionPipeline,
    descriptor_store: Optional[DescriptorStore] = None,
    load_descriptors: Optional[DescriptorLoader] = None,
) -> None:
    registry = pipeline.registry

    async def execute(request: Request) -> JSONResponse:
        adapter_name = request.path_params["adapter"]
        tool_name = request.path_params["tool"]
        try:
            payload = await _read_json(request)
        except ValidationFailed as exc:
            return _from_error(exc)

        metadata = payload.get("metadata") or {}
        exec_request = ExecutionRequest(
            adapter_name=adapter_name,
            tool_name=tool_name,
            parameters=payload.get("parameters", {}),
            caller_id=caller_id_for(request),
            metadata=metadata if isinstance(metadata, dict) else {"value": metadata},
        )
        result = await pipeline.dispatch(exec_request)

        if isinstance(result, Failure):
            headers = None
            if result.kind == ErrorKind.RATE_LIMIT_EXCEEDED and "reset_at" in result.details:
                headers = {"X-RateLimit-Reset": str(math.ceil(result.details["reset_at"]))}
            return error_response(result.kind, result.message, dict(result.details), headers=headers)

        return JSONResponse(
            {
                "adapter": adapter_name,
                "tool": tool_name,
                "output": result.data,
                "durationMs": result.duration_ms,
                "timestamp": result.timestamp.isoformat(),
            }
        )

    async def list_adapters(_request: Request) -> JSONResponse:
        adapters = [descriptor.summary() for descriptor in registry.list()]
        return JSONResponse({"adapters": adapters, "total": len(adapters)})

    async def get_adapter(request: Request) -> JSONResponse:
        try:
            descriptor = registry.lookup(request.path_params["name"])
        except GatewayError as exc:
            return _from_error(exc)
        return JSONResponse(descriptor.to_dict())

    async def health(_request: Request) -> JSONResponse:
        checks = {
            "registry": registry.loaded,
            "audit": await pipeline.audit_sink.ping(),
        }
        if descriptor_store is not None:
            checks["descriptor_store"] = descriptor_store.ping()
        healthy = all(checks.values())
        stats = registry.stats()
        body = {
            "status": "ok" if healthy else "degraded",
            "adapters": stats["adapters"],
            "totalTools": stats["tools"],
            "checks": checks,
            "timestamp": utcnow().isoformat(),
        }
        return JSONResponse(body, status_code=200 if healthy else 503)

    async def register_adapter(request: Request) -> JSONResponse:
        try:
            document = await _read_json(request)
            descriptor = descriptor_from_manifest(document)
        except ValidationFailed as exc:
            return _from_error(exc)
        except ManifestError as exc:
            return error_response(ErrorKind.VALIDATION_ERROR, str(exc))

        if descriptor_store is not None:
            descriptor_store.upsert(document)
        registry.register(descriptor)
        pipeline.refresh_adapters()
        logger.info("Admin registered adapter %s caller=%s", descriptor.name, caller_id_for(request))
        return JSONResponse(descriptor.to_dict(), status_code=201)

    async def reload_adapters(request: Request) -> JSONResponse:
        if load_descriptors is None:
            return error_response(ErrorKind.VALIDATION_ERROR, "No adapter source configured")
        try:
            registry.reload_all(load_descriptors())
        except ValueError as exc:
            return error_response(ErrorKind.VALIDATION_ERROR, str(exc))
        pipeline.refresh_adapters()
        logger.info("Admin reloaded adapters caller=%s", caller_id_for(request))
        return JSONResponse({"status": "reloaded", **registry.stats()})

    async def list_tools(_request: Request) -> JSONResponse:
        descriptors = registry.list()
        breakdown = {descriptor.name: descriptor.tool_names for descriptor in descriptors}
        return JSONResponse(
            {
                "total": sum(len(tools) for tools in breakdown.values()),
                "adapters": len(breakdown),
                "breakdown": breakdown,
            }
        )

    async def list_circuits(_request: Request) -> JSONResponse:
        return JSONResponse({"circuits": pipeline.circuit_breakers.snapshots()})

    async def metrics(_request: Request) -> Response:
        pipeline.metrics.update_circuits(pipeline.circuit_breakers.snapshots())
        return Response(pipeline.metrics.render(), media_type=pipeline.metrics.content_type)

    app.add_route("/api/execute/{adapter}/{tool}", execute, methods=["POST"])
    app.add_route("/api/adapters", list_adapters, methods=["GET"])
    app.add_route("/api/adapters/{name}", get_adapter, methods=["GET"])
    app.add_route("/api/tools", list_tools, methods=["GET"])
    app.add_route("/health", health, methods=["GET"])
    app.add_route("/metrics", metrics, methods=["GET"])
    app.add_route("/admin/adapters", register_adapter, methods=["POST"])
    app.add_route("/admin/adapters/reload", reload_adapters, methods=["POST"])
    app.add_route("/admin/circuits", list_circuits, methods=["GET"])


async def _read_json(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ValidationFailed(
            "Request body is not valid JSON",
            details={"fields": [{"field": "body", "reason": str(exc)}]},
        ) from exc
    if not isinstance(payload, dict):
        raise ValidationFailed(
            "Request body must be a JSON object",
            details={"fields": [{"field": "body", "reason": "expected object"}]},
        )
    return payload
