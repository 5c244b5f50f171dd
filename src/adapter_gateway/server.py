"""MCP + REST server setup for the Unified Adapter Gateway."""

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import psycopg
from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_request

from .api import attach_auth, caller_id_for, mount_gateway_api
from .audit import AuditSink, LoggingAuditSink, PostgresAuditSink
from .auth import InboundAuthenticator
from .config import Settings
from .credentials import CredentialProvider
from .descriptor_store import DescriptorStore
from .manifests import load_manifest_directory
from .models import AdapterDescriptor, ExecutionRequest, Failure, ToolDescriptor
from .pipeline import ExecutionPipeline
from .ratelimit import RateLimiter
from .registry import AdapterRegistry
from .schema import input_model_for, sanitize_name

logger = logging.getLogger(__name__)


async def build_server(settings: Settings) -> tuple[FastMCP, object | None]:
    descriptor_store = _open_descriptor_store(settings)
    load_descriptors = _descriptor_loader(settings, descriptor_store)

    registry = AdapterRegistry()
    try:
        registry.reload_all(load_descriptors())
    except ValueError as exc:
        logger.error("Adapter descriptors not loaded: %s", exc)
    if not registry.loaded:
        logger.warning("No adapters loaded; health will report degraded")

    pipeline = ExecutionPipeline.from_settings(
        settings,
        registry,
        rate_limiter=RateLimiter.from_settings(settings),
        audit_sink=_audit_sink(settings),
        credentials=CredentialProvider.from_file(settings.gateway_credentials_file),
    )

    mcp = FastMCP(settings.service_name, instructions=_instructions())
    app = _get_http_app(mcp, settings)
    if app:
        attach_auth(app, InboundAuthenticator.from_settings(settings))
        mount_gateway_api(app, pipeline, descriptor_store, load_descriptors)  # type: ignore[arg-type]
    else:
        logger.warning("HTTP app not available; REST routes and auth middleware disabled")

    for descriptor in registry.list():
        for tool in descriptor.tools:
            name = mcp_tool_name(descriptor, tool)
            handler = _tool_handler(pipeline, descriptor, tool, name)
            mcp.tool(name=name, description=_tool_description(descriptor, tool))(handler)
            logger.info("Registered tool: %s", name)

    return mcp, app


def mcp_tool_name(descriptor: AdapterDescriptor, tool: ToolDescriptor) -> str:
    return sanitize_name(f"{descriptor.name}_{tool.name}")


def _tool_handler(
    pipeline: ExecutionPipeline, descriptor: AdapterDescriptor, tool: ToolDescriptor, name: str
) -> Callable[[Any], Awaitable[Dict[str, Any]]]:
    async def handler(payload: input_model_for(tool)) -> Dict[str, Any]:
        request = ExecutionRequest(
            adapter_name=descriptor.name,
            tool_name=tool.name,
            parameters=payload.model_dump(exclude_unset=True, by_alias=True),
            caller_id=_mcp_caller_id(),
            metadata={"transport": "mcp"},
        )
        result = await pipeline.dispatch(request)
        if isinstance(result, Failure):
            return _format_error(result)
        return _format_result(result.data)

    handler.__name__ = name
    return handler


def _mcp_caller_id() -> str:
    try:
        request = get_http_request()
    except RuntimeError:
        return "mcp-stdio"
    return caller_id_for(request)


def _format_result(result: Any) -> Dict[str, Any]:
    return {"content": [{"type": "json", "json": result}]}


def _format_error(failure: Failure) -> Dict[str, Any]:
    return {
        "content": [{"type": "text", "text": f"{failure.kind.value}: {failure.message}"}],
        "error": {
            "code": failure.kind.value,
            "message": failure.message,
            "details": dict(failure.details),
        },
        "is_error": True,
    }


def _tool_description(descriptor: AdapterDescriptor, tool: ToolDescriptor) -> str:
    summary = tool.description or f"{tool.method} {tool.path}"
    return f"[{descriptor.name}] {summary}"


def _open_descriptor_store(settings: Settings) -> Optional[DescriptorStore]:
    if not settings.gateway_database_url:
        return None
    try:
        return DescriptorStore(settings.gateway_database_url)
    except psycopg.Error as exc:
        logger.error("Descriptor store unavailable, falling back to manifests: %s", exc)
        return None


def _descriptor_loader(
    settings: Settings, descriptor_store: Optional[DescriptorStore]
) -> Callable[[], List[AdapterDescriptor]]:
    manifests_path = Path(settings.gateway_adapters_path)

    def load() -> List[AdapterDescriptor]:
        if descriptor_store is not None:
            try:
                return descriptor_store.list_descriptors()
            except psycopg.Error as exc:
                logger.error("Failed to read adapters from store: %s", exc)
                return []
        return load_manifest_directory(manifests_path)

    return load


def _audit_sink(settings: Settings) -> AuditSink:
    if settings.gateway_database_url:
        return PostgresAuditSink(settings.gateway_database_url)
    return LoggingAuditSink()


def _instructions() -> str:
    return (
        "Unified Adapter Gateway. "
        "Each tool proxies one operation of a registered third-party API, "
        "with credentials, rate limits and circuit breaking handled by the gateway."
    )


def _get_http_app(mcp: FastMCP, settings: Settings):  # type: ignore[no-untyped-def]
    transport = settings.gateway_transport.lower()
    if transport in {"http"}:
        app = mcp.http_app(transport="http", stateless_http=True, json_response=True)
        _attach_cors(app)
        return app
    if transport in {"streamable-http", "streamablehttp"}:
        app = mcp.http_app(
            transport="streamable-http", stateless_http=True, json_response=True
        )
        _attach_cors(app)
        return app
    if transport in {"sse"}:
        app = mcp.http_app(transport="sse")
        _attach_cors(app)
        return app
    return None


def _attach_cors(app) -> None:  # type: ignore[no-untyped-def]
    from starlette.middleware.cors import CORSMiddleware

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
