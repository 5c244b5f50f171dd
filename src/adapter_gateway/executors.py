"""Execution layer for upstream REST calls."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import quote

import httpx

from .errors import UpstreamError, UpstreamRejected, UpstreamTimeout
from .models import AdapterDescriptor, OutgoingRequest, ToolDescriptor


logger = logging.getLogger(__name__)

Reauthorize = Callable[[], Awaitable[OutgoingRequest]]

_BODY_METHODS = {"POST", "PUT", "PATCH"}


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"))


class UpstreamExecutor:
    def __init__(
        self,
        timeout_seconds: float = 30,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.transport = transport
        self.sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    def build_request(
        self,
        descriptor: AdapterDescriptor,
        tool: ToolDescriptor,
        parameters: Mapping[str, Any],
    ) -> OutgoingRequest:
        path, used_keys = self._build_path(tool.path or f"/{tool.name}", parameters)
        url = descriptor.base_url.rstrip("/") + path
        method = tool.method.upper()
        headers: Dict[str, str] = {
            "Accept": "application/json",
            "User-Agent": f"unified-adapter-gateway/{descriptor.name}",
        }
        remaining = {k: v for k, v in parameters.items() if k not in used_keys}

        if method in _BODY_METHODS:
            headers["Content-Type"] = "application/json"
            body = json.dumps(remaining, separators=(",", ":")).encode("utf-8")
            return OutgoingRequest(method=method, url=url, path=path, headers=headers, body=body)

        params = {k: _query_value(v) for k, v in remaining.items() if v is not None}
        return OutgoingRequest(method=method, url=url, path=path, headers=headers, params=params)

    async def send(
        self,
        request: OutgoingRequest,
        adapter_name: str,
        tool_name: str,
        reauthorize: Optional[Reauthorize] = None,
    ) -> Tuple[Any, int]:
        """Send with per-attempt deadline and exponential backoff on transient failures.

        Returns ``(data, attempts)``. Timeouts, transport errors and 5xx are
        retried; 4xx raises UpstreamRejected at once. A single 401 may be
        answered by ``reauthorize`` (fresh credentials) without using up an
        attempt.
        """
        attempt = 0
        reauthorized = False
        while True:
            attempt += 1
            try:
                response = await asyncio.wait_for(
                    self._send_once(request), timeout=self.timeout_seconds
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                error: UpstreamError = UpstreamTimeout(
                    f"Upstream call to '{adapter_name}' timed out after {self.timeout_seconds}s",
                    details={"adapter": adapter_name, "tool": tool_name, "cause": "timeout"},
                )
                cause: str = type(exc).__name__
            except httpx.TransportError as exc:
                error = UpstreamError(
                    f"Upstream call to '{adapter_name}' failed: {type(exc).__name__}",
                    details={"adapter": adapter_name, "tool": tool_name, "cause": str(exc)},
                )
                cause = type(exc).__name__
            else:
                status = response.status_code
                if status == 401 and reauthorize is not None and not reauthorized:
                    reauthorized = True
                    attempt -= 1
                    logger.info("Upstream returned 401, refreshing credentials adapter=%s", adapter_name)
                    request = await reauthorize()
                    continue
                if status < 400:
                    return self._parse(response), attempt
                details = {
                    "adapter": adapter_name,
                    "tool": tool_name,
                    "status": status,
                    "body": self._parse(response),
                }
                if status < 500:
                    details["attempts"] = attempt
                    raise UpstreamRejected(
                        f"Upstream '{adapter_name}' rejected the request with HTTP {status}",
                        details=details,
                    )
                error = UpstreamError(
                    f"Upstream '{adapter_name}' returned HTTP {status}", details=details
                )
                cause = f"HTTP {status}"

            if attempt >= self.max_attempts:
                error.details["attempts"] = attempt
                logger.error(
                    "Upstream call failed after %s attempts adapter=%s tool=%s cause=%s",
                    attempt,
                    adapter_name,
                    tool_name,
                    cause,
                )
                raise error

            backoff = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
            logger.warning(
                "Upstream call failed (attempt %s/%s). Retrying in %ss. adapter=%s tool=%s cause=%s",
                attempt,
                self.max_attempts,
                backoff,
                adapter_name,
                tool_name,
                cause,
            )
            await self.sleep(backoff)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send_once(self, request: OutgoingRequest) -> httpx.Response:
        client = self._get_client()
        return await client.request(
            request.method,
            request.url,
            headers=dict(request.headers),
            params=dict(request.params) or None,
            content=request.body,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)
        return self._client

    def _build_path(self, path: str, parameters: Mapping[str, Any]) -> Tuple[str, set[str]]:
        used_keys: set[str] = set()
        for key, value in parameters.items():
            token = f"{{{key}}}"
            if token in path:
                path = path.replace(token, quote(str(value), safe=""))
                used_keys.add(key)
        return path, used_keys

    def _parse(self, response: httpx.Response) -> Any:
        if not response.content:
            return {"status": "ok"}
        try:
            return response.json()
        except ValueError:
            return {"text": response.text}
