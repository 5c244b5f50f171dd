"""Outbound credential injection, one strategy per adapter auth scheme."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import httpx

from .errors import AuthenticationFailed
from .models import AdapterDescriptor, AuthType, OutgoingRequest


logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


def _first_credential(credentials: Mapping[str, Any], *preferred: str) -> Optional[str]:
    for key in preferred:
        value = credentials.get(key)
        if value:
            return str(value)
    for value in credentials.values():
        if value:
            return str(value)
    return None


class AuthStrategy(ABC):
    auth_type: AuthType

    def __init__(self, adapter_name: str, auth_config: Optional[Mapping[str, Any]] = None) -> None:
        self.adapter_name = adapter_name
        self.auth_config: Dict[str, Any] = dict(auth_config or {})

    @abstractmethod
    async def inject(
        self, request: OutgoingRequest, credentials: Mapping[str, Any]
    ) -> OutgoingRequest:
        """Return a copy of ``request`` carrying this adapter's credentials."""

    def invalidate(self) -> None:
        """Drop any cached credential state."""

    def _fail(self, reason: str, **details: Any) -> AuthenticationFailed:
        return AuthenticationFailed(
            f"Authentication failed for adapter '{self.adapter_name}': {reason}",
            details={"adapter": self.adapter_name, "reason": reason, **details},
        )


class BearerStrategy(AuthStrategy):
    auth_type = AuthType.BEARER

    async def inject(self, request, credentials):
        token = _first_credential(credentials, "token", "access_token", "secret_key")
        if not token:
            raise self._fail("no bearer token configured")
        return request.with_headers({"Authorization": f"Bearer {token}"})


class ApiKeyStrategy(AuthStrategy):
    auth_type = AuthType.API_KEY

    async def inject(self, request, credentials):
        key_name = self.auth_config.get("name", "X-API-Key")
        location = self.auth_config.get("in", "header")
        template = self.auth_config.get("value_template")
        if template:
            try:
                value: Optional[str] = template.format(**credentials)
            except KeyError as exc:
                raise self._fail(f"credential {exc} missing for value template")
        else:
            value = _first_credential(credentials, "api_key", "key", "token")
        if not value:
            raise self._fail("no API key configured")
        if location == "query":
            return request.with_params({key_name: value})
        return request.with_headers({key_name: value})


class BasicStrategy(AuthStrategy):
    auth_type = AuthType.BASIC

    async def inject(self, request, credentials):
        username = credentials.get("username")
        password = credentials.get("password")
        if not username or password is None:
            raise self._fail("username and password are required")
        encoded = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        return request.with_headers({"Authorization": f"Basic {encoded}"})


class HmacStrategy(AuthStrategy):
    """Signs ``METHOD\\nPATH\\nTIMESTAMP\\nSHA256(body)`` with HMAC-SHA256."""

    auth_type = AuthType.HMAC

    def __init__(
        self,
        adapter_name: str,
        auth_config: Optional[Mapping[str, Any]] = None,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(adapter_name, auth_config)
        self.clock = clock

    @staticmethod
    def canonical_string(method: str, path: str, timestamp: str, body: Optional[bytes]) -> str:
        body_hash = hashlib.sha256(body or b"").hexdigest()
        return "\n".join([method.upper(), path, timestamp, body_hash])

    @classmethod
    def sign(cls, secret: str, method: str, path: str, timestamp: str, body: Optional[bytes]) -> str:
        message = cls.canonical_string(method, path, timestamp, body)
        return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    async def inject(self, request, credentials):
        secret = credentials.get("secret") or credentials.get("secret_key")
        if not secret:
            raise self._fail("no HMAC secret configured")
        timestamp = str(int(self.clock()))
        signature = self.sign(str(secret), request.method, request.path, timestamp, request.body)
        headers = {
            self.auth_config.get("signature_header", "X-Signature"): signature,
            self.auth_config.get("timestamp_header", "X-Timestamp"): timestamp,
        }
        key_id = credentials.get("key_id") or credentials.get("username")
        if key_id:
            headers[self.auth_config.get("key_id_header", "X-Key-Id")] = str(key_id)
        return request.with_headers(headers)


@dataclass(frozen=True)
class _CachedToken:
    access_token: str
    expires_at: float
    refresh_token: Optional[str] = None
    refresh_margin: float = 0


class _TransientRefreshError(Exception):
    pass


class OAuth2Strategy(AuthStrategy):
    """Bearer injection backed by a cached, single-flight refreshed access token.

    Concurrent ``inject`` calls that find the token missing or close to expiry
    share one in-flight refresh task. Waiters await it through
    ``asyncio.shield`` so a cancelled caller does not cancel the refresh for
    everyone else. The refresh is bounded by ``refresh_timeout``; when it
    fails or times out every waiter receives the same AuthenticationFailed and
    the next caller starts a fresh attempt.
    """

    auth_type = AuthType.OAUTH2

    def __init__(
        self,
        adapter_name: str,
        auth_config: Optional[Mapping[str, Any]] = None,
        *,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        refresh_timeout: float = 15,
        refresh_attempts: int = 3,
        refresh_margin: float = 300,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(adapter_name, auth_config)
        self.clock = clock
        self.sleep = sleep
        self.transport = transport
        self.refresh_timeout = refresh_timeout
        self.refresh_attempts = max(1, refresh_attempts)
        self.refresh_margin = refresh_margin
        self.retry_delay = retry_delay
        self._token: Optional[_CachedToken] = None
        self._refresh_task: Optional[asyncio.Task] = None

    async def inject(self, request, credentials):
        token = await self.get_token(credentials)
        return request.with_headers({"Authorization": f"Bearer {token}"})

    async def get_token(self, credentials: Mapping[str, Any]) -> str:
        cached = self._token
        if cached and self.clock() < cached.expires_at - cached.refresh_margin:
            return cached.access_token

        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.ensure_future(self._run_refresh(dict(credentials)))
            task.add_done_callback(self._clear_refresh_task)
            self._refresh_task = task
        token = await asyncio.shield(task)
        return token.access_token

    def invalidate(self) -> None:
        self._token = None

    def _clear_refresh_task(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the exception retrieved even when every waiter went away.
            task.exception()

    async def _run_refresh(self, credentials: Dict[str, Any]) -> _CachedToken:
        try:
            return await asyncio.wait_for(
                self._request_token(credentials), timeout=self.refresh_timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                "OAuth2 token refresh timed out after %ss adapter=%s",
                self.refresh_timeout,
                self.adapter_name,
            )
            raise self._fail("token refresh timed out", cause="timeout")

    async def _request_token(self, credentials: Dict[str, Any]) -> _CachedToken:
        token_url = self.auth_config.get("token_url") or credentials.get("token_url")
        client_id = credentials.get("client_id")
        client_secret = credentials.get("client_secret")
        if not token_url or not client_id:
            raise self._fail("token_url and client_id are required for OAuth2")

        form = self._grant_form(credentials, client_id, client_secret)
        last_error: Optional[str] = None
        for attempt in range(1, self.refresh_attempts + 1):
            try:
                token = await self._post_token(token_url, form)
                self._token = token
                logger.info("Refreshed OAuth2 token adapter=%s", self.adapter_name)
                return token
            except _TransientRefreshError as exc:
                last_error = str(exc)
                if attempt == self.refresh_attempts:
                    break
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    "OAuth2 refresh failed (attempt %s/%s). Retrying in %ss. adapter=%s",
                    attempt,
                    self.refresh_attempts,
                    delay,
                    self.adapter_name,
                )
                await self.sleep(delay)

        raise self._fail("token refresh failed", cause=last_error)

    def _grant_form(
        self, credentials: Mapping[str, Any], client_id: str, client_secret: Optional[str]
    ) -> Dict[str, str]:
        refresh_token = (self._token.refresh_token if self._token else None) or credentials.get(
            "refresh_token"
        )
        form: Dict[str, str] = {"client_id": str(client_id)}
        if client_secret:
            form["client_secret"] = str(client_secret)
        if refresh_token:
            form["grant_type"] = "refresh_token"
            form["refresh_token"] = str(refresh_token)
        else:
            form["grant_type"] = self.auth_config.get("grant_type", "client_credentials")
        scope = self.auth_config.get("scope")
        if scope:
            form["scope"] = str(scope)
        return form

    async def _post_token(self, token_url: str, form: Dict[str, str]) -> _CachedToken:
        try:
            async with httpx.AsyncClient(
                timeout=self.refresh_timeout, transport=self.transport
            ) as client:
                response = await client.post(token_url, data=form)
        except httpx.TransportError as exc:
            raise _TransientRefreshError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 500:
            raise _TransientRefreshError(f"token endpoint returned {response.status_code}")
        if response.status_code >= 400:
            raise self._fail(
                "token endpoint rejected the request",
                cause=f"HTTP {response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise self._fail("token endpoint returned invalid JSON") from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise self._fail("token endpoint response missing access_token")
        expires_in = float(payload.get("expires_in") or 3600)
        return _CachedToken(
            access_token=str(access_token),
            expires_at=self.clock() + expires_in,
            refresh_token=payload.get("refresh_token"),
            refresh_margin=min(self.refresh_margin, expires_in / 2),
        )


_STATELESS: Dict[AuthType, type] = {
    AuthType.BEARER: BearerStrategy,
    AuthType.API_KEY: ApiKeyStrategy,
    AuthType.BASIC: BasicStrategy,
}


class AuthStrategyFactory:
    """Builds one strategy per adapter and keeps it while the adapter's auth settings hold."""

    def __init__(
        self,
        *,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        refresh_timeout: float = 15,
        refresh_attempts: int = 3,
    ) -> None:
        self.clock = clock
        self.sleep = sleep
        self.transport = transport
        self.refresh_timeout = refresh_timeout
        self.refresh_attempts = refresh_attempts
        self._strategies: Dict[str, Tuple[Tuple[AuthType, str], AuthStrategy]] = {}

    def for_adapter(self, descriptor: AdapterDescriptor) -> AuthStrategy:
        signature = (descriptor.auth_type, repr(sorted(descriptor.auth_config.items())))
        cached = self._strategies.get(descriptor.name)
        if cached and cached[0] == signature:
            return cached[1]
        strategy = self._build(descriptor)
        self._strategies[descriptor.name] = (signature, strategy)
        return strategy

    def prune(self, active_names) -> None:  # type: ignore[no-untyped-def]
        active = set(active_names)
        for name in list(self._strategies):
            if name not in active:
                del self._strategies[name]

    def _build(self, descriptor: AdapterDescriptor) -> AuthStrategy:
        if descriptor.auth_type == AuthType.OAUTH2:
            return OAuth2Strategy(
                descriptor.name,
                descriptor.auth_config,
                clock=self.clock,
                sleep=self.sleep,
                transport=self.transport,
                refresh_timeout=self.refresh_timeout,
                refresh_attempts=self.refresh_attempts,
            )
        if descriptor.auth_type == AuthType.HMAC:
            return HmacStrategy(descriptor.name, descriptor.auth_config, clock=self.clock)
        strategy_cls = _STATELESS[descriptor.auth_type]
        return strategy_cls(descriptor.name, descriptor.auth_config)
