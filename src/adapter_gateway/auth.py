"""Inbound caller authentication: service token or JWKS-verified JWT."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import jwt

from .config import Settings
from .errors import AuthenticationFailed


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    subject: Optional[str]
    kind: str = "jwt"
    claims: Dict[str, Any] = field(default_factory=dict)


ANONYMOUS = AuthContext(subject=None, kind="anonymous")
SERVICE = AuthContext(subject=None, kind="service")


class JwksVerifier:
    def __init__(
        self,
        jwks_url: str,
        issuer: Optional[str],
        audience: Optional[str],
        cache_seconds: int = 3600,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.jwks_url = jwks_url
        self.issuer = issuer
        self.audience = audience
        self.cache_seconds = cache_seconds
        self.transport = transport
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_fetched_at: float = 0.0

    async def verify(self, token: str) -> AuthContext:
        jwks = await self._get_jwks()
        header = jwt.get_unverified_header(token)
        key = self._find_key(jwks, header.get("kid"))
        if not key:
            raise jwt.InvalidKeyError("No matching JWK")

        claims = jwt.decode(
            token,
            key=jwt.algorithms.RSAAlgorithm.from_jwk(key),
            algorithms=["RS256"],
            audience=self.audience,
            issuer=self.issuer,
            options={"verify_aud": self.audience is not None},
        )
        subject = claims.get("sub")
        return AuthContext(subject=str(subject) if subject else None, kind="jwt", claims=claims)

    async def _get_jwks(self) -> Dict[str, Any]:
        if self._jwks and time.time() - self._jwks_fetched_at < self.cache_seconds:
            return self._jwks

        async with httpx.AsyncClient(timeout=10, transport=self.transport) as client:
            response = await client.get(self.jwks_url)
            response.raise_for_status()
            jwks = response.json()

        self._jwks = jwks
        self._jwks_fetched_at = time.time()
        return jwks

    def _find_key(self, jwks: Dict[str, Any], kid: Optional[str]) -> Optional[str]:
        for key in jwks.get("keys", []):
            if not kid or key.get("kid") == kid:
                return json.dumps(key)
        return None


class InboundAuthenticator:
    """Resolves the ``Authorization`` header into an AuthContext.

    With neither a service token nor a JWKS URL configured every request is
    let through as anonymous.
    """

    def __init__(self, service_token: Optional[str] = None, verifier: Optional[JwksVerifier] = None) -> None:
        self.service_token = service_token
        self.verifier = verifier

    @classmethod
    def from_settings(cls, settings: Settings) -> "InboundAuthenticator":
        verifier = None
        if settings.jwks_url:
            verifier = JwksVerifier(
                jwks_url=settings.jwks_url,
                issuer=settings.jwt_issuer,
                audience=settings.jwt_audience,
            )
        return cls(service_token=settings.gateway_auth_token, verifier=verifier)

    @property
    def enabled(self) -> bool:
        return bool(self.service_token or self.verifier)

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        if not self.enabled:
            return ANONYMOUS

        token = (authorization or "").replace("Bearer", "", 1).strip()
        if self.service_token and token == self.service_token:
            return SERVICE

        if self.verifier and token:
            try:
                return await self.verifier.verify(token)
            except (jwt.PyJWTError, httpx.HTTPError) as exc:
                logger.warning("JWT validation failed: %s", exc)

        raise AuthenticationFailed("Unauthorized", details={"reason": "missing or invalid bearer token"})
