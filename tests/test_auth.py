"""Tests for inbound caller authentication."""

import json
import time

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from adapter_gateway.auth import InboundAuthenticator, JwksVerifier
from adapter_gateway.errors import AuthenticationFailed


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def verifier(signing_key):
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(signing_key.public_key()))
    jwk["kid"] = "key-1"

    def handler(request):
        return httpx.Response(200, json={"keys": [jwk]})

    return JwksVerifier(
        jwks_url="https://issuer.example.test/.well-known/jwks.json",
        issuer="https://issuer.example.test",
        audience=None,
        transport=httpx.MockTransport(handler),
    )


def _token(signing_key, **claims):
    pem = signing_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    payload = {
        "sub": "user_123",
        "iss": "https://issuer.example.test",
        "exp": int(time.time()) + 300,
        **claims,
    }
    return jwt.encode(payload, pem, algorithm="RS256", headers={"kid": "key-1"})


class TestJwksVerifier:
    @pytest.mark.asyncio
    async def test_valid_token(self, verifier, signing_key):
        context = await verifier.verify(_token(signing_key))

        assert context.subject == "user_123"
        assert context.kind == "jwt"

    @pytest.mark.asyncio
    async def test_wrong_issuer_rejected(self, verifier, signing_key):
        with pytest.raises(jwt.InvalidIssuerError):
            await verifier.verify(_token(signing_key, iss="https://other.example.test"))


class TestInboundAuthenticator:
    @pytest.mark.asyncio
    async def test_anonymous_when_unconfigured(self):
        context = await InboundAuthenticator().authenticate(None)

        assert context.kind == "anonymous"
        assert context.subject is None

    @pytest.mark.asyncio
    async def test_service_token(self):
        context = await InboundAuthenticator(service_token="svc").authenticate("Bearer svc")

        assert context.kind == "service"

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self):
        with pytest.raises(AuthenticationFailed):
            await InboundAuthenticator(service_token="svc").authenticate(None)

    @pytest.mark.asyncio
    async def test_jwt_subject(self, verifier, signing_key):
        authenticator = InboundAuthenticator(verifier=verifier)

        context = await authenticator.authenticate(f"Bearer {_token(signing_key)}")

        assert context.subject == "user_123"

    @pytest.mark.asyncio
    async def test_expired_jwt_rejected(self, verifier, signing_key):
        authenticator = InboundAuthenticator(verifier=verifier)
        token = _token(signing_key, exp=int(time.time()) - 60)

        with pytest.raises(AuthenticationFailed):
            await authenticator.authenticate(f"Bearer {token}")
