"""Tests for the REST surface."""

import httpx
import pytest
from starlette.applications import Starlette

from adapter_gateway.api import attach_auth, mount_gateway_api
from adapter_gateway.audit import InMemoryAuditSink
from adapter_gateway.auth import InboundAuthenticator
from adapter_gateway.models import RateLimitPolicy
from adapter_gateway.ratelimit import RateLimiter

from conftest import PAYSTACK_MANIFEST, FakeClock, build_pipeline, make_descriptor


def _upstream(request):
    return httpx.Response(200, json={"status": True, "message": "Verification successful"})


def _app(pipeline, authenticator=None, load_descriptors=None):
    app = Starlette()
    if authenticator is not None:
        attach_auth(app, authenticator)
    mount_gateway_api(app, pipeline, load_descriptors=load_descriptors)
    return app


def _client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://gateway")


class UnreachableAuditSink(InMemoryAuditSink):
    async def ping(self):
        return False


class TestExecute:
    @pytest.mark.asyncio
    async def test_success_body(self):
        app = _app(build_pipeline(_upstream))

        async with _client(app) as client:
            response = await client.post(
                "/api/execute/paystack-api/verify_transaction",
                json={"parameters": {"reference": "abc"}},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["adapter"] == "paystack-api"
        assert body["tool"] == "verify_transaction"
        assert body["output"] == {"status": True, "message": "Verification successful"}
        assert body["durationMs"] >= 0
        assert "timestamp" in body

    @pytest.mark.asyncio
    async def test_validation_error_body(self):
        app = _app(build_pipeline(_upstream))

        async with _client(app) as client:
            response = await client.post(
                "/api/execute/paystack-api/verify_transaction", json={"parameters": {}}
            )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["fields"][0]["field"] == "reference"
        assert "timestamp" in response.json()

    @pytest.mark.asyncio
    async def test_unknown_adapter_404(self):
        app = _app(build_pipeline(_upstream))

        async with _client(app) as client:
            response = await client.post("/api/execute/unknown-api/anything", json={})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ADAPTER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_invalid_json_body(self):
        app = _app(build_pipeline(_upstream))

        async with _client(app) as client:
            response = await client.post(
                "/api/execute/paystack-api/verify_transaction",
                content=b"{oops",
                headers={"Content-Type": "application/json"},
            )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_rate_limit_header(self):
        clock = FakeClock(1000.0)
        limiter = RateLimiter(default_policy=RateLimitPolicy(1, 60), clock=clock)
        app = _app(build_pipeline(_upstream, clock=clock, rate_limiter=limiter))

        async with _client(app) as client:
            payload = {"parameters": {"reference": "abc"}}
            await client.post("/api/execute/paystack-api/verify_transaction", json=payload)
            response = await client.post(
                "/api/execute/paystack-api/verify_transaction", json=payload
            )

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Reset"] == "1060"
        assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"

    @pytest.mark.asyncio
    async def test_caller_id_from_header(self):
        sink = InMemoryAuditSink()
        app = _app(build_pipeline(_upstream, audit_sink=sink))

        async with _client(app) as client:
            await client.post(
                "/api/execute/paystack-api/verify_transaction",
                json={"parameters": {"reference": "abc"}},
                headers={"X-Caller-ID": "billing-service"},
            )

        assert sink.records[0].caller_id == "billing-service"

    @pytest.mark.asyncio
    async def test_upstream_error_503(self):
        app = _app(build_pipeline(lambda request: httpx.Response(500), max_attempts=1))

        async with _client(app) as client:
            response = await client.post(
                "/api/execute/paystack-api/verify_transaction",
                json={"parameters": {"reference": "abc"}},
            )

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "UPSTREAM_ERROR"


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_list_adapters(self):
        pipeline = build_pipeline(
            _upstream, descriptors=[make_descriptor(), make_descriptor(name="stripe-api")]
        )

        async with _client(_app(pipeline)) as client:
            response = await client.get("/api/adapters")

        body = response.json()
        assert body["total"] == 2
        assert body["adapters"][0] == {
            "name": "paystack-api",
            "tools": ["verify_transaction", "initialize_transaction"],
            "description": "Paystack payments API",
            "authType": "bearer",
        }

    @pytest.mark.asyncio
    async def test_get_adapter(self):
        async with _client(_app(build_pipeline(_upstream))) as client:
            found = await client.get("/api/adapters/paystack-api")
            missing = await client.get("/api/adapters/nope-api")

        assert found.status_code == 200
        assert found.json()["baseUrl"] == "https://api.paystack.test"
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "ADAPTER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_list_tools(self):
        pipeline = build_pipeline(
            _upstream, descriptors=[make_descriptor(), make_descriptor(name="stripe-api")]
        )

        async with _client(_app(pipeline)) as client:
            response = await client.get("/api/tools")

        body = response.json()
        assert body["total"] == 4
        assert body["adapters"] == 2
        assert body["breakdown"]["stripe-api"] == ["verify_transaction", "initialize_transaction"]


class TestHealth:
    @pytest.mark.asyncio
    async def test_ok(self):
        async with _client(_app(build_pipeline(_upstream))) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["adapters"] == 1
        assert response.json()["totalTools"] == 2

    @pytest.mark.asyncio
    async def test_degraded_without_adapters(self):
        async with _client(_app(build_pipeline(_upstream, descriptors=[]))) as client:
            response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_degraded_when_audit_unreachable(self):
        pipeline = build_pipeline(_upstream, audit_sink=UnreachableAuditSink())

        async with _client(_app(pipeline)) as client:
            response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["checks"]["audit"] is False


class TestInboundAuth:
    @pytest.mark.asyncio
    async def test_service_token_required(self):
        app = _app(build_pipeline(_upstream), InboundAuthenticator(service_token="svc-token"))

        async with _client(app) as client:
            denied = await client.get("/api/adapters")
            allowed = await client.get(
                "/api/adapters", headers={"Authorization": "Bearer svc-token"}
            )
            health = await client.get("/health")

        assert denied.status_code == 401
        assert denied.json()["error"]["code"] == "AUTHENTICATION_FAILED"
        assert allowed.status_code == 200
        assert health.status_code == 200

    @pytest.mark.asyncio
    async def test_open_when_nothing_configured(self):
        app = _app(build_pipeline(_upstream), InboundAuthenticator())

        async with _client(app) as client:
            response = await client.get("/api/adapters")

        assert response.status_code == 200


class TestAdmin:
    @pytest.mark.asyncio
    async def test_register_adapter(self):
        pipeline = build_pipeline(_upstream, descriptors=[])
        manifest = {**PAYSTACK_MANIFEST, "name": "flutterwave-api"}

        async with _client(_app(pipeline)) as client:
            created = await client.post("/admin/adapters", json=manifest)
            listed = await client.get("/api/adapters")

        assert created.status_code == 201
        assert created.json()["name"] == "flutterwave-api"
        assert [a["name"] for a in listed.json()["adapters"]] == ["flutterwave-api"]

    @pytest.mark.asyncio
    async def test_register_invalid_manifest(self):
        async with _client(_app(build_pipeline(_upstream))) as client:
            response = await client.post("/admin/adapters", json={"name": "Bad Name"})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_reload(self):
        pipeline = build_pipeline(_upstream)
        app = _app(pipeline, load_descriptors=lambda: [make_descriptor(name="stripe-api")])

        async with _client(app) as client:
            response = await client.post("/admin/adapters/reload")

        assert response.status_code == 200
        assert response.json()["adapters"] == 1
        assert pipeline.registry.get("paystack-api") is None
        assert pipeline.registry.get("stripe-api") is not None

    @pytest.mark.asyncio
    async def test_circuits(self):
        pipeline = build_pipeline(lambda request: httpx.Response(500), max_attempts=1)

        async with _client(_app(pipeline)) as client:
            await client.post(
                "/api/execute/paystack-api/verify_transaction",
                json={"parameters": {"reference": "abc"}},
            )
            response = await client.get("/admin/circuits")

        circuit = response.json()["circuits"]["paystack-api"]
        assert circuit["state"] == "closed"
        assert circuit["failure_count"] == 1


class TestMetrics:
    @pytest.mark.asyncio
    async def test_metrics_exposed_without_token(self):
        pipeline = build_pipeline(lambda request: httpx.Response(500), max_attempts=1)
        app = _app(pipeline, InboundAuthenticator(service_token="svc-token"))

        async with _client(app) as client:
            await client.post(
                "/api/execute/paystack-api/verify_transaction",
                json={"parameters": {"reference": "abc"}},
                headers={"Authorization": "Bearer svc-token"},
            )
            response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "gateway_dispatch_total" in response.text
        registry = pipeline.metrics.registry
        labels = {"adapter": "paystack-api", "tool": "verify_transaction", "outcome": "upstream_error"}
        assert registry.get_sample_value("gateway_dispatch_total", labels) == 1.0
        assert registry.get_sample_value("gateway_circuit_state", {"adapter": "paystack-api"}) == 0.0
