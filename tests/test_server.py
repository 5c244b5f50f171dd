"""Tests for server wiring."""

import json

import httpx
import pytest

from adapter_gateway.config import Settings
from adapter_gateway.server import build_server, mcp_tool_name

from conftest import PAYSTACK_MANIFEST, make_descriptor


def test_mcp_tool_name():
    descriptor = make_descriptor()

    assert mcp_tool_name(descriptor, descriptor.tool("verify_transaction")) == (
        "paystack_api_verify_transaction"
    )


@pytest.mark.asyncio
async def test_build_server_loads_manifests(tmp_path):
    (tmp_path / "paystack-api.json").write_text(json.dumps(PAYSTACK_MANIFEST))
    settings = Settings(gateway_transport="http", gateway_adapters_path=str(tmp_path))

    mcp, app = await build_server(settings)

    assert app is not None
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway") as client:
        adapters = await client.get("/api/adapters")
        health = await client.get("/health")

    assert [a["name"] for a in adapters.json()["adapters"]] == ["paystack-api"]
    assert health.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_build_server_without_manifests_is_degraded(tmp_path):
    settings = Settings(gateway_transport="http", gateway_adapters_path=str(tmp_path / "none"))

    _, app = await build_server(settings)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway") as client:
        health = await client.get("/health")

    assert health.status_code == 503
    assert health.json()["status"] == "degraded"
