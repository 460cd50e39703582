from __future__ import annotations

import importlib
import json
import sys
import time
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

ADMIN_TOKEN = "test-admin-token"
WEBHOOK_URL = "https://merchant.test/hooks"


class WebhookReceiver:
    """Records outbound webhook POSTs; answers with ``status_code``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 300})

    @property
    def events(self) -> list[str]:
        return [r.headers["X-AP2-Event"] for r in self.requests]

    def payloads(self, event: str | None = None) -> list[dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if event is None or r.headers["X-AP2-Event"] == event
        ]


def _reload_gateway():
    import gateway.config as config_mod
    import gateway.merchants as merchants_mod
    import gateway.transactions as transactions_mod
    import gateway.mandates as mandates_mod
    import gateway.commerce as commerce_mod
    import gateway.payments as payments_mod
    import gateway.webhooks as webhooks_mod
    import gateway.auth as auth_mod
    import gateway.service as service_mod
    import gateway.routes.gateway as gateway_routes
    import gateway.routes.merchants as merchant_routes
    import gateway.routes.mandates as mandate_routes
    import gateway.middleware as middleware_mod
    import gateway.tasks as tasks_mod
    import gateway.app as app_mod

    for mod in (
        config_mod,
        merchants_mod,
        transactions_mod,
        mandates_mod,
        commerce_mod,
        payments_mod,
        webhooks_mod,
        auth_mod,
        service_mod,
        gateway_routes,
        merchant_routes,
        mandate_routes,
        middleware_mod,
        tasks_mod,
        app_mod,
    ):
        importlib.reload(mod)
    return app_mod


@pytest.fixture()
def gateway_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    # Isolated DB per test.
    monkeypatch.setenv("AP2_GATEWAY_DATABASE_URL", f"sqlite:///{tmp_path / 'gateway.db'}")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("AP2_GATEWAY_AUTO_CREATE_SCHEMA", "true")
    monkeypatch.setenv("AP2_GATEWAY_RUN_BACKGROUND_TASKS", "false")
    monkeypatch.setenv("AP2_GATEWAY_ADMIN_TOKEN", ADMIN_TOKEN)
    monkeypatch.setenv("AP2_GATEWAY_API_KEY_SALT_ROUNDS", "4")
    monkeypatch.setenv("AP2_GATEWAY_WEBHOOK_MAX_ATTEMPTS", "5")
    return _reload_gateway()


@pytest.fixture()
def receiver(gateway_env) -> WebhookReceiver:
    """Deliver webhooks inline, through a mock transport, right after commit."""
    import gateway.webhooks as webhooks_mod

    rec = WebhookReceiver()
    webhooks_mod.dispatcher.transport = httpx.MockTransport(rec.handler)
    webhooks_mod.dispatcher.runner = lambda fn, *args: fn(*args)
    return rec


@pytest.fixture()
def db_session(gateway_env):
    from gateway.config import SessionLocal, engine
    from gateway.models import Base

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(gateway_env, receiver):
    with TestClient(gateway_env.create_app()) as c:
        yield c


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"X-AP2-Admin-Token": ADMIN_TOKEN}


@pytest.fixture()
def merchant(client, admin_headers) -> dict[str, Any]:
    """A registered, activated merchant with a webhook endpoint."""
    resp = client.post(
        "/v1/merchants/register",
        json={
            "name": "Test Store",
            "business_name": "Test Store LLC",
            "email": "owner@teststore.dev",
            "webhook_url": WEBHOOK_URL,
        },
    )
    assert resp.status_code == 201, resp.text
    data = resp.json()
    merchant_id = data["merchant"]["id"]
    resp = client.put(f"/v1/merchants/{merchant_id}/status", json={"status": "active"}, headers=admin_headers)
    assert resp.status_code == 200, resp.text
    return {
        "id": merchant_id,
        "api_key": data["api_key"],
        "api_secret": data["api_secret"],
        "webhook_secret": data["webhook_secret"],
    }


@pytest.fixture()
def signed():
    """Build signed gateway headers for a JSON body."""
    from gateway.signing import compute_signature

    def _signed(m: dict[str, Any], body: dict[str, Any], *, timestamp: int | None = None) -> dict[str, str]:
        ts = int(time.time() * 1000) if timestamp is None else timestamp
        return {
            "X-AP2-API-Key": m["api_key"],
            "X-AP2-Timestamp": str(ts),
            "X-AP2-Signature": compute_signature(m["api_secret"], ts, body),
        }

    return _signed


@pytest.fixture()
def make_mandate(client, admin_headers):
    """Create and activate a mandate through the operator API."""

    def _make(mandate_type: str, constraints: dict[str, Any], *, user_id: str = "user-1", agent_id: str = "agent-1", **extra):
        resp = client.post(
            "/v1/mandates",
            json={"user_id": user_id, "agent_id": agent_id, "type": mandate_type, "constraints": constraints, **extra},
            headers=admin_headers,
        )
        assert resp.status_code == 201, resp.text
        mandate_id = resp.json()["id"]
        resp = client.post(f"/v1/mandates/{mandate_id}/approve", headers=admin_headers)
        assert resp.status_code == 200, resp.text
        return resp.json()

    return _make


@pytest.fixture()
def post_signed(client, signed):
    def _post(m: dict[str, Any], path: str, body: dict[str, Any]) -> httpx.Response:
        return client.post(path, json=body, headers=signed(m, body))

    return _post
