from __future__ import annotations

import time

from gateway.signing import compute_signature


def _verify_body(mandate_id: str = "missing") -> dict:
    return {"mandate_id": mandate_id, "agent_id": "agent-1", "operation": "payment"}


def test_missing_api_key_is_rejected(client):
    resp = client.post("/v1/gateway/verify-mandate", json=_verify_body())
    assert resp.status_code == 401
    error = resp.json()["error"]
    assert error["code"] == "INVALID_API_KEY"
    assert error["request_id"] == resp.headers["X-Request-Id"]


def test_unknown_api_key_is_rejected(client, merchant):
    body = _verify_body()
    ts = int(time.time() * 1000)
    headers = {
        "X-AP2-API-Key": "mk_0000000000000000_" + "0" * 48,
        "X-AP2-Timestamp": str(ts),
        "X-AP2-Signature": compute_signature(merchant["api_secret"], ts, body),
    }
    resp = client.post("/v1/gateway/verify-mandate", json=body, headers=headers)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "INVALID_API_KEY"


def test_missing_signature_is_rejected(client, merchant):
    resp = client.post(
        "/v1/gateway/verify-mandate",
        json=_verify_body(),
        headers={"X-AP2-API-Key": merchant["api_key"]},
    )
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "INVALID_SIGNATURE"


def test_bad_signature_is_rejected(client, merchant, signed):
    body = _verify_body()
    headers = signed(merchant, body)
    headers["X-AP2-Signature"] = "0" * 64
    resp = client.post("/v1/gateway/verify-mandate", json=body, headers=headers)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "INVALID_SIGNATURE"


def test_stale_timestamp_is_rejected(client, merchant, signed):
    body = _verify_body()
    stale = int(time.time() * 1000) - 6 * 60 * 1000
    resp = client.post("/v1/gateway/verify-mandate", json=body, headers=signed(merchant, body, timestamp=stale))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "EXPIRED_REQUEST"


def test_auth_failure_writes_no_transaction(client, merchant, signed, make_mandate):
    mandate = make_mandate("payment", {"max_transaction_amount": 100})
    body = {
        "user_id": "user-1",
        "agent_id": "agent-1",
        "mandate_id": mandate["id"],
        "amount": 10,
    }
    headers = signed(merchant, body)
    headers["X-AP2-Signature"] = "f" * 64
    resp = client.post("/v1/gateway/payment", json=body, headers=headers)
    assert resp.status_code == 401

    resp = client.get(f"/v1/merchants/{merchant['id']}/transactions", headers={"X-AP2-API-Key": merchant["api_key"]})
    assert resp.json()["total"] == 0


def test_pending_merchant_cannot_call_gateway(client, signed):
    resp = client.post(
        "/v1/merchants/register",
        json={"name": "New", "business_name": "New Co", "email": "new@co.dev"},
    )
    data = resp.json()
    m = {"api_key": data["api_key"], "api_secret": data["api_secret"]}
    body = _verify_body()
    resp = client.post("/v1/gateway/verify-mandate", json=body, headers=signed(m, body))
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "MERCHANT_SUSPENDED"
    assert "pending" in error["message"]


def test_suspended_merchant_is_rejected(client, merchant, signed, admin_headers):
    resp = client.put(f"/v1/merchants/{merchant['id']}/status", json={"status": "suspended"}, headers=admin_headers)
    assert resp.status_code == 200
    body = _verify_body()
    resp = client.post("/v1/gateway/verify-mandate", json=body, headers=signed(merchant, body))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "MERCHANT_SUSPENDED"


def test_rotated_keys_replace_old_pair(client, merchant, signed):
    resp = client.post(
        f"/v1/merchants/{merchant['id']}/rotate-keys",
        headers={"X-AP2-API-Key": merchant["api_key"]},
    )
    assert resp.status_code == 200
    fresh = resp.json()

    body = _verify_body()
    old = client.post("/v1/gateway/verify-mandate", json=body, headers=signed(merchant, body))
    assert old.status_code == 401

    new_merchant = {"api_key": fresh["api_key"], "api_secret": fresh["api_secret"]}
    new = client.post("/v1/gateway/verify-mandate", json=body, headers=signed(new_merchant, body))
    assert new.status_code == 404
    assert new.json()["error"]["code"] == "MANDATE_NOT_FOUND"


def test_operator_routes_require_admin_token(client):
    resp = client.post("/v1/mandates", json={"user_id": "u", "agent_id": "a", "type": "cart"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "INSUFFICIENT_PERMISSIONS"
