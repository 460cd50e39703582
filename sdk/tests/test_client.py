from __future__ import annotations

# Allow running `pytest` from repo root without installing sdk/ first.
import hashlib
import hmac
import json
import sys
from pathlib import Path

import httpx
import pytest

sdk_root = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(sdk_root))

from ap2_merchant import MerchantGatewayClient, canonical_json, sign_request, verify_webhook  # noqa: E402

SECRET = "sk_sdk_test"
TS = 1_760_000_000_000


def test_canonical_json_matches_gateway_format():
    body = {"z": 1, "a": [3, {"y": 2, "x": 1}], "signature": "s", "timestamp": 9}
    assert canonical_json(body) == '{"a":[3,{"x":1,"y":2}],"z":1}'


def test_sign_request_headers():
    body = {"amount": 10, "mandate_id": "m-1"}
    headers = sign_request(SECRET, body, timestamp=TS)
    expected = hmac.new(
        SECRET.encode(), f'{TS}.{{"amount":10,"mandate_id":"m-1"}}'.encode(), hashlib.sha256
    ).hexdigest()
    assert headers == {"X-AP2-Signature": expected, "X-AP2-Timestamp": str(TS)}


def test_verify_webhook_accepts_raw_body():
    payload = {"event": "payment.completed", "merchant_id": "m", "data": {"amount": 5}, "timestamp": TS}
    sig = sign_request(SECRET, payload, timestamp=TS)["X-AP2-Signature"]
    raw = json.dumps(payload).encode()
    assert verify_webhook(raw, sig, TS, SECRET, now_ms=TS + 1000)
    assert not verify_webhook(raw, sig, TS, "whsec_other", now_ms=TS + 1000)
    assert not verify_webhook(raw, sig, TS, SECRET, now_ms=TS + 300_001)
    assert not verify_webhook(b"{not json", sig, TS, SECRET, now_ms=TS)


def test_client_signs_gateway_calls():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True})

    client = MerchantGatewayClient(
        base_url="http://gateway.test/",
        api_key="mk_abc_def",
        api_secret=SECRET,
        merchant_id="merchant-1",
        transport=httpx.MockTransport(handler),
    )
    assert client.execute_payment(user_id="u", agent_id="a", mandate_id="m", amount=12.5) == {"success": True}

    request = seen[0]
    assert request.url.path == "/v1/gateway/payment"
    assert request.headers["X-AP2-API-Key"] == "mk_abc_def"
    body = json.loads(request.content)
    ts = int(request.headers["X-AP2-Timestamp"])
    assert request.headers["X-AP2-Signature"] == sign_request(SECRET, body, timestamp=ts)["X-AP2-Signature"]


def test_account_calls_need_merchant_id():
    client = MerchantGatewayClient(base_url="http://gateway.test", api_key="mk_a_b")
    with pytest.raises(ValueError):
        client.get_account()


def test_signed_call_needs_secret():
    client = MerchantGatewayClient(base_url="http://gateway.test", api_key="mk_a_b", merchant_id="m")
    with pytest.raises(ValueError):
        client.verify_mandate(mandate_id="m", agent_id="a", operation="cart")
