from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx

SIGNATURE_FIELDS = ("signature", "timestamp")
DEFAULT_TOLERANCE_MS = 5 * 60 * 1000


def _join(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + "/" + path.lstrip("/")


def canonical_json(body: Any) -> str:
    """Sorted keys, compact separators; top-level ``signature``/``timestamp`` are not signed."""
    if body is None:
        return ""
    if isinstance(body, dict):
        body = {k: v for k, v in body.items() if k not in SIGNATURE_FIELDS}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)


def sign_request(api_secret: str, body: Any, timestamp: int | None = None) -> dict[str, str]:
    """Produce X-AP2-Signature and X-AP2-Timestamp headers for a request body."""
    ts = int(time.time() * 1000) if timestamp is None else timestamp
    message = f"{ts}.{canonical_json(body)}".encode("utf-8")
    sig = hmac.new(api_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return {"X-AP2-Signature": sig, "X-AP2-Timestamp": str(ts)}


def verify_webhook(
    payload: bytes | str | dict[str, Any],
    signature: str,
    timestamp: int | str,
    webhook_secret: str,
    *,
    tolerance_ms: int = DEFAULT_TOLERANCE_MS,
    now_ms: int | None = None,
) -> bool:
    """Check the X-AP2-Signature of a webhook delivery against its raw body."""
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False
    now = int(time.time() * 1000) if now_ms is None else now_ms
    if abs(now - ts) > tolerance_ms:
        return False
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError:
            return False
    expected = hmac.new(
        webhook_secret.encode("utf-8"),
        f"{ts}.{canonical_json(payload)}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, signature)


@dataclass
class MerchantGatewayClient:
    """Synchronous client for the AP2 gateway REST API."""

    base_url: str
    api_key: str | None = None
    api_secret: str | None = None
    merchant_id: str | None = None
    timeout_s: float = 10.0
    default_headers: dict[str, str] = field(default_factory=dict)
    transport: httpx.BaseTransport | None = None

    def _headers(self, *, body: Any = None, signed: bool = False) -> dict[str, str]:
        h: dict[str, str] = {**self.default_headers}
        if self.api_key:
            h["X-AP2-API-Key"] = self.api_key
        h["X-Request-Id"] = f"req_{uuid.uuid4().hex[:12]}"
        if signed:
            if not self.api_secret:
                raise ValueError("api_secret is required for signed gateway requests")
            h.update(sign_request(self.api_secret, body))
        return h

    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        params: dict[str, Any] | None = None,
        signed: bool = False,
    ) -> dict[str, Any]:
        url = _join(self.base_url, path)
        headers = self._headers(body=payload, signed=signed)
        content = None
        if payload is not None:
            content = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        with httpx.Client(timeout=self.timeout_s, transport=self.transport) as c:
            r = c.request(method, url, content=content, params=params, headers=headers)
            r.raise_for_status()
            return r.json()

    def _require_merchant_id(self) -> str:
        if not self.merchant_id:
            raise ValueError("merchant_id is required for account operations")
        return self.merchant_id

    # --- Gateway ---

    def authorize(
        self,
        *,
        user_id: str,
        agent_id: str,
        mandate_id: str,
        transaction_type: str,
        amount: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "merchant_id": self._require_merchant_id(),
            "user_id": user_id,
            "agent_id": agent_id,
            "mandate_id": mandate_id,
            "transaction_type": transaction_type,
            "metadata": metadata or {},
        }
        if amount is not None:
            payload["amount"] = amount
        return self._request("POST", "/v1/gateway/authorize", payload, signed=True)

    def verify_mandate(
        self, *, mandate_id: str, agent_id: str, operation: str, amount: float | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"mandate_id": mandate_id, "agent_id": agent_id, "operation": operation}
        if amount is not None:
            payload["amount"] = amount
        return self._request("POST", "/v1/gateway/verify-mandate", payload, signed=True)

    def cart(self, **fields: Any) -> dict[str, Any]:
        return self._request("POST", "/v1/gateway/cart", fields, signed=True)

    def create_intent(
        self,
        *,
        user_id: str,
        agent_id: str,
        mandate_id: str,
        items: list[dict[str, Any]],
        reasoning: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"user_id": user_id, "agent_id": agent_id, "mandate_id": mandate_id, "items": items}
        if reasoning is not None:
            payload["reasoning"] = reasoning
        return self._request("POST", "/v1/gateway/intent", payload, signed=True)

    def execute_payment(
        self,
        *,
        user_id: str,
        agent_id: str,
        mandate_id: str,
        amount: float,
        currency: str = "USD",
        payment_method: str | None = None,
        intent_id: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "user_id": user_id,
            "agent_id": agent_id,
            "mandate_id": mandate_id,
            "amount": amount,
            "currency": currency,
        }
        if payment_method is not None:
            payload["payment_method"] = payment_method
        if intent_id is not None:
            payload["intent_id"] = intent_id
        return self._request("POST", "/v1/gateway/payment", payload, signed=True)

    # --- Account ---

    def get_account(self) -> dict[str, Any]:
        return self._request("GET", f"/v1/merchants/{self._require_merchant_id()}")

    def update_settings(self, **changes: Any) -> dict[str, Any]:
        return self._request("PUT", f"/v1/merchants/{self._require_merchant_id()}/settings", changes)

    def set_webhook(self, webhook_url: str | None) -> dict[str, Any]:
        return self._request("PUT", f"/v1/merchants/{self._require_merchant_id()}/webhook", {"webhook_url": webhook_url})

    def rotate_keys(self) -> dict[str, Any]:
        data = self._request("POST", f"/v1/merchants/{self._require_merchant_id()}/rotate-keys")
        self.api_key = data["api_key"]
        self.api_secret = data["api_secret"]
        return data

    def list_transactions(self, **params: Any) -> dict[str, Any]:
        return self._request("GET", f"/v1/merchants/{self._require_merchant_id()}/transactions", params=params)

    def refund(self, transaction_id: str, reason: str | None = None) -> dict[str, Any]:
        path = f"/v1/merchants/{self._require_merchant_id()}/transactions/{transaction_id}/refund"
        return self._request("POST", path, {"reason": reason})

    def analytics(self, period: str = "day") -> dict[str, Any]:
        return self._request("GET", f"/v1/merchants/{self._require_merchant_id()}/analytics", params={"period": period})

    def webhook_logs(self, **params: Any) -> dict[str, Any]:
        return self._request("GET", f"/v1/merchants/{self._require_merchant_id()}/webhooks", params=params)

    def retry_webhook(self, delivery_id: str) -> dict[str, Any]:
        return self._request("POST", f"/v1/merchants/{self._require_merchant_id()}/webhooks/{delivery_id}/retry")
