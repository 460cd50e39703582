from __future__ import annotations

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from gateway import webhooks
from gateway.errors import WEBHOOK_DELIVERY_FAILED, GatewayError, NotFoundError, ValidationError
from gateway.merchants import register_merchant, update_settings
from gateway.signing import compute_signature

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "sdk"))

from ap2_merchant import verify_webhook  # noqa: E402


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock(monkeypatch):
    c = _Clock()
    monkeypatch.setattr(webhooks, "_now", c)
    return c


@pytest.fixture()
def endpoint():
    state = {"status": 500, "requests": []}

    def handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(request)
        return httpx.Response(state["status"], text="nope" if state["status"] >= 300 else "ok")

    state["transport"] = httpx.MockTransport(handler)
    return state


@pytest.fixture()
def dispatcher(db_session, endpoint):
    from gateway.config import SessionLocal

    return webhooks.WebhookDispatcher(
        SessionLocal,
        transport=endpoint["transport"],
        runner=lambda fn, *args: fn(*args),
    )


@pytest.fixture()
def shop(db_session):
    with db_session.begin():
        merchant, _ = register_merchant(
            db_session,
            name="Shop",
            business_name="Shop Inc",
            email="shop@example.dev",
            webhook_url="https://shop.example/hooks",
        )
    return merchant


def _stored(db_session, delivery_id):
    db_session.expire_all()
    with db_session.begin():
        return webhooks.get_delivery(db_session, delivery_id)


def _enqueue(db_session, dispatcher, merchant, event=webhooks.PAYMENT_COMPLETED, data=None):
    with db_session.begin():
        delivery = dispatcher.enqueue(db_session, merchant, event, data or {"transaction_id": "tx-1", "amount": 10})
    return delivery


def test_backoff_schedule():
    assert [webhooks.backoff_delay(n) for n in (1, 2, 3, 4)] == [
        timedelta(minutes=2),
        timedelta(minutes=4),
        timedelta(minutes=8),
        timedelta(minutes=16),
    ]


def test_enqueue_signs_payload(db_session, dispatcher, shop, clock):
    delivery = _enqueue(db_session, dispatcher, shop)
    assert delivery.payload["event"] == "payment.completed"
    assert delivery.payload["merchant_id"] == shop.id
    assert delivery.timestamp == int(clock.now.timestamp() * 1000)
    assert delivery.signature == compute_signature(shop.webhook_secret, delivery.timestamp, delivery.payload)
    assert delivery.attempts == 0
    assert delivery.max_attempts == 5


def test_no_delivery_without_webhook_url(db_session, dispatcher):
    with db_session.begin():
        merchant, _ = register_merchant(db_session, name="Quiet", business_name="Quiet", email="q@example.dev")
        assert dispatcher.enqueue(db_session, merchant, webhooks.PAYMENT_COMPLETED, {}) is None


def test_notification_settings_gate_event_families(db_session, dispatcher, shop):
    with db_session.begin():
        update_settings(db_session, shop.id, {"notify_on_payment_executed": False})
        assert dispatcher.enqueue(db_session, shop, webhooks.PAYMENT_COMPLETED, {}) is None
        assert dispatcher.enqueue(db_session, shop, webhooks.CART_UPDATED, {}) is not None


def test_successful_delivery(db_session, dispatcher, shop, endpoint, clock):
    endpoint["status"] = 200
    delivery = _enqueue(db_session, dispatcher, shop)
    assert dispatcher.attempt_delivery(delivery.id) == "delivered"

    request = endpoint["requests"][0]
    assert request.headers["X-AP2-Event"] == "payment.completed"
    assert request.headers["X-AP2-Delivery"] == delivery.id
    body = json.loads(request.content)
    assert request.headers["X-AP2-Signature"] == compute_signature(
        shop.webhook_secret, request.headers["X-AP2-Timestamp"], body
    )

    stored = _stored(db_session, delivery.id)
    assert stored.delivered_at is not None
    assert stored.attempts == 1
    assert stored.response_status == 200
    assert dispatcher.attempt_delivery(delivery.id) is None


def test_failing_endpoint_backs_off_then_fails(db_session, dispatcher, shop, endpoint, clock):
    delivery = _enqueue(db_session, dispatcher, shop)
    assert dispatcher.attempt_delivery(delivery.id) == "retrying"

    for attempt, wait in ((2, 2), (3, 4), (4, 8)):
        clock.advance(minutes=wait - 1)
        assert dispatcher.process_queue() == 0
        clock.advance(minutes=1)
        assert dispatcher.process_queue() == 1
        assert _stored(db_session, delivery.id).attempts == attempt

    clock.advance(minutes=16)
    assert dispatcher.attempt_delivery(delivery.id) == "failed"
    stored = _stored(db_session, delivery.id)
    assert stored.attempts == 5
    assert stored.failed_at is not None
    assert stored.failure_reason == webhooks.MAX_ATTEMPTS_REASON
    assert stored.next_attempt_at is None

    clock.advance(days=1)
    assert dispatcher.process_queue() == 0
    assert len(endpoint["requests"]) == 5

    with pytest.raises(GatewayError) as exc:
        dispatcher.retry_delivery(shop.id, delivery.id)
    assert exc.value.code == WEBHOOK_DELIVERY_FAILED
    assert exc.value.status_code == 409


def test_transport_error_counts_as_failed_attempt(db_session, shop, clock):
    from gateway.config import SessionLocal

    def boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    d = webhooks.WebhookDispatcher(SessionLocal, transport=httpx.MockTransport(boom))
    delivery = _enqueue(db_session, d, shop)
    assert d.attempt_delivery(delivery.id) == "retrying"
    stored = _stored(db_session, delivery.id)
    assert stored.response_status is None
    assert "connection refused" in stored.response_body


def test_manual_retry(db_session, dispatcher, shop, endpoint, clock):
    delivery = _enqueue(db_session, dispatcher, shop)
    assert dispatcher.attempt_delivery(delivery.id) == "retrying"
    endpoint["status"] = 204
    assert dispatcher.retry_delivery(shop.id, delivery.id) == "delivered"
    with pytest.raises(ValidationError):
        dispatcher.retry_delivery(shop.id, delivery.id)
    with pytest.raises(NotFoundError):
        dispatcher.retry_delivery("another-merchant", delivery.id)


def test_schedule_swallows_runner_errors(db_session, shop, clock):
    from gateway.config import SessionLocal

    def broken_runner(fn, *args):
        raise RuntimeError("no threads")

    d = webhooks.WebhookDispatcher(SessionLocal, runner=broken_runner)
    delivery = _enqueue(db_session, d, shop)
    d.schedule(delivery.id)
    assert _stored(db_session, delivery.id).attempts == 0


def test_stats_and_purge(db_session, dispatcher, shop, endpoint, clock):
    endpoint["status"] = 200
    ok = _enqueue(db_session, dispatcher, shop)
    dispatcher.attempt_delivery(ok.id)
    _enqueue(db_session, dispatcher, shop)

    with db_session.begin():
        stats = webhooks.delivery_stats(db_session, shop.id, "day")
    assert stats == {"total_webhooks": 2, "delivered": 1, "failed": 0, "pending": 1, "success_rate": 50.0}

    clock.advance(days=31)
    with db_session.begin():
        assert webhooks.purge_terminal(db_session) == 1
        remaining = webhooks.list_deliveries(db_session, shop.id)
    assert len(remaining) == 1 and remaining[0].delivered_at is None


def test_receiver_signature_check(shop):
    payload = {"event": "cart.updated", "data": {"x": 1}, "timestamp": 1}
    now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
    sig = compute_signature(shop.webhook_secret, now_ms, payload)
    assert webhooks.verify_webhook_signature(payload, now_ms, sig, shop.webhook_secret)
    assert not webhooks.verify_webhook_signature({**payload, "data": {}}, now_ms, sig, shop.webhook_secret)


def test_retries_are_signed_at_send_time(db_session, dispatcher, shop, endpoint, clock):
    delivery = _enqueue(db_session, dispatcher, shop)
    event_time = delivery.payload["timestamp"]
    assert dispatcher.attempt_delivery(delivery.id) == "retrying"
    for wait in (2, 4, 8):
        clock.advance(minutes=wait)
        assert dispatcher.process_queue() == 1

    fourth = endpoint["requests"][3]
    sent_at = int(clock.now.timestamp() * 1000)
    assert fourth.headers["X-AP2-Timestamp"] == str(sent_at)
    assert json.loads(fourth.content)["timestamp"] == event_time
    assert verify_webhook(
        fourth.content,
        fourth.headers["X-AP2-Signature"],
        fourth.headers["X-AP2-Timestamp"],
        shop.webhook_secret,
        now_ms=sent_at,
    )

    stored = _stored(db_session, delivery.id)
    assert stored.timestamp == sent_at
    assert stored.signature == fourth.headers["X-AP2-Signature"]


def test_overlapping_attempts_record_once(db_session, shop, clock):
    from gateway.config import SessionLocal

    requests = []
    nested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if len(requests) == 1:
            # A second attempt claims the same delivery while this POST is in flight.
            nested.append(d.attempt_delivery(request.headers["X-AP2-Delivery"]))
        return httpx.Response(200, text="ok")

    d = webhooks.WebhookDispatcher(SessionLocal, transport=httpx.MockTransport(handler))
    delivery = _enqueue(db_session, d, shop)

    assert d.attempt_delivery(delivery.id) is None
    assert nested == ["delivered"]
    assert len(requests) == 2

    stored = _stored(db_session, delivery.id)
    assert stored.attempts == 1
    assert stored.delivered_at is not None


def test_no_delivery_without_webhook_secret(db_session, dispatcher, shop, endpoint):
    with db_session.begin():
        shop.webhook_secret = None
    with db_session.begin():
        assert dispatcher.enqueue(db_session, shop, webhooks.PAYMENT_COMPLETED, {}) is None
    assert endpoint["requests"] == []
