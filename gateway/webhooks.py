from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from threading import Thread
from typing import Any

import httpx
from sqlalchemy import and_, case, delete, or_, select, update
from sqlalchemy import func as sa_func
from sqlalchemy.orm import Session, sessionmaker

from gateway.config import SessionLocal, settings
from gateway.errors import WEBHOOK_DELIVERY_FAILED, AuthError, GatewayError, NotFoundError, ValidationError
from gateway.models import Merchant, WebhookDelivery
from gateway.signing import compute_signature, verify_signature

logger = logging.getLogger(__name__)

MANDATE_CREATED = "mandate.created"
MANDATE_APPROVED = "mandate.approved"
MANDATE_SUSPENDED = "mandate.suspended"
MANDATE_REVOKED = "mandate.revoked"
MANDATE_EXPIRED = "mandate.expired"
INTENT_CREATED = "intent.created"
INTENT_APPROVED = "intent.approved"
INTENT_REJECTED = "intent.rejected"
INTENT_EXECUTED = "intent.executed"
INTENT_EXPIRED = "intent.expired"
PAYMENT_INITIATED = "payment.initiated"
PAYMENT_COMPLETED = "payment.completed"
PAYMENT_FAILED = "payment.failed"
PAYMENT_REFUNDED = "payment.refunded"
CART_UPDATED = "cart.updated"

ALL_EVENTS = [
    MANDATE_CREATED,
    MANDATE_APPROVED,
    MANDATE_SUSPENDED,
    MANDATE_REVOKED,
    MANDATE_EXPIRED,
    INTENT_CREATED,
    INTENT_APPROVED,
    INTENT_REJECTED,
    INTENT_EXECUTED,
    INTENT_EXPIRED,
    PAYMENT_INITIATED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
    CART_UPDATED,
]

# Event family -> merchant setting that enables it. Cart events always notify.
NOTIFY_SETTINGS = {
    "mandate": "notify_on_mandate_created",
    "intent": "notify_on_intent_created",
    "payment": "notify_on_payment_executed",
}

MAX_ATTEMPTS_REASON = "Max delivery attempts exceeded"
RESPONSE_BODY_LIMIT = 2000
STATS_PERIODS = ("day", "week", "month")

Runner = Callable[..., None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_ms() -> int:
    return int(_now().timestamp() * 1000)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def to_jsonable(data: Any) -> Any:
    """Normalize event data so it can be stored in a JSON column and signed stably."""
    return json.loads(json.dumps(data, default=_json_default))


def encode_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def should_notify(merchant: Merchant, event: str) -> bool:
    family = event.split(".", 1)[0]
    if family == "cart":
        return True
    setting = NOTIFY_SETTINGS.get(family)
    if setting is None:
        return False
    return bool((merchant.settings or {}).get(setting, True))


def backoff_delay(attempts: int) -> timedelta:
    """Delay before the next attempt after ``attempts`` failures: 2, 4, 8, 16 minutes."""
    return timedelta(minutes=2**attempts)


def verify_webhook_signature(payload: Any, timestamp: int | str, signature: str, secret: str) -> bool:
    """Receiver-side check of an outbound delivery (same scheme as inbound requests)."""
    try:
        verify_signature(payload, timestamp, signature, secret, max_age_ms=settings.signature_max_age_seconds * 1000)
    except AuthError as exc:
        logger.debug("Webhook signature rejected: %s", exc.code)
        return False
    return True


def _thread_runner(fn: Callable[..., Any], *args: Any) -> None:
    Thread(target=fn, args=args, daemon=True).start()


@dataclass
class _Attempt:
    delivery_id: str
    url: str
    event: str
    payload: dict[str, Any]
    secret: str
    attempts: int
    max_attempts: int
    signature: str = ""
    timestamp: int = 0


class WebhookDispatcher:
    """Persists, signs and delivers merchant webhooks.

    Each delivery is attempted once right after the triggering operation
    commits (on ``runner``, a daemon thread by default) and from then on by
    ``process_queue`` sweeps. Outcomes are recorded with an update keyed on
    the attempt count read before the POST, so an overlapping sweep and
    immediate attempt cannot both record.
    """

    def __init__(
        self,
        session_factory: sessionmaker | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        runner: Runner | None = None,
        timeout: float | None = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.transport = transport
        self.runner = runner or _thread_runner
        self.timeout = timeout if timeout is not None else settings.webhook_timeout_seconds

    # --- Enqueue ---

    def enqueue(self, session: Session, merchant: Merchant, event: str, data: dict[str, Any]) -> WebhookDelivery | None:
        """Persist a signed delivery in the caller's transaction, or return None if not wanted."""
        if not merchant.webhook_url or not should_notify(merchant, event):
            return None
        if not merchant.webhook_secret:
            logger.warning("Merchant %s has a webhook URL but no webhook secret; %s not queued", merchant.id, event)
            return None
        timestamp = _now_ms()
        payload = {
            "event": event,
            "merchant_id": merchant.id,
            "data": to_jsonable(data),
            "timestamp": timestamp,
        }
        delivery = WebhookDelivery(
            merchant_id=merchant.id,
            event=event,
            payload=payload,
            signature=compute_signature(merchant.webhook_secret, timestamp, payload),
            timestamp=timestamp,
            url=merchant.webhook_url,
            attempts=0,
            max_attempts=settings.webhook_max_attempts,
            next_attempt_at=_now(),
            created_at=_now(),
        )
        session.add(delivery)
        session.flush()
        logger.debug("Queued %s delivery %s for merchant %s", event, delivery.id, merchant.id)
        return delivery

    def schedule(self, delivery_id: str) -> None:
        """Start the best-effort immediate attempt. Call only after the enqueueing transaction commits."""
        try:
            self.runner(self._attempt_quietly, delivery_id)
        except Exception:
            logger.exception("Could not schedule webhook delivery %s", delivery_id)

    def _attempt_quietly(self, delivery_id: str) -> None:
        try:
            self.attempt_delivery(delivery_id)
        except Exception:
            logger.exception("Webhook delivery %s raised", delivery_id)

    # --- Delivery ---

    def _claim(self, delivery_id: str) -> _Attempt | None:
        session = self.session_factory()
        try:
            with session.begin():
                row = session.execute(
                    select(WebhookDelivery, Merchant.webhook_secret)
                    .join(Merchant, Merchant.id == WebhookDelivery.merchant_id)
                    .where(WebhookDelivery.id == delivery_id)
                ).one_or_none()
                if row is None:
                    raise NotFoundError("Webhook delivery not found")
                d, secret = row
                if d.delivered_at is not None or d.failed_at is not None or d.attempts >= d.max_attempts:
                    return None
                if not secret:
                    logger.warning("Merchant %s has no webhook secret; delivery %s skipped", d.merchant_id, d.id)
                    return None
                return _Attempt(
                    delivery_id=d.id,
                    url=d.url,
                    event=d.event,
                    payload=dict(d.payload),
                    secret=secret,
                    attempts=d.attempts,
                    max_attempts=d.max_attempts,
                )
        finally:
            session.close()

    def _post(self, attempt: _Attempt) -> tuple[bool, int | None, str | None]:
        headers = {
            "Content-Type": "application/json",
            "X-AP2-Event": attempt.event,
            "X-AP2-Signature": attempt.signature,
            "X-AP2-Timestamp": str(attempt.timestamp),
            "X-AP2-Delivery": attempt.delivery_id,
        }
        try:
            with httpx.Client(transport=self.transport, timeout=self.timeout) as client:
                resp = client.post(attempt.url, content=encode_body(attempt.payload), headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Webhook delivery %s to %s failed: %s", attempt.delivery_id, attempt.url, exc)
            return False, None, str(exc)[:RESPONSE_BODY_LIMIT]
        ok = 200 <= resp.status_code < 300
        if not ok:
            logger.warning(
                "Webhook delivery %s to %s returned %s (attempt %d)",
                attempt.delivery_id,
                attempt.url,
                resp.status_code,
                attempt.attempts + 1,
            )
        return ok, resp.status_code, resp.text[:RESPONSE_BODY_LIMIT]

    def attempt_delivery(self, delivery_id: str) -> str | None:
        """Make one delivery attempt and record it.

        Returns the resulting state (``delivered``, ``retrying`` or ``failed``),
        or None when the delivery was already terminal or another attempt
        recorded first.
        """
        attempt = self._claim(delivery_id)
        if attempt is None:
            return None

        # Stamped and signed per attempt; the payload keeps the event time.
        attempt.timestamp = _now_ms()
        attempt.signature = compute_signature(attempt.secret, attempt.timestamp, attempt.payload)
        ok, status, body = self._post(attempt)

        now = _now()
        attempts = attempt.attempts + 1
        values: dict[str, Any] = {
            "attempts": attempts,
            "last_attempt_at": now,
            "signature": attempt.signature,
            "timestamp": attempt.timestamp,
            "response_status": status,
            "response_body": body,
        }
        if ok:
            outcome = "delivered"
            values.update(delivered_at=now, next_attempt_at=None)
        elif attempts >= attempt.max_attempts:
            outcome = "failed"
            values.update(failed_at=now, failure_reason=MAX_ATTEMPTS_REASON, next_attempt_at=None)
        else:
            outcome = "retrying"
            values["next_attempt_at"] = now + backoff_delay(attempts)

        session = self.session_factory()
        try:
            with session.begin():
                result = session.execute(
                    update(WebhookDelivery)
                    .where(
                        and_(
                            WebhookDelivery.id == delivery_id,
                            WebhookDelivery.attempts == attempt.attempts,
                            WebhookDelivery.delivered_at.is_(None),
                            WebhookDelivery.failed_at.is_(None),
                        )
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        finally:
            session.close()

        if result.rowcount != 1:
            logger.info("Delivery %s was recorded by a concurrent attempt", delivery_id)
            return None
        if outcome == "failed":
            logger.warning("Webhook delivery %s permanently failed after %d attempts", delivery_id, attempts)
        return outcome

    def process_queue(self, limit: int | None = None) -> int:
        """Attempt every due delivery, oldest schedule first. Returns how many were attempted."""
        limit = limit or settings.webhook_sweep_batch_size
        session = self.session_factory()
        try:
            with session.begin():
                due = (
                    session.execute(
                        select(WebhookDelivery.id)
                        .where(
                            and_(
                                WebhookDelivery.delivered_at.is_(None),
                                WebhookDelivery.failed_at.is_(None),
                                WebhookDelivery.attempts < WebhookDelivery.max_attempts,
                                WebhookDelivery.next_attempt_at <= _now(),
                            )
                        )
                        .order_by(WebhookDelivery.next_attempt_at.asc())
                        .limit(limit)
                    )
                    .scalars()
                    .all()
                )
        finally:
            session.close()

        attempted = 0
        for delivery_id in due:
            try:
                self.attempt_delivery(delivery_id)
                attempted += 1
            except Exception:
                logger.exception("Failed to process webhook delivery %s", delivery_id)
        return attempted

    def retry_delivery(self, merchant_id: str, delivery_id: str) -> str | None:
        """Manually attempt a pending delivery now, ignoring its backoff."""
        session = self.session_factory()
        try:
            with session.begin():
                d = session.execute(
                    select(WebhookDelivery).where(
                        and_(WebhookDelivery.id == delivery_id, WebhookDelivery.merchant_id == merchant_id)
                    )
                ).scalar_one_or_none()
                if d is None:
                    raise NotFoundError("Webhook delivery not found")
                if d.delivered_at is not None:
                    raise ValidationError("Webhook already delivered")
                if d.failed_at is not None:
                    raise GatewayError(
                        WEBHOOK_DELIVERY_FAILED, "Webhook delivery has permanently failed", status_code=409
                    )
        finally:
            session.close()
        return self.attempt_delivery(delivery_id)


dispatcher = WebhookDispatcher()


# --- Delivery log and housekeeping ---


def get_delivery(session: Session, delivery_id: str) -> WebhookDelivery | None:
    return session.execute(select(WebhookDelivery).where(WebhookDelivery.id == delivery_id)).scalar_one_or_none()


def list_deliveries(
    session: Session,
    merchant_id: str,
    *,
    event: str | None = None,
    delivered: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[WebhookDelivery]:
    q = select(WebhookDelivery).where(WebhookDelivery.merchant_id == merchant_id)
    if event:
        q = q.where(WebhookDelivery.event == event)
    if delivered is True:
        q = q.where(WebhookDelivery.delivered_at.is_not(None))
    elif delivered is False:
        q = q.where(and_(WebhookDelivery.delivered_at.is_(None), WebhookDelivery.failed_at.is_(None)))
    q = q.order_by(WebhookDelivery.created_at.desc()).limit(limit).offset(offset)
    return list(session.execute(q).scalars().all())


def _stats_since(period: str) -> datetime:
    today = _now().replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "day":
        return today
    if period == "week":
        return today - timedelta(days=7)
    if period == "month":
        return today - timedelta(days=30)
    raise ValidationError(f"Unknown period: {period}")


def delivery_stats(session: Session, merchant_id: str, period: str = "day") -> dict[str, Any]:
    since = _stats_since(period)
    total, delivered, failed, pending = session.execute(
        select(
            sa_func.count(),
            sa_func.coalesce(sa_func.sum(case((WebhookDelivery.delivered_at.is_not(None), 1), else_=0)), 0),
            sa_func.coalesce(sa_func.sum(case((WebhookDelivery.failed_at.is_not(None), 1), else_=0)), 0),
            sa_func.coalesce(
                sa_func.sum(
                    case(
                        (and_(WebhookDelivery.delivered_at.is_(None), WebhookDelivery.failed_at.is_(None)), 1),
                        else_=0,
                    )
                ),
                0,
            ),
        ).where(and_(WebhookDelivery.merchant_id == merchant_id, WebhookDelivery.created_at >= since))
    ).one()
    total = int(total)
    return {
        "total_webhooks": total,
        "delivered": int(delivered),
        "failed": int(failed),
        "pending": int(pending),
        "success_rate": (int(delivered) / total * 100) if total else 0.0,
    }


def purge_terminal(session: Session, retention_days: int | None = None) -> int:
    """Delete delivered or failed deliveries older than the retention window."""
    days = retention_days if retention_days is not None else settings.webhook_retention_days
    cutoff = _now() - timedelta(days=days)
    result = session.execute(
        delete(WebhookDelivery).where(
            and_(
                or_(WebhookDelivery.delivered_at.is_not(None), WebhookDelivery.failed_at.is_not(None)),
                WebhookDelivery.created_at < cutoff,
            )
        )
    )
    return int(result.rowcount or 0)


def delivery_view(d: WebhookDelivery) -> dict[str, Any]:
    return {
        "id": d.id,
        "event": d.event,
        "url": d.url,
        "payload": d.payload,
        "attempts": d.attempts,
        "max_attempts": d.max_attempts,
        "last_attempt_at": d.last_attempt_at,
        "next_attempt_at": d.next_attempt_at,
        "delivered_at": d.delivered_at,
        "failed_at": d.failed_at,
        "failure_reason": d.failure_reason,
        "response_status": d.response_status,
        "created_at": d.created_at,
    }
