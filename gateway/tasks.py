from __future__ import annotations

import asyncio
import logging

from sqlalchemy import distinct, select
from sqlalchemy.orm import Session

from gateway import webhooks
from gateway.commerce import expire_overdue_intents, intent_view
from gateway.config import SessionLocal, settings
from gateway.mandates import expire_overdue_mandates
from gateway.merchants import get_merchant
from gateway.models import Mandate, PurchaseIntent, Transaction

logger = logging.getLogger(__name__)


def _mandate_merchant_ids(session: Session, mandate: Mandate) -> list[str]:
    return list(
        session.execute(select(distinct(Transaction.merchant_id)).where(Transaction.mandate_id == mandate.id))
        .scalars()
        .all()
    )


def _intent_merchant_id(session: Session, intent: PurchaseIntent) -> str | None:
    return session.execute(
        select(Transaction.merchant_id).where(
            Transaction.type == "intent_create",
            Transaction.gateway_transaction_id == intent.id,
        )
    ).scalar_one_or_none()


def run_mandate_expiry_sweep(dispatcher: webhooks.WebhookDispatcher | None = None) -> int:
    """Expire overdue active mandates and notify every merchant that acted on them.

    Returns the number of mandates expired.
    """
    dispatcher = dispatcher or webhooks.dispatcher
    queued: list[str] = []
    session = SessionLocal()
    try:
        with session.begin():
            expired = expire_overdue_mandates(session)
            for mandate in expired:
                for merchant_id in _mandate_merchant_ids(session, mandate):
                    merchant = get_merchant(session, merchant_id)
                    if merchant is None:
                        continue
                    delivery = dispatcher.enqueue(
                        session,
                        merchant,
                        webhooks.MANDATE_EXPIRED,
                        {"mandate_id": mandate.id, "user_id": mandate.user_id, "agent_id": mandate.agent_id},
                    )
                    if delivery is not None:
                        queued.append(delivery.id)
    finally:
        session.close()
    for delivery_id in queued:
        dispatcher.schedule(delivery_id)
    return len(expired)


def run_intent_expiry_sweep(dispatcher: webhooks.WebhookDispatcher | None = None) -> int:
    """Expire overdue purchase intents and notify the merchant that created each one."""
    dispatcher = dispatcher or webhooks.dispatcher
    queued: list[str] = []
    session = SessionLocal()
    try:
        with session.begin():
            expired = expire_overdue_intents(session)
            for intent in expired:
                merchant_id = _intent_merchant_id(session, intent)
                merchant = get_merchant(session, merchant_id) if merchant_id else None
                if merchant is None:
                    continue
                delivery = dispatcher.enqueue(session, merchant, webhooks.INTENT_EXPIRED, {"intent": intent_view(intent)})
                if delivery is not None:
                    queued.append(delivery.id)
    finally:
        session.close()
    for delivery_id in queued:
        dispatcher.schedule(delivery_id)
    return len(expired)


def run_webhook_sweep(dispatcher: webhooks.WebhookDispatcher | None = None) -> int:
    return (dispatcher or webhooks.dispatcher).process_queue()


def run_purge() -> int:
    session = SessionLocal()
    try:
        with session.begin():
            return webhooks.purge_terminal(session)
    finally:
        session.close()


def run_sweeps() -> dict[str, int]:
    """One pass of every periodic job. Each job runs even if an earlier one fails."""
    results: dict[str, int] = {}
    for name, job in (
        ("mandates_expired", run_mandate_expiry_sweep),
        ("intents_expired", run_intent_expiry_sweep),
        ("webhooks_attempted", run_webhook_sweep),
        ("webhooks_purged", run_purge),
    ):
        try:
            results[name] = job()
        except Exception:
            logger.exception("Error in background job %s", name)
    return results


async def background_sweep_loop() -> None:
    """Periodically expire mandates and intents and work the webhook queue."""
    interval = settings.webhook_sweep_interval_seconds
    logger.info("Background sweep loop started (interval=%ds)", interval)
    while True:
        await asyncio.sleep(interval)
        results = await asyncio.to_thread(run_sweeps)
        active = {k: v for k, v in results.items() if v}
        if active:
            logger.info("Background sweep: %s", active)
