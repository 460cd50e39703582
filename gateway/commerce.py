from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, delete, select, update
from sqlalchemy.orm import Session

from gateway.errors import InvalidTransition, NotFoundError, ValidationError
from gateway.mandates import IntentDecision
from gateway.models import CartItem, PurchaseIntent

logger = logging.getLogger(__name__)

INTENT_STATUSES = ("pending", "approved", "rejected", "executed", "expired")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(dt: datetime) -> datetime:
    """SQLite returns naive datetimes; assume UTC when tzinfo is absent."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# --- Cart ---


def add_cart_item(
    session: Session,
    *,
    user_id: str,
    mandate_id: str,
    agent_id: str,
    product_id: str,
    price: Decimal,
    quantity: int = 1,
    product_name: str = "",
    category: str | None = None,
    reasoning: str | None = None,
) -> CartItem:
    item = CartItem(
        user_id=user_id,
        mandate_id=mandate_id,
        agent_id=agent_id,
        product_id=product_id,
        product_name=product_name,
        category=category,
        quantity=quantity,
        price=price,
        reasoning=reasoning,
        created_at=_now(),
    )
    session.add(item)
    session.flush()
    return item


def _user_cart_item(session: Session, user_id: str, product_id: str) -> CartItem:
    item = session.execute(
        select(CartItem)
        .where(and_(CartItem.user_id == user_id, CartItem.product_id == product_id))
        .order_by(CartItem.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()
    if item is None:
        raise NotFoundError(f"Product {product_id} is not in the cart")
    return item


def update_cart_item(session: Session, *, user_id: str, product_id: str, quantity: int) -> CartItem:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    item = _user_cart_item(session, user_id, product_id)
    item.quantity = quantity
    session.add(item)
    return item


def remove_cart_item(session: Session, *, user_id: str, product_id: str) -> int:
    _user_cart_item(session, user_id, product_id)
    result = session.execute(
        delete(CartItem).where(and_(CartItem.user_id == user_id, CartItem.product_id == product_id))
    )
    return int(result.rowcount or 0)


def cart_item_view(item: CartItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "product_id": item.product_id,
        "product_name": item.product_name,
        "category": item.category,
        "quantity": item.quantity,
        "price": float(item.price),
        "mandate_id": item.mandate_id,
        "agent_id": item.agent_id,
    }


# --- Purchase intents ---


def intent_total(items: list[dict[str, Any]]) -> Decimal:
    """Sum of ``price * quantity`` over the proposed items."""
    total = Decimal("0")
    for item in items:
        total += Decimal(str(item["price"])) * int(item.get("quantity", 1))
    return total


def create_intent(
    session: Session,
    *,
    user_id: str,
    agent_id: str,
    mandate_id: str,
    items: list[dict[str, Any]],
    decision: IntentDecision,
    reasoning: str | None = None,
) -> PurchaseIntent:
    now = _now()
    intent = PurchaseIntent(
        user_id=user_id,
        agent_id=agent_id,
        mandate_id=mandate_id,
        items=items,
        total=intent_total(items),
        reasoning=reasoning,
        status="approved" if decision.auto_approve else "pending",
        expires_at=decision.expires_at,
        approved_at=now if decision.auto_approve else None,
        created_at=now,
    )
    session.add(intent)
    session.flush()
    if decision.auto_approve:
        logger.info("Intent %s auto-approved (total %s)", intent.id, intent.total)
    return intent


def get_intent(session: Session, intent_id: str) -> PurchaseIntent | None:
    return session.execute(select(PurchaseIntent).where(PurchaseIntent.id == intent_id)).scalar_one_or_none()


def require_intent(session: Session, intent_id: str) -> PurchaseIntent:
    intent = get_intent(session, intent_id)
    if intent is None:
        raise NotFoundError("Purchase intent not found")
    return intent


def _move_intent(session: Session, intent: PurchaseIntent, from_status: str, to_status: str, **values: Any) -> PurchaseIntent:
    if intent.status != from_status:
        raise InvalidTransition(
            f"Intent is {intent.status}, expected {from_status}",
            details={"from": intent.status, "to": to_status},
        )
    result = session.execute(
        update(PurchaseIntent)
        .where(and_(PurchaseIntent.id == intent.id, PurchaseIntent.status == from_status))
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition(f"Intent {intent.id} changed concurrently")
    session.refresh(intent)
    return intent


def _expire_if_overdue(session: Session, intent: PurchaseIntent) -> bool:
    if intent.status in ("pending", "approved") and _now() > _ensure_aware(intent.expires_at):
        _move_intent(session, intent, intent.status, "expired")
        return True
    return False


def approve_intent(session: Session, intent_id: str) -> PurchaseIntent:
    intent = require_intent(session, intent_id)
    if _expire_if_overdue(session, intent):
        raise InvalidTransition("Purchase intent has expired", details={"status": "expired"})
    return _move_intent(session, intent, "pending", "approved", approved_at=_now())


def reject_intent(session: Session, intent_id: str, reason: str | None = None) -> PurchaseIntent:
    intent = require_intent(session, intent_id)
    return _move_intent(session, intent, "pending", "rejected", rejected_at=_now(), rejection_reason=reason)


def require_payable_intent(session: Session, intent_id: str, user_id: str) -> PurchaseIntent:
    """An intent can back a payment once approved, while unexpired and not yet executed."""
    intent = get_intent(session, intent_id)
    if intent is None or intent.user_id != user_id:
        raise NotFoundError("Purchase intent not found")
    if _expire_if_overdue(session, intent):
        raise ValidationError("Purchase intent has expired")
    if intent.status != "approved":
        raise ValidationError(f"Purchase intent is {intent.status}")
    return intent


def mark_intent_executed(session: Session, intent: PurchaseIntent) -> PurchaseIntent:
    return _move_intent(session, intent, "approved", "executed", executed_at=_now())


def intent_view(intent: PurchaseIntent) -> dict[str, Any]:
    return {
        "id": intent.id,
        "user_id": intent.user_id,
        "agent_id": intent.agent_id,
        "mandate_id": intent.mandate_id,
        "items": list(intent.items or []),
        "total": float(intent.total),
        "reasoning": intent.reasoning,
        "status": intent.status,
        "expires_at": intent.expires_at,
        "approved_at": intent.approved_at,
        "rejected_at": intent.rejected_at,
        "rejection_reason": intent.rejection_reason,
        "executed_at": intent.executed_at,
    }


def expire_overdue_intents(session: Session, limit: int = 100) -> list[PurchaseIntent]:
    """Expire pending or approved intents past ``expires_at``. Returns those this call expired."""
    overdue = (
        session.execute(
            select(PurchaseIntent)
            .where(and_(PurchaseIntent.status.in_(("pending", "approved")), PurchaseIntent.expires_at < _now()))
            .limit(limit)
        )
        .scalars()
        .all()
    )
    expired: list[PurchaseIntent] = []
    for intent in overdue:
        try:
            _move_intent(session, intent, intent.status, "expired")
        except InvalidTransition:
            continue
        expired.append(intent)
    return expired
