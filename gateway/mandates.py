from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from gateway.config import settings
from gateway.constraints import (
    CartConstraints,
    IntentConstraints,
    PaymentConstraints,
    dump_constraints,
    parse_constraints,
)
from gateway.errors import (
    AGENT_NOT_AUTHORIZED,
    MANDATE_EXPIRED,
    MANDATE_INACTIVE,
    MANDATE_NOT_FOUND,
    MANDATE_TYPE_MISMATCH,
    ConstraintViolation,
    InvalidTransition,
    MandateError,
    NotFoundError,
    ValidationError,
)
from gateway.models import Mandate
from gateway.transactions import CART_TYPES, INTENT_TYPES, count_mandate_actions, mandate_spending

logger = logging.getLogger(__name__)

MANDATE_STATUSES = ("pending", "active", "suspended", "revoked", "expired")

STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"active", "revoked"}),
    "active": frozenset({"suspended", "revoked", "expired"}),
    "suspended": frozenset({"active", "revoked"}),
    "revoked": frozenset(),
    "expired": frozenset(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(dt: datetime) -> datetime:
    """SQLite returns naive datetimes; assume UTC when tzinfo is absent."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _money(value: Any) -> Decimal:
    return Decimal(str(value))


@dataclass(frozen=True)
class IntentDecision:
    auto_approve: bool
    expires_at: datetime


# --- Store ---


def create_mandate(
    session: Session,
    *,
    user_id: str,
    agent_id: str,
    mandate_type: str,
    constraints: dict[str, Any] | None,
    agent_name: str = "",
    valid_from: datetime | None = None,
    valid_until: datetime | None = None,
) -> Mandate:
    parsed = parse_constraints(mandate_type, constraints)
    start = valid_from or _now()
    if valid_until is not None and _ensure_aware(valid_until) <= _ensure_aware(start):
        raise ValidationError("valid_until must be after valid_from")
    mandate = Mandate(
        user_id=user_id,
        agent_id=agent_id,
        agent_name=agent_name,
        type=mandate_type,
        status="pending",
        constraints=dump_constraints(parsed),
        valid_from=start,
        valid_until=valid_until,
    )
    session.add(mandate)
    session.flush()
    logger.info("Created %s mandate %s for user %s / agent %s", mandate_type, mandate.id, user_id, agent_id)
    return mandate


def get_mandate(session: Session, mandate_id: str) -> Mandate | None:
    return session.execute(select(Mandate).where(Mandate.id == mandate_id)).scalar_one_or_none()


def require_mandate(session: Session, mandate_id: str) -> Mandate:
    mandate = get_mandate(session, mandate_id)
    if mandate is None:
        raise NotFoundError("Mandate not found")
    return mandate


def list_user_mandates(
    session: Session,
    user_id: str,
    *,
    status: str | None = None,
    mandate_type: str | None = None,
) -> list[Mandate]:
    q = select(Mandate).where(Mandate.user_id == user_id)
    if status:
        q = q.where(Mandate.status == status)
    if mandate_type:
        q = q.where(Mandate.type == mandate_type)
    return list(session.execute(q.order_by(Mandate.created_at.desc())).scalars().all())


def _set_status(session: Session, mandate: Mandate, to_status: str, **values: Any) -> Mandate:
    """Conditionally move ``mandate`` to ``to_status``.

    Terminal statuses never change, and a row that moved underneath us is
    reported rather than overwritten.
    """
    current = mandate.status
    if to_status not in STATUS_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(
            f"Mandate is {current} and cannot become {to_status}",
            details={"from": current, "to": to_status},
        )
    result = session.execute(
        update(Mandate)
        .where(and_(Mandate.id == mandate.id, Mandate.status == current))
        .values(status=to_status, updated_at=_now(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition(
            f"Mandate {mandate.id} changed concurrently",
            details={"from": current, "to": to_status},
        )
    session.refresh(mandate)
    logger.info("Mandate %s: %s -> %s", mandate.id, current, to_status)
    return mandate


def approve_mandate(session: Session, mandate_id: str) -> Mandate:
    """Activate a pending mandate, or resume a suspended one."""
    return _set_status(session, require_mandate(session, mandate_id), "active")


def suspend_mandate(session: Session, mandate_id: str) -> Mandate:
    return _set_status(session, require_mandate(session, mandate_id), "suspended")


def revoke_mandate(session: Session, mandate_id: str, reason: str | None = None) -> Mandate:
    return _set_status(
        session,
        require_mandate(session, mandate_id),
        "revoked",
        revoked_at=_now(),
        revoked_reason=reason,
    )


def expire_mandate(session: Session, mandate: Mandate) -> bool:
    """Mark an overdue active mandate expired. Returns False if another writer got there first."""
    try:
        _set_status(session, mandate, "expired")
    except InvalidTransition:
        return False
    return True


def expire_overdue_mandates(session: Session, limit: int = 100) -> list[Mandate]:
    now = _now()
    overdue = (
        session.execute(
            select(Mandate)
            .where(and_(Mandate.status == "active", Mandate.valid_until.is_not(None), Mandate.valid_until < now))
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return [m for m in overdue if expire_mandate(session, m)]


# --- Authorization ---


def validate_mandate_access(
    session: Session,
    mandate_id: str,
    agent_id: str,
    expected_type: str | None = None,
) -> Mandate:
    """Check existence, ownership, status, validity window and type, in that order.

    An active mandate found past its ``valid_until`` is marked expired in the
    caller's transaction before the error is raised.
    """
    mandate = get_mandate(session, mandate_id)
    if mandate is None:
        raise MandateError(MANDATE_NOT_FOUND, "Mandate not found")
    if mandate.agent_id != agent_id:
        raise MandateError(AGENT_NOT_AUTHORIZED, "Agent not authorized for this mandate")
    if mandate.status != "active":
        raise MandateError(MANDATE_INACTIVE, f"Mandate is {mandate.status}", details={"status": mandate.status})
    if mandate.valid_until is not None and _now() > _ensure_aware(mandate.valid_until):
        expire_mandate(session, mandate)
        raise MandateError(MANDATE_EXPIRED, "Mandate has expired")
    if expected_type is not None and mandate.type != expected_type:
        raise MandateError(
            MANDATE_TYPE_MISMATCH,
            f"Mandate type mismatch: expected {expected_type}, got {mandate.type}",
        )
    return mandate


def evaluate_cart(
    session: Session,
    mandate: Mandate,
    *,
    price: Any = None,
    category: str | None = None,
    merchant_id: str | None = None,
) -> None:
    """Price checks are skipped when ``price`` is None; the rest always apply."""
    c = CartConstraints.model_validate(mandate.constraints or {})
    price = _money(price) if price is not None else None

    if price is not None and c.max_item_value is not None and price > _money(c.max_item_value):
        raise ConstraintViolation(
            f"Item price {price} exceeds max allowed {c.max_item_value}",
            rule="max_item_value",
        )
    if category:
        if c.blocked_categories and category in c.blocked_categories:
            raise ConstraintViolation(f"Category {category} is blocked", rule="blocked_categories")
        if c.allowed_categories and category not in c.allowed_categories:
            raise ConstraintViolation(f"Category {category} is not in allowed list", rule="allowed_categories")
    if c.allowed_merchants and merchant_id not in c.allowed_merchants:
        raise ConstraintViolation("Merchant is not allowed by this mandate", rule="allowed_merchants")
    if c.max_items_per_day is not None:
        used = count_mandate_actions(session, mandate.id, "day", ("cart_add",))
        if used >= c.max_items_per_day:
            raise ConstraintViolation(
                f"Daily limit of {c.max_items_per_day} items reached",
                rule="max_items_per_day",
            )


def evaluate_intent(session: Session, mandate: Mandate, *, total: Any = None) -> IntentDecision:
    c = IntentConstraints.model_validate(mandate.constraints or {})
    total = _money(total) if total is not None else None

    if total is not None and c.max_intent_value is not None and total > _money(c.max_intent_value):
        raise ConstraintViolation(
            f"Intent value {total} exceeds max allowed {c.max_intent_value}",
            rule="max_intent_value",
        )
    if c.max_intents_per_day is not None:
        used = count_mandate_actions(session, mandate.id, "day", INTENT_TYPES)
        if used >= c.max_intents_per_day:
            raise ConstraintViolation(
                f"Daily limit of {c.max_intents_per_day} intents reached",
                rule="max_intents_per_day",
            )

    auto_approve = total is not None and c.auto_approve_under is not None and total < _money(c.auto_approve_under)
    hours = c.expiry_hours or settings.default_intent_expiry_hours
    return IntentDecision(auto_approve=auto_approve, expires_at=_now() + timedelta(hours=hours))


def evaluate_payment(
    session: Session,
    mandate: Mandate,
    *,
    amount: Any = None,
    payment_method: str | None = None,
    merchant_id: str | None = None,
) -> None:
    """Amount and spending checks are skipped when ``amount`` is None."""
    c = PaymentConstraints.model_validate(mandate.constraints or {})
    amount = _money(amount) if amount is not None else None

    if amount is not None and c.max_transaction_amount is not None and amount > _money(c.max_transaction_amount):
        raise ConstraintViolation(
            f"Transaction amount {amount} exceeds max_transaction_amount {c.max_transaction_amount}",
            rule="max_transaction_amount",
        )
    if c.allowed_payment_methods is not None and payment_method not in c.allowed_payment_methods:
        raise ConstraintViolation(
            f"Payment method {payment_method} is not allowed",
            rule="allowed_payment_methods",
        )
    if c.allowed_merchants and merchant_id not in c.allowed_merchants:
        raise ConstraintViolation("Merchant is not allowed by this mandate", rule="allowed_merchants")
    if amount is None:
        return
    if c.daily_spending_limit is not None:
        spent = mandate_spending(session, mandate.id, "day")
        if spent + amount > _money(c.daily_spending_limit):
            raise ConstraintViolation(
                f"Daily spending limit {c.daily_spending_limit} exceeded (spent {spent}, requested {amount})",
                rule="daily_spending_limit",
            )
    if c.monthly_spending_limit is not None:
        spent = mandate_spending(session, mandate.id, "month")
        if spent + amount > _money(c.monthly_spending_limit):
            raise ConstraintViolation(
                f"Monthly spending limit {c.monthly_spending_limit} exceeded (spent {spent}, requested {amount})",
                rule="monthly_spending_limit",
            )


def evaluate_constraints(session: Session, mandate: Mandate, action: dict[str, Any]) -> IntentDecision | None:
    """Dispatch ``action`` to the evaluator for the mandate's type.

    Cart actions carry ``price`` and optionally ``category``; intent actions
    carry ``total``; payment actions carry ``amount`` and optionally
    ``payment_method``. Either may carry ``merchant_id``. A missing amount
    skips only the amount-based rules.
    """
    if mandate.type == "cart":
        evaluate_cart(
            session,
            mandate,
            price=action.get("price"),
            category=action.get("category"),
            merchant_id=action.get("merchant_id"),
        )
        return None
    if mandate.type == "intent":
        return evaluate_intent(session, mandate, total=action.get("total"))
    if mandate.type == "payment":
        evaluate_payment(
            session,
            mandate,
            amount=action.get("amount"),
            payment_method=action.get("payment_method"),
            merchant_id=action.get("merchant_id"),
        )
        return None
    raise ValidationError(f"Unknown mandate type: {mandate.type}")


def remaining_limits(session: Session, mandate: Mandate) -> dict[str, Any]:
    """Current usage against a mandate's daily and monthly quotas."""
    if mandate.type == "payment":
        actions = ("payment_execute",)
    elif mandate.type == "intent":
        actions = INTENT_TYPES
    else:
        actions = CART_TYPES
    return {
        "daily_spending": float(mandate_spending(session, mandate.id, "day")),
        "monthly_spending": float(mandate_spending(session, mandate.id, "month")),
        "transactions_today": count_mandate_actions(session, mandate.id, "day", actions),
    }


def mandate_view(mandate: Mandate) -> dict[str, Any]:
    return {
        "id": mandate.id,
        "user_id": mandate.user_id,
        "agent_id": mandate.agent_id,
        "agent_name": mandate.agent_name,
        "type": mandate.type,
        "status": mandate.status,
        "constraints": dict(mandate.constraints or {}),
        "valid_from": mandate.valid_from,
        "valid_until": mandate.valid_until,
        "revoked_at": mandate.revoked_at,
        "revoked_reason": mandate.revoked_reason,
        "created_at": mandate.created_at,
        "updated_at": mandate.updated_at,
    }
