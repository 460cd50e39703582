from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import and_, case, select, update
from sqlalchemy import func as sa_func
from sqlalchemy.orm import Session

from gateway.errors import InvalidTransition, NotFoundError, ValidationError
from gateway.models import Transaction

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = (
    "cart_add",
    "cart_update",
    "cart_remove",
    "intent_create",
    "intent_approve",
    "intent_reject",
    "payment_execute",
    "payment_refund",
)
CART_TYPES = ("cart_add", "cart_update", "cart_remove")
INTENT_TYPES = ("intent_create",)

TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"authorized", "declined", "completed", "failed"}),
    "authorized": frozenset({"completed", "failed"}),
    "completed": frozenset({"refunded"}),
    "declined": frozenset(),
    "failed": frozenset(),
    "refunded": frozenset(),
}

# Statuses that count as a successful use of a mandate in daily quotas.
SUCCESS_STATUSES = ("authorized", "completed")

_TIMESTAMP_FIELDS = {
    "authorized": "authorized_at",
    "completed": "completed_at",
    "declined": "failed_at",
    "failed": "failed_at",
    "refunded": "refunded_at",
}

PERIODS = ("day", "month")
CENTS = Decimal("0.01")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Any) -> Decimal:
    """SQLite sums Numeric columns as floats; round back to cents."""
    return Decimal(str(value)).quantize(CENTS)


def period_start(period: str, now: datetime | None = None) -> datetime:
    """Start of the current UTC calendar day or month."""
    now = now or _now()
    day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "day":
        return day_start
    if period == "month":
        return day_start.replace(day=1)
    raise ValidationError(f"Unknown period: {period}")


def create_transaction(
    session: Session,
    *,
    merchant_id: str,
    user_id: str,
    agent_id: str,
    mandate_id: str,
    tx_type: str,
    amount: Decimal | float | None = None,
    currency: str = "USD",
    metadata: dict[str, Any] | None = None,
) -> Transaction:
    if tx_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Unknown transaction type: {tx_type}")
    tx = Transaction(
        merchant_id=merchant_id,
        user_id=user_id,
        agent_id=agent_id,
        mandate_id=mandate_id,
        type=tx_type,
        status="pending",
        amount=Decimal(str(amount)) if amount is not None else None,
        currency=currency,
        metadata_=dict(metadata or {}),
        requested_at=_now(),
    )
    session.add(tx)
    session.flush()
    return tx


def get_transaction(session: Session, transaction_id: str) -> Transaction | None:
    return session.execute(select(Transaction).where(Transaction.id == transaction_id)).scalar_one_or_none()


def transition(
    session: Session,
    transaction_id: str,
    to_status: str,
    *,
    reason: str | None = None,
    gateway_transaction_id: str | None = None,
) -> Transaction:
    """Move a transaction along the state machine.

    The write only lands if the row is still in the status we read, so a
    concurrent or repeated transition raises instead of overwriting.
    """
    tx = get_transaction(session, transaction_id)
    if tx is None:
        raise NotFoundError("Transaction not found")
    current = tx.status
    if to_status not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(
            f"Cannot move transaction from {current} to {to_status}",
            details={"from": current, "to": to_status},
        )

    values: dict[str, Any] = {"status": to_status, _TIMESTAMP_FIELDS[to_status]: _now()}
    if reason is not None:
        values["failure_reason"] = reason
    if gateway_transaction_id is not None:
        values["gateway_transaction_id"] = gateway_transaction_id

    result = session.execute(
        update(Transaction)
        .where(and_(Transaction.id == transaction_id, Transaction.status == current))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition(
            f"Transaction {transaction_id} changed concurrently",
            details={"from": current, "to": to_status},
        )
    session.refresh(tx)
    logger.debug("Transaction %s: %s -> %s", transaction_id, current, to_status)
    return tx


def list_merchant_transactions(
    session: Session,
    merchant_id: str,
    *,
    status: str | None = None,
    tx_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Transaction], int]:
    filters = [Transaction.merchant_id == merchant_id]
    if status:
        filters.append(Transaction.status == status)
    if tx_type:
        filters.append(Transaction.type == tx_type)

    total = session.execute(select(sa_func.count()).select_from(Transaction).where(*filters)).scalar_one()
    rows = (
        session.execute(
            select(Transaction)
            .where(*filters)
            .order_by(Transaction.requested_at.desc())
            .limit(limit)
            .offset(offset)
        )
        .scalars()
        .all()
    )
    return list(rows), int(total)


def mandate_spending(session: Session, mandate_id: str, period: str) -> Decimal:
    """Completed payment spend on a mandate in the current calendar day or month."""
    since = period_start(period)
    total = session.execute(
        select(sa_func.coalesce(sa_func.sum(Transaction.amount), 0)).where(
            and_(
                Transaction.mandate_id == mandate_id,
                Transaction.type == "payment_execute",
                Transaction.status == "completed",
                Transaction.requested_at >= since,
            )
        )
    ).scalar_one()
    return _money(total)


def count_mandate_actions(
    session: Session,
    mandate_id: str,
    period: str,
    types: Iterable[str],
    statuses: Iterable[str] = SUCCESS_STATUSES,
) -> int:
    since = period_start(period)
    return int(
        session.execute(
            select(sa_func.count()).select_from(Transaction).where(
                and_(
                    Transaction.mandate_id == mandate_id,
                    Transaction.type.in_(list(types)),
                    Transaction.status.in_(list(statuses)),
                    Transaction.requested_at >= since,
                )
            )
        ).scalar_one()
    )


def merchant_volume(session: Session, merchant_id: str, period: str) -> Decimal:
    since = period_start(period)
    total = session.execute(
        select(sa_func.coalesce(sa_func.sum(Transaction.amount), 0)).where(
            and_(
                Transaction.merchant_id == merchant_id,
                Transaction.type == "payment_execute",
                Transaction.status == "completed",
                Transaction.requested_at >= since,
            )
        )
    ).scalar_one()
    return _money(total)


def merchant_period_stats(session: Session, merchant_id: str, period: str) -> dict[str, Any]:
    since = period_start(period)
    row = session.execute(
        select(
            sa_func.count(),
            sa_func.coalesce(
                sa_func.sum(
                    case(
                        (and_(Transaction.type == "payment_execute", Transaction.status == "completed"), Transaction.amount),
                        else_=0,
                    )
                ), 0
            ),
            sa_func.coalesce(sa_func.sum(case((Transaction.status == "completed", 1), else_=0)), 0),
            sa_func.coalesce(sa_func.sum(case((Transaction.status == "failed", 1), else_=0)), 0),
            sa_func.coalesce(sa_func.sum(case((Transaction.status == "declined", 1), else_=0)), 0),
        ).where(and_(Transaction.merchant_id == merchant_id, Transaction.requested_at >= since))
    ).one()
    total, volume, completed, failed, declined = row
    return {
        "total_transactions": int(total),
        "total_volume": float(_money(volume)),
        "completed_count": int(completed),
        "failed_count": int(failed),
        "declined_count": int(declined),
    }
