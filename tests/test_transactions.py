from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from gateway import transactions
from gateway.errors import InvalidTransition, ValidationError
from gateway.transactions import create_transaction, period_start, transition


def _tx(session, tx_type="payment_execute", amount="10.00", **kwargs):
    return create_transaction(
        session,
        merchant_id=kwargs.pop("merchant_id", "shop"),
        user_id="user-1",
        agent_id="agent-1",
        mandate_id=kwargs.pop("mandate_id", "mandate-1"),
        tx_type=tx_type,
        amount=Decimal(amount) if amount is not None else None,
        **kwargs,
    )


def test_new_transaction_is_pending(db_session):
    with db_session.begin():
        tx = _tx(db_session)
    assert tx.status == "pending"
    assert tx.requested_at is not None
    assert tx.amount == Decimal("10.00")


def test_unknown_type_is_rejected(db_session):
    with pytest.raises(ValidationError):
        with db_session.begin():
            _tx(db_session, tx_type="wire_transfer")


def test_happy_path_sets_timestamps(db_session):
    with db_session.begin():
        tx = _tx(db_session)
        transition(db_session, tx.id, "authorized")
        transition(db_session, tx.id, "completed", gateway_transaction_id="pay_1")
        done = transition(db_session, tx.id, "refunded")
    assert done.status == "refunded"
    assert done.authorized_at is not None
    assert done.completed_at is not None
    assert done.refunded_at is not None
    assert done.gateway_transaction_id == "pay_1"


def test_decline_records_reason(db_session):
    with db_session.begin():
        tx = _tx(db_session)
        declined = transition(db_session, tx.id, "declined", reason="Mandate is suspended")
    assert declined.failure_reason == "Mandate is suspended"
    assert declined.failed_at is not None


@pytest.mark.parametrize("terminal", ["declined", "failed"])
@pytest.mark.parametrize("target", ["authorized", "completed", "failed", "refunded"])
def test_terminal_status_is_final(db_session, terminal, target):
    with db_session.begin():
        tx = _tx(db_session)
        transition(db_session, tx.id, terminal, reason="x")
    with pytest.raises(InvalidTransition):
        with db_session.begin():
            transition(db_session, tx.id, target)
    with db_session.begin():
        assert transactions.get_transaction(db_session, tx.id).status == terminal


def test_refund_requires_completed(db_session):
    with db_session.begin():
        tx = _tx(db_session)
        transition(db_session, tx.id, "authorized")
    with pytest.raises(InvalidTransition) as exc:
        with db_session.begin():
            transition(db_session, tx.id, "refunded")
    assert exc.value.details == {"from": "authorized", "to": "refunded"}


def test_repeated_transition_raises(db_session):
    with db_session.begin():
        tx = _tx(db_session)
        transition(db_session, tx.id, "authorized")
    with pytest.raises(InvalidTransition):
        with db_session.begin():
            transition(db_session, tx.id, "authorized")


def test_period_start_is_utc_calendar():
    now = datetime(2026, 3, 17, 15, 42, 7, tzinfo=timezone.utc)
    assert period_start("day", now) == datetime(2026, 3, 17, tzinfo=timezone.utc)
    assert period_start("month", now) == datetime(2026, 3, 1, tzinfo=timezone.utc)
    with pytest.raises(ValidationError):
        period_start("year", now)


def test_listing_filters_and_pages(db_session):
    with db_session.begin():
        for i in range(5):
            tx = _tx(db_session, amount=f"{i + 1}.00")
            transition(db_session, tx.id, "completed")
        other = _tx(db_session, tx_type="cart_add")
        transition(db_session, other.id, "declined", reason="x")
        _tx(db_session, merchant_id="someone-else")

    with db_session.begin():
        rows, total = transactions.list_merchant_transactions(db_session, "shop", status="completed", limit=2)
        assert total == 5
        assert len(rows) == 2
        rows, total = transactions.list_merchant_transactions(db_session, "shop", tx_type="cart_add")
        assert total == 1 and rows[0].status == "declined"
        _, total = transactions.list_merchant_transactions(db_session, "shop")
        assert total == 6


def test_period_stats_and_volume(db_session):
    with db_session.begin():
        for amount in ("10.10", "20.20"):
            tx = _tx(db_session, amount=amount)
            transition(db_session, tx.id, "completed")
        failed = _tx(db_session, amount="99.00")
        transition(db_session, failed.id, "failed", reason="card_expired")
        declined = _tx(db_session, tx_type="cart_add", amount="5.00")
        transition(db_session, declined.id, "declined", reason="x")

    with db_session.begin():
        assert transactions.merchant_volume(db_session, "shop", "day") == Decimal("30.30")
        stats = transactions.merchant_period_stats(db_session, "shop", "month")
    assert stats == {
        "total_transactions": 4,
        "total_volume": 30.3,
        "completed_count": 2,
        "failed_count": 1,
        "declined_count": 1,
    }
