"""Downstream payment processor.

Capture itself is out of scope for the gateway: the processor is an opaque
call that answers success or failure plus an identifier. The bundled mock is
deterministic so it can back demos and tests.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

logger = logging.getLogger(__name__)

# Payment method tokens that always decline, with the reason reported.
DECLINE_TOKENS = {
    "tok_decline": "insufficient_funds",
    "tok_decline_fraud": "fraud_suspected",
    "tok_decline_expired": "card_expired",
    "tok_decline_invalid": "invalid_card",
}


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    transaction_id: str | None = None
    error: str | None = None


class PaymentProcessor(Protocol):
    def charge(
        self,
        *,
        amount: Decimal,
        currency: str,
        payment_method: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentResult: ...

    def refund(self, *, transaction_id: str, amount: Decimal | None) -> PaymentResult: ...


class MockPaymentProcessor:
    def charge(
        self,
        *,
        amount: Decimal,
        currency: str,
        payment_method: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> PaymentResult:
        if payment_method in DECLINE_TOKENS:
            reason = DECLINE_TOKENS[payment_method]
            logger.info("Mock processor declined %s %s: %s", amount, currency, reason)
            return PaymentResult(success=False, error=reason)
        digest = hashlib.sha256(f"{payment_method}:{amount}:{currency}:{uuid.uuid4()}".encode()).hexdigest()
        return PaymentResult(success=True, transaction_id=f"pay_{digest[:16]}")

    def refund(self, *, transaction_id: str, amount: Decimal | None) -> PaymentResult:
        return PaymentResult(success=True, transaction_id=f"re_{uuid.uuid4().hex[:16]}")


_processor: PaymentProcessor = MockPaymentProcessor()


def get_processor() -> PaymentProcessor:
    return _processor


def set_processor(processor: PaymentProcessor) -> None:
    global _processor
    _processor = processor
