"""Gateway orchestrator.

Each operation runs in one database transaction: a ``pending`` audit record
is written first, the mandate and merchant limits are checked, the downstream
action runs, and the record is driven to its terminal status. Webhooks are
enqueued inside that transaction and only scheduled once it has committed,
so a rolled-back operation never notifies and a slow receiver never delays
the response.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from gateway import commerce, payments, webhooks
from gateway.errors import (
    INSUFFICIENT_PERMISSIONS,
    INVALID_TRANSACTION_TYPE,
    MANDATE_EXPIRED,
    PAYMENT_FAILED,
    AuthError,
    ConstraintViolation,
    GatewayError,
    InvalidTransition,
    MandateError,
    NotFoundError,
    ValidationError,
)
from gateway.mandates import (
    IntentDecision,
    evaluate_cart,
    evaluate_constraints,
    evaluate_intent,
    evaluate_payment,
    mandate_view,
    remaining_limits,
    validate_mandate_access,
)
from gateway.merchants import get_merchant
from gateway.models import Mandate, Merchant, PurchaseIntent, Transaction
from gateway.schemas import (
    AuthorizationConstraints,
    AuthorizationRequest,
    AuthorizationResponse,
    CartOperationRequest,
    ErrorDetail,
    IntentOperationRequest,
    MandateResponse,
    MandateVerificationRequest,
    MandateVerificationResponse,
    OperationResponse,
    PaymentOperationRequest,
    RemainingLimits,
)
from gateway.transactions import TRANSACTION_TYPES, create_transaction, get_transaction, merchant_volume, transition

logger = logging.getLogger(__name__)

SUPPORT_FLAGS = {
    "cart": "supports_cart_mandate",
    "intent": "supports_intent_mandate",
    "payment": "supports_payment_mandate",
}


def _mandate_type_for(tx_type: str) -> str:
    return tx_type.split("_", 1)[0]


def _error_detail(exc: GatewayError) -> ErrorDetail:
    return ErrorDetail(code=exc.code, message=exc.message, details=exc.details)


def _money(value: Any) -> Decimal:
    return Decimal(str(value))


class GatewayService:
    def __init__(
        self,
        processor: payments.PaymentProcessor | None = None,
        dispatcher: webhooks.WebhookDispatcher | None = None,
    ) -> None:
        self._processor = processor
        self._dispatcher = dispatcher

    @property
    def processor(self) -> payments.PaymentProcessor:
        return self._processor or payments.get_processor()

    @property
    def dispatcher(self) -> webhooks.WebhookDispatcher:
        return self._dispatcher or webhooks.dispatcher

    # --- Helpers ---

    def _notify(self, session: Session, merchant: Merchant, event: str, data: dict[str, Any], queued: list[str]) -> None:
        delivery = self.dispatcher.enqueue(session, merchant, event, data)
        if delivery is not None:
            queued.append(delivery.id)

    def _flush_webhooks(self, queued: list[str]) -> None:
        for delivery_id in queued:
            self.dispatcher.schedule(delivery_id)

    def _decline(
        self,
        session: Session,
        merchant: Merchant,
        tx: Transaction,
        exc: GatewayError,
        queued: list[str],
    ) -> ErrorDetail:
        transition(session, tx.id, "declined", reason=exc.message)
        logger.info("Declined %s %s for merchant %s: %s", tx.type, tx.id, merchant.id, exc.message)
        if exc.code == MANDATE_EXPIRED:
            self._notify(
                session,
                merchant,
                webhooks.MANDATE_EXPIRED,
                {"mandate_id": tx.mandate_id, "user_id": tx.user_id, "agent_id": tx.agent_id},
                queued,
            )
        return _error_detail(exc)

    def _check_access(
        self,
        session: Session,
        merchant: Merchant,
        *,
        mandate_id: str,
        agent_id: str,
        mandate_type: str,
        amount: Decimal | None,
    ) -> Mandate:
        """Mandate liveness first, then the merchant's own limits."""
        mandate = validate_mandate_access(session, mandate_id, agent_id, expected_type=mandate_type)
        merchant_settings = merchant.settings or {}

        flag = SUPPORT_FLAGS[mandate_type]
        if not merchant_settings.get(flag, True):
            raise MandateError(INSUFFICIENT_PERMISSIONS, f"Merchant does not support {mandate_type} mandates")

        if amount is None:
            return mandate
        max_amount = merchant_settings.get("max_transaction_amount")
        if max_amount is not None and amount > _money(max_amount):
            raise ConstraintViolation(
                f"Transaction amount exceeds merchant limit of {max_amount}",
                rule="merchant_max_transaction_amount",
            )
        if mandate_type == "payment":
            for period, key in (("day", "daily_transaction_limit"), ("month", "monthly_transaction_limit")):
                limit = merchant_settings.get(key)
                if limit is None:
                    continue
                if merchant_volume(session, merchant.id, period) + amount > _money(limit):
                    label = "Daily" if period == "day" else "Monthly"
                    raise ConstraintViolation(f"{label} transaction limit exceeded", rule=key)
        return mandate

    def _requires_approval(self, merchant: Merchant, mandate: Mandate, amount: Decimal | None, decision: IntentDecision | None) -> bool:
        if decision is not None:
            return not decision.auto_approve
        if mandate.type == "cart" and (mandate.constraints or {}).get("requires_approval"):
            return True
        merchant_settings = merchant.settings or {}
        if not merchant_settings.get("enable_auto_approval"):
            return mandate.type == "intent"
        threshold = merchant_settings.get("auto_approval_threshold")
        return amount is None or threshold is None or amount >= _money(threshold)

    # --- Authorization and verification ---

    def authorize_request(self, session: Session, merchant: Merchant, req: AuthorizationRequest) -> AuthorizationResponse:
        if req.merchant_id != merchant.id:
            raise AuthError(INSUFFICIENT_PERMISSIONS, "Requests may only be authorized for the authenticated merchant")
        if req.transaction_type not in TRANSACTION_TYPES:
            raise GatewayError(INVALID_TRANSACTION_TYPE, f"Unknown transaction type: {req.transaction_type}")

        amount = _money(req.amount) if req.amount is not None else None
        mandate_type = _mandate_type_for(req.transaction_type)
        queued: list[str] = []
        with session.begin():
            tx = create_transaction(
                session,
                merchant_id=merchant.id,
                user_id=req.user_id,
                agent_id=req.agent_id,
                mandate_id=req.mandate_id,
                tx_type=req.transaction_type,
                amount=amount,
                metadata=req.metadata,
            )
            try:
                mandate = self._check_access(
                    session,
                    merchant,
                    mandate_id=req.mandate_id,
                    agent_id=req.agent_id,
                    mandate_type=mandate_type,
                    amount=amount,
                )
                action = {
                    "price": amount,
                    "total": amount,
                    "amount": amount,
                    "category": req.metadata.get("category"),
                    "payment_method": req.metadata.get("payment_method"),
                    "merchant_id": merchant.id,
                }
                decision = evaluate_constraints(session, mandate, action)
            except GatewayError as exc:
                error = self._decline(session, merchant, tx, exc, queued)
                response = AuthorizationResponse(
                    authorized=False,
                    transaction_id=tx.id,
                    message=exc.message,
                    error=error,
                )
            else:
                transition(session, tx.id, "authorized")
                max_amount = (merchant.settings or {}).get("max_transaction_amount", 0)
                response = AuthorizationResponse(
                    authorized=True,
                    transaction_id=tx.id,
                    constraints=AuthorizationConstraints(
                        max_amount=float(max_amount),
                        expires_at=decision.expires_at if decision is not None else mandate.valid_until,
                        requires_approval=self._requires_approval(merchant, mandate, amount, decision),
                    ),
                )
        self._flush_webhooks(queued)
        return response

    def verify_mandate(
        self, session: Session, merchant: Merchant, req: MandateVerificationRequest
    ) -> MandateVerificationResponse:
        """Dry-run a mandate check. No transaction record is written."""
        queued: list[str] = []
        with session.begin():
            try:
                mandate = validate_mandate_access(session, req.mandate_id, req.agent_id, expected_type=req.operation)
                if req.amount is not None:
                    amount = _money(req.amount)
                    if req.operation == "cart":
                        evaluate_cart(session, mandate, price=amount, merchant_id=merchant.id)
                    elif req.operation == "intent":
                        evaluate_intent(session, mandate, total=amount)
                    else:
                        evaluate_payment(session, mandate, amount=amount, merchant_id=merchant.id)
            except GatewayError as exc:
                if exc.code == MANDATE_EXPIRED:
                    self._notify(
                        session,
                        merchant,
                        webhooks.MANDATE_EXPIRED,
                        {"mandate_id": req.mandate_id, "agent_id": req.agent_id},
                        queued,
                    )
                response = MandateVerificationResponse(valid=False, reason=exc.message, error=_error_detail(exc))
            else:
                response = MandateVerificationResponse(
                    valid=True,
                    mandate=MandateResponse(**mandate_view(mandate)),
                    remaining_limits=RemainingLimits(**remaining_limits(session, mandate)),
                )
        self._flush_webhooks(queued)
        return response

    # --- Operations ---

    def process_cart_operation(
        self, session: Session, merchant: Merchant, user_id: str, req: CartOperationRequest
    ) -> OperationResponse:
        if req.operation == "add" and req.price is None:
            raise ValidationError("price is required to add an item to the cart")

        tx_type = f"cart_{req.operation}"
        price = _money(req.price) if req.price is not None else None
        queued: list[str] = []
        with session.begin():
            tx = create_transaction(
                session,
                merchant_id=merchant.id,
                user_id=user_id,
                agent_id=req.agent_id,
                mandate_id=req.mandate_id,
                tx_type=tx_type,
                amount=price,
                metadata={
                    "operation": req.operation,
                    "product_id": req.product_id,
                    "product_name": req.product_name,
                    "quantity": req.quantity,
                    "category": req.category,
                    "reasoning": req.reasoning,
                },
            )
            try:
                mandate = self._check_access(
                    session,
                    merchant,
                    mandate_id=req.mandate_id,
                    agent_id=req.agent_id,
                    mandate_type="cart",
                    amount=price if req.operation == "add" else None,
                )
                if req.operation == "add":
                    evaluate_cart(session, mandate, price=price, category=req.category, merchant_id=merchant.id)
            except GatewayError as exc:
                error = self._decline(session, merchant, tx, exc, queued)
                response = OperationResponse(success=False, transaction_id=tx.id, message=exc.message, error=error)
            else:
                try:
                    if req.operation == "add":
                        item = commerce.add_cart_item(
                            session,
                            user_id=user_id,
                            mandate_id=mandate.id,
                            agent_id=req.agent_id,
                            product_id=req.product_id,
                            product_name=req.product_name,
                            price=price,
                            quantity=req.quantity,
                            category=req.category,
                            reasoning=req.reasoning,
                        )
                        data: dict[str, Any] = {"cart_item": commerce.cart_item_view(item)}
                    elif req.operation == "update":
                        item = commerce.update_cart_item(
                            session, user_id=user_id, product_id=req.product_id, quantity=req.quantity
                        )
                        data = {"cart_item": commerce.cart_item_view(item)}
                    else:
                        removed = commerce.remove_cart_item(session, user_id=user_id, product_id=req.product_id)
                        data = {"removed": removed, "product_id": req.product_id}
                except GatewayError as exc:
                    transition(session, tx.id, "failed", reason=exc.message)
                    response = OperationResponse(
                        success=False, transaction_id=tx.id, message=exc.message, error=_error_detail(exc)
                    )
                else:
                    transition(session, tx.id, "completed")
                    self._notify(
                        session,
                        merchant,
                        webhooks.CART_UPDATED,
                        {"transaction_id": tx.id, "operation": req.operation, "user_id": user_id, **data},
                        queued,
                    )
                    response = OperationResponse(
                        success=True,
                        transaction_id=tx.id,
                        message=f"Cart {req.operation} completed",
                        data=data,
                    )
        self._flush_webhooks(queued)
        return response

    def process_intent_operation(
        self, session: Session, merchant: Merchant, user_id: str, req: IntentOperationRequest
    ) -> OperationResponse:
        items = [item.model_dump() for item in req.items]
        total = commerce.intent_total(items)
        queued: list[str] = []
        with session.begin():
            tx = create_transaction(
                session,
                merchant_id=merchant.id,
                user_id=user_id,
                agent_id=req.agent_id,
                mandate_id=req.mandate_id,
                tx_type="intent_create",
                amount=total,
                metadata={"items": items, "reasoning": req.reasoning},
            )
            try:
                mandate = self._check_access(
                    session,
                    merchant,
                    mandate_id=req.mandate_id,
                    agent_id=req.agent_id,
                    mandate_type="intent",
                    amount=total,
                )
                decision = evaluate_intent(session, mandate, total=total)
            except GatewayError as exc:
                error = self._decline(session, merchant, tx, exc, queued)
                response = OperationResponse(success=False, transaction_id=tx.id, message=exc.message, error=error)
            else:
                intent = commerce.create_intent(
                    session,
                    user_id=user_id,
                    agent_id=req.agent_id,
                    mandate_id=mandate.id,
                    items=items,
                    decision=decision,
                    reasoning=req.reasoning,
                )
                transition(session, tx.id, "authorized", gateway_transaction_id=intent.id)
                view = commerce.intent_view(intent)
                self._notify(session, merchant, webhooks.INTENT_CREATED, {"transaction_id": tx.id, "intent": view}, queued)
                response = OperationResponse(
                    success=True,
                    transaction_id=tx.id,
                    message="Intent auto-approved" if decision.auto_approve else "Intent awaiting user approval",
                    data={"intent": view, "auto_approved": decision.auto_approve},
                )
        self._flush_webhooks(queued)
        return response

    def process_payment_operation(
        self, session: Session, merchant: Merchant, user_id: str, req: PaymentOperationRequest
    ) -> OperationResponse:
        amount = _money(req.amount)
        queued: list[str] = []
        with session.begin():
            tx = create_transaction(
                session,
                merchant_id=merchant.id,
                user_id=user_id,
                agent_id=req.agent_id,
                mandate_id=req.mandate_id,
                tx_type="payment_execute",
                amount=amount,
                currency=req.currency,
                metadata={
                    "intent_id": req.intent_id,
                    "payment_method": req.payment_method,
                    "reasoning": req.reasoning,
                },
            )
            intent: PurchaseIntent | None = None
            try:
                mandate = self._check_access(
                    session,
                    merchant,
                    mandate_id=req.mandate_id,
                    agent_id=req.agent_id,
                    mandate_type="payment",
                    amount=amount,
                )
                evaluate_payment(
                    session,
                    mandate,
                    amount=amount,
                    payment_method=req.payment_method,
                    merchant_id=merchant.id,
                )
                if req.intent_id:
                    intent = commerce.require_payable_intent(session, req.intent_id, user_id)
                    if amount > intent.total:
                        raise ConstraintViolation(
                            f"Payment amount {amount} exceeds approved intent total {intent.total}",
                            rule="intent_total",
                        )
            except GatewayError as exc:
                error = self._decline(session, merchant, tx, exc, queued)
                response = OperationResponse(success=False, transaction_id=tx.id, message=exc.message, error=error)
            else:
                transition(session, tx.id, "authorized")
                try:
                    result = self.processor.charge(
                        amount=amount,
                        currency=req.currency,
                        payment_method=req.payment_method,
                        metadata={"transaction_id": tx.id, "user_id": user_id, "merchant_id": merchant.id},
                    )
                except Exception:
                    logger.exception("Payment processor raised for transaction %s", tx.id)
                    result = payments.PaymentResult(success=False, error="Payment processor error")

                event_data = {
                    "transaction_id": tx.id,
                    "amount": amount,
                    "currency": req.currency,
                    "intent_id": req.intent_id,
                }
                if result.success:
                    transition(session, tx.id, "completed", gateway_transaction_id=result.transaction_id)
                    if intent is not None:
                        commerce.mark_intent_executed(session, intent)
                        self._notify(
                            session,
                            merchant,
                            webhooks.INTENT_EXECUTED,
                            {"transaction_id": tx.id, "intent_id": intent.id},
                            queued,
                        )
                    event_data["gateway_transaction_id"] = result.transaction_id
                    self._notify(session, merchant, webhooks.PAYMENT_COMPLETED, event_data, queued)
                    response = OperationResponse(
                        success=True,
                        transaction_id=tx.id,
                        message="Payment completed",
                        data={"amount": float(amount), "currency": req.currency, "gateway_transaction_id": result.transaction_id},
                    )
                else:
                    reason = result.error or "Payment failed"
                    transition(session, tx.id, "failed", reason=reason)
                    event_data["reason"] = reason
                    self._notify(session, merchant, webhooks.PAYMENT_FAILED, event_data, queued)
                    response = OperationResponse(
                        success=False,
                        transaction_id=tx.id,
                        message=reason,
                        error=ErrorDetail(code=PAYMENT_FAILED, message=reason),
                    )
        self._flush_webhooks(queued)
        return response

    def refund_transaction(
        self, session: Session, merchant: Merchant, transaction_id: str, reason: str | None = None
    ) -> OperationResponse:
        queued: list[str] = []
        with session.begin():
            tx = get_transaction(session, transaction_id)
            if tx is None or tx.merchant_id != merchant.id:
                raise NotFoundError("Transaction not found")
            if tx.type != "payment_execute":
                raise GatewayError(INVALID_TRANSACTION_TYPE, "Only payment transactions can be refunded")
            if tx.status != "completed":
                raise InvalidTransition(
                    f"Cannot refund a {tx.status} transaction",
                    details={"from": tx.status, "to": "refunded"},
                )

            result = self.processor.refund(transaction_id=tx.gateway_transaction_id or tx.id, amount=tx.amount)
            if not result.success:
                raise GatewayError(PAYMENT_FAILED, result.error or "Refund failed")

            transition(session, tx.id, "refunded")
            refund = create_transaction(
                session,
                merchant_id=merchant.id,
                user_id=tx.user_id,
                agent_id=tx.agent_id,
                mandate_id=tx.mandate_id,
                tx_type="payment_refund",
                amount=tx.amount,
                currency=tx.currency,
                metadata={"refunded_transaction_id": tx.id, "reason": reason},
            )
            transition(session, refund.id, "completed", gateway_transaction_id=result.transaction_id)
            self._notify(
                session,
                merchant,
                webhooks.PAYMENT_REFUNDED,
                {"transaction_id": tx.id, "refund_transaction_id": refund.id, "amount": tx.amount, "reason": reason},
                queued,
            )
            response = OperationResponse(
                success=True,
                transaction_id=refund.id,
                message="Payment refunded",
                data={"refunded_transaction_id": tx.id, "amount": float(tx.amount or 0)},
            )
        self._flush_webhooks(queued)
        return response

    # --- Human approval of intents ---

    def _intent_merchant(self, session: Session, intent: PurchaseIntent) -> tuple[Merchant | None, Transaction | None]:
        origin = session.execute(
            select(Transaction).where(
                and_(Transaction.type == "intent_create", Transaction.gateway_transaction_id == intent.id)
            )
        ).scalar_one_or_none()
        if origin is None:
            return None, None
        return get_merchant(session, origin.merchant_id), origin

    def _record_intent_decision(
        self, session: Session, intent: PurchaseIntent, tx_type: str, event: str, queued: list[str]
    ) -> None:
        merchant, origin = self._intent_merchant(session, intent)
        if merchant is None or origin is None:
            return
        tx = create_transaction(
            session,
            merchant_id=merchant.id,
            user_id=intent.user_id,
            agent_id=intent.agent_id,
            mandate_id=intent.mandate_id,
            tx_type=tx_type,
            amount=intent.total,
            metadata={"intent_id": intent.id, "reason": intent.rejection_reason},
        )
        transition(session, tx.id, "completed", gateway_transaction_id=intent.id)
        self._notify(
            session,
            merchant,
            event,
            {"transaction_id": origin.id, "intent": commerce.intent_view(intent)},
            queued,
        )

    def approve_intent(self, session: Session, intent_id: str) -> PurchaseIntent:
        queued: list[str] = []
        with session.begin():
            intent = commerce.approve_intent(session, intent_id)
            self._record_intent_decision(session, intent, "intent_approve", webhooks.INTENT_APPROVED, queued)
        self._flush_webhooks(queued)
        return intent

    def reject_intent(self, session: Session, intent_id: str, reason: str | None = None) -> PurchaseIntent:
        queued: list[str] = []
        with session.begin():
            intent = commerce.reject_intent(session, intent_id, reason)
            self._record_intent_decision(session, intent, "intent_reject", webhooks.INTENT_REJECTED, queued)
        self._flush_webhooks(queued)
        return intent


gateway_service = GatewayService()
