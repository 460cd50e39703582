from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from gateway import webhooks
from gateway.auth import require_merchant_self, require_operator
from gateway.config import get_session
from gateway.merchants import (
    public_view,
    register_merchant,
    rotate_api_keys,
    update_settings,
    update_status,
    update_webhook,
)
from gateway.models import Merchant, Transaction
from gateway.schemas import (
    AnalyticsResponse,
    MerchantRegisterRequest,
    MerchantRegisterResponse,
    MerchantResponse,
    MerchantSettingsUpdate,
    MerchantStatusRequest,
    OperationResponse,
    PeriodStats,
    RefundRequest,
    RotateKeysResponse,
    TransactionItem,
    TransactionsResponse,
    WebhookDeliveryItem,
    WebhookLogsResponse,
    WebhookRetryResponse,
    WebhookStats,
    WebhookUpdateRequest,
    WebhookUpdateResponse,
)
from gateway.service import gateway_service
from gateway.transactions import list_merchant_transactions, merchant_period_stats


router = APIRouter()


def _transaction_item(tx: Transaction) -> TransactionItem:
    return TransactionItem(
        id=tx.id,
        merchant_id=tx.merchant_id,
        user_id=tx.user_id,
        agent_id=tx.agent_id,
        mandate_id=tx.mandate_id,
        type=tx.type,
        status=tx.status,
        amount=float(tx.amount) if tx.amount is not None else None,
        currency=tx.currency,
        metadata=tx.metadata_ or {},
        requested_at=tx.requested_at,
        authorized_at=tx.authorized_at,
        completed_at=tx.completed_at,
        failed_at=tx.failed_at,
        refunded_at=tx.refunded_at,
        failure_reason=tx.failure_reason,
        gateway_transaction_id=tx.gateway_transaction_id,
    )


@router.post("/merchants/register", status_code=201, response_model=MerchantRegisterResponse, tags=["Merchants"])
def register(req: MerchantRegisterRequest, session: Session = Depends(get_session)) -> MerchantRegisterResponse:
    with session.begin():
        merchant, api_key = register_merchant(
            session,
            name=req.name,
            business_name=req.business_name,
            email=req.email,
            tier=req.tier,
            website=req.website,
            webhook_url=req.webhook_url,
        )
        view = MerchantResponse(**public_view(merchant))

    return MerchantRegisterResponse(
        merchant=view,
        api_key=api_key,
        api_secret=merchant.api_secret,
        webhook_secret=merchant.webhook_secret,
    )


@router.get("/merchants/{merchant_id}", response_model=MerchantResponse, tags=["Merchants"])
def get_merchant(merchant: Merchant = Depends(require_merchant_self)) -> MerchantResponse:
    return MerchantResponse(**public_view(merchant))


@router.put(
    "/merchants/{merchant_id}/status",
    response_model=MerchantResponse,
    tags=["Merchants"],
    dependencies=[Depends(require_operator)],
)
def set_status(
    merchant_id: str,
    req: MerchantStatusRequest,
    session: Session = Depends(get_session),
) -> MerchantResponse:
    with session.begin():
        merchant = update_status(session, merchant_id, req.status)
        return MerchantResponse(**public_view(merchant))


@router.put("/merchants/{merchant_id}/settings", response_model=MerchantResponse, tags=["Merchants"])
def set_settings(
    req: MerchantSettingsUpdate,
    merchant: Merchant = Depends(require_merchant_self),
    session: Session = Depends(get_session),
) -> MerchantResponse:
    with session.begin():
        updated = update_settings(session, merchant.id, req.model_dump(exclude_none=True))
        return MerchantResponse(**public_view(updated))


@router.put("/merchants/{merchant_id}/webhook", response_model=WebhookUpdateResponse, tags=["Merchants"])
def set_webhook(
    req: WebhookUpdateRequest,
    merchant: Merchant = Depends(require_merchant_self),
    session: Session = Depends(get_session),
) -> WebhookUpdateResponse:
    with session.begin():
        updated = update_webhook(session, merchant.id, req.webhook_url)
        return WebhookUpdateResponse(webhook_url=updated.webhook_url, webhook_secret=updated.webhook_secret)


@router.post("/merchants/{merchant_id}/rotate-keys", response_model=RotateKeysResponse, tags=["Merchants"])
def rotate_keys(
    merchant: Merchant = Depends(require_merchant_self),
    session: Session = Depends(get_session),
) -> RotateKeysResponse:
    with session.begin():
        api_key, api_secret = rotate_api_keys(session, merchant.id)
    return RotateKeysResponse(api_key=api_key, api_secret=api_secret)


@router.get("/merchants/{merchant_id}/transactions", response_model=TransactionsResponse, tags=["Merchants"])
def transactions(
    status: str | None = None,
    type: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    merchant: Merchant = Depends(require_merchant_self),
    session: Session = Depends(get_session),
) -> TransactionsResponse:
    with session.begin():
        rows, total = list_merchant_transactions(
            session, merchant.id, status=status, tx_type=type, limit=limit, offset=offset
        )
        items = [_transaction_item(tx) for tx in rows]
    return TransactionsResponse(transactions=items, total=total, limit=limit, offset=offset)


@router.post(
    "/merchants/{merchant_id}/transactions/{transaction_id}/refund",
    response_model=OperationResponse,
    tags=["Merchants"],
)
def refund(
    transaction_id: str,
    req: RefundRequest | None = None,
    merchant: Merchant = Depends(require_merchant_self),
    session: Session = Depends(get_session),
) -> OperationResponse:
    return gateway_service.refund_transaction(session, merchant, transaction_id, req.reason if req else None)


@router.get("/merchants/{merchant_id}/analytics", response_model=AnalyticsResponse, tags=["Merchants"])
def analytics(
    period: str = Query(default="day", pattern="^(day|week|month)$"),
    merchant: Merchant = Depends(require_merchant_self),
    session: Session = Depends(get_session),
) -> AnalyticsResponse:
    with session.begin():
        today = merchant_period_stats(session, merchant.id, "day")
        this_month = merchant_period_stats(session, merchant.id, "month")
        hooks = webhooks.delivery_stats(session, merchant.id, period)
    return AnalyticsResponse(
        today=PeriodStats(**today),
        this_month=PeriodStats(**this_month),
        webhooks=WebhookStats(**hooks),
    )


@router.get("/merchants/{merchant_id}/webhooks", response_model=WebhookLogsResponse, tags=["Merchants"])
def webhook_logs(
    event: str | None = None,
    delivered: bool | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    merchant: Merchant = Depends(require_merchant_self),
    session: Session = Depends(get_session),
) -> WebhookLogsResponse:
    with session.begin():
        rows = webhooks.list_deliveries(
            session, merchant.id, event=event, delivered=delivered, limit=limit, offset=offset
        )
        items = [WebhookDeliveryItem(**webhooks.delivery_view(d)) for d in rows]
    return WebhookLogsResponse(deliveries=items)


@router.post(
    "/merchants/{merchant_id}/webhooks/{delivery_id}/retry",
    response_model=WebhookRetryResponse,
    tags=["Merchants"],
)
def retry_webhook(
    delivery_id: str,
    merchant: Merchant = Depends(require_merchant_self),
    session: Session = Depends(get_session),
) -> WebhookRetryResponse:
    outcome = webhooks.dispatcher.retry_delivery(merchant.id, delivery_id)
    with session.begin():
        delivery = webhooks.get_delivery(session, delivery_id)
        item = WebhookDeliveryItem(**webhooks.delivery_view(delivery))
    return WebhookRetryResponse(delivery=item, outcome=outcome)
