from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# --- Error ---


class ErrorDetail(BaseModel):
    code: str
    message: str
    request_id: str = ""
    details: dict | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


# --- Gateway ---


class AuthorizationRequest(BaseModel):
    merchant_id: str
    user_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    mandate_id: str = Field(..., min_length=1)
    transaction_type: str
    amount: float | None = Field(default=None, ge=0)
    metadata: dict = Field(default_factory=dict)


class AuthorizationConstraints(BaseModel):
    max_amount: float
    expires_at: datetime | None = None
    requires_approval: bool


class AuthorizationResponse(BaseModel):
    authorized: bool
    transaction_id: str = ""
    message: str | None = None
    constraints: AuthorizationConstraints | None = None
    error: ErrorDetail | None = None


class MandateVerificationRequest(BaseModel):
    mandate_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    operation: Literal["cart", "intent", "payment"]
    amount: float | None = Field(default=None, ge=0)


class RemainingLimits(BaseModel):
    daily_spending: float
    monthly_spending: float
    transactions_today: int


class MandateResponse(BaseModel):
    id: str
    user_id: str
    agent_id: str
    agent_name: str = ""
    type: str
    status: str
    constraints: dict
    valid_from: datetime
    valid_until: datetime | None = None
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class MandateVerificationResponse(BaseModel):
    valid: bool
    mandate: MandateResponse | None = None
    reason: str | None = None
    remaining_limits: RemainingLimits | None = None
    error: ErrorDetail | None = None


class CartOperationRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    mandate_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    operation: Literal["add", "update", "remove"] = "add"
    product_id: str = Field(..., min_length=1)
    product_name: str = ""
    quantity: int = Field(default=1, ge=1)
    price: float | None = Field(default=None, ge=0)
    category: str | None = None
    reasoning: str | None = None


class IntentItem(BaseModel):
    product_id: str = Field(..., min_length=1)
    product_name: str = ""
    quantity: int = Field(default=1, ge=1)
    price: float = Field(..., ge=0)


class IntentOperationRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    mandate_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    items: list[IntentItem] = Field(..., min_length=1)
    reasoning: str | None = None


class PaymentOperationRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    mandate_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    payment_method: str | None = None
    intent_id: str | None = None
    reasoning: str | None = None


class OperationResponse(BaseModel):
    success: bool
    transaction_id: str = ""
    message: str | None = None
    data: dict | None = None
    error: ErrorDetail | None = None


# --- Merchants ---


class MerchantRegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    business_name: str = Field(..., min_length=1)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    website: str | None = None
    webhook_url: str | None = None
    tier: Literal["starter", "business", "enterprise"] = "starter"


class MerchantResponse(BaseModel):
    id: str
    name: str
    business_name: str
    email: str
    website: str | None = None
    status: str
    tier: str
    webhook_url: str | None = None
    settings: dict
    created_at: datetime | None = None
    last_activity_at: datetime | None = None


class MerchantRegisterResponse(BaseModel):
    message: str = "Merchant registered. Save your API key and secret - they will not be shown again."
    merchant: MerchantResponse
    api_key: str
    api_secret: str
    webhook_secret: str | None = None


class MerchantStatusRequest(BaseModel):
    status: Literal["pending", "active", "suspended", "deactivated"]


class MerchantSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    supports_cart_mandate: bool | None = None
    supports_intent_mandate: bool | None = None
    supports_payment_mandate: bool | None = None
    max_transaction_amount: float | None = Field(default=None, ge=0)
    daily_transaction_limit: float | None = Field(default=None, ge=0)
    monthly_transaction_limit: float | None = Field(default=None, ge=0)
    requires_webhook_verification: bool | None = None
    allowed_origins: list[str] | None = None
    enable_auto_approval: bool | None = None
    auto_approval_threshold: float | None = Field(default=None, ge=0)
    notify_on_mandate_created: bool | None = None
    notify_on_intent_created: bool | None = None
    notify_on_payment_executed: bool | None = None


class WebhookUpdateRequest(BaseModel):
    webhook_url: str | None = Field(default=None, pattern=r"^https?://")


class WebhookUpdateResponse(BaseModel):
    webhook_url: str | None = None
    webhook_secret: str | None = None


class RotateKeysResponse(BaseModel):
    message: str = "Keys rotated. The previous key pair no longer authenticates."
    api_key: str
    api_secret: str


class TransactionItem(BaseModel):
    id: str
    merchant_id: str
    user_id: str
    agent_id: str
    mandate_id: str
    type: str
    status: str
    amount: float | None = None
    currency: str
    metadata: dict
    requested_at: datetime
    authorized_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    refunded_at: datetime | None = None
    failure_reason: str | None = None
    gateway_transaction_id: str | None = None


class TransactionsResponse(BaseModel):
    transactions: list[TransactionItem]
    total: int
    limit: int
    offset: int


class RefundRequest(BaseModel):
    reason: str | None = None


class PeriodStats(BaseModel):
    total_transactions: int
    total_volume: float
    completed_count: int
    failed_count: int
    declined_count: int


class WebhookStats(BaseModel):
    total_webhooks: int
    delivered: int
    failed: int
    pending: int
    success_rate: float


class AnalyticsResponse(BaseModel):
    today: PeriodStats
    this_month: PeriodStats
    webhooks: WebhookStats


class WebhookDeliveryItem(BaseModel):
    id: str
    event: str
    url: str
    payload: dict
    attempts: int
    max_attempts: int
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    response_status: int | None = None
    created_at: datetime | None = None


class WebhookLogsResponse(BaseModel):
    deliveries: list[WebhookDeliveryItem]


class WebhookRetryResponse(BaseModel):
    delivery: WebhookDeliveryItem
    outcome: str | None = None


# --- Mandates and intents ---


class MandateCreateRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)
    agent_name: str = ""
    type: Literal["cart", "intent", "payment"]
    constraints: dict = Field(default_factory=dict)
    valid_from: datetime | None = None
    valid_until: datetime | None = None


class MandateListResponse(BaseModel):
    mandates: list[MandateResponse]


class MandateRevokeRequest(BaseModel):
    reason: str | None = None


class IntentResponse(BaseModel):
    id: str
    user_id: str
    agent_id: str
    mandate_id: str
    items: list[dict]
    total: float
    reasoning: str | None = None
    status: str
    expires_at: datetime
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    executed_at: datetime | None = None


class IntentRejectRequest(BaseModel):
    reason: str | None = None


# --- Health ---


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "ap2-gateway"
    version: str = "1.0.0"
