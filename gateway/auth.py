from __future__ import annotations

import hmac
import json
import logging
from typing import Any

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from gateway.config import get_session, settings
from gateway.errors import (
    INSUFFICIENT_PERMISSIONS,
    INVALID_API_KEY,
    INVALID_SIGNATURE,
    MERCHANT_SUSPENDED,
    AuthError,
    ValidationError,
)
from gateway.merchants import get_by_api_key, touch_last_activity
from gateway.models import Merchant
from gateway.signing import verify_signature

logger = logging.getLogger(__name__)


def authenticate_by_api_key(session: Session, api_key: str | None) -> Merchant:
    """Resolve an API key to an active merchant."""
    if not api_key:
        raise AuthError(INVALID_API_KEY, "Missing API key. Provide the X-AP2-API-Key header.")
    merchant = get_by_api_key(session, api_key)
    if merchant is None:
        raise AuthError(INVALID_API_KEY, "Invalid API key")
    if merchant.status != "active":
        raise AuthError(MERCHANT_SUSPENDED, f"Merchant is {merchant.status}")
    return merchant


def _parse_body(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ValidationError("Request body is not valid JSON") from exc


def authenticate_request(
    session: Session,
    *,
    api_key: str | None,
    signature: str | None,
    timestamp: str | None,
    body: Any,
) -> Merchant:
    """API key plus HMAC signature over ``body``. Nothing is written unless both pass."""
    if not api_key:
        raise AuthError(INVALID_API_KEY, "Missing API key. Provide the X-AP2-API-Key header.")
    if not signature or not timestamp:
        raise AuthError(
            INVALID_SIGNATURE,
            "Request signature required. Provide X-AP2-Signature and X-AP2-Timestamp headers.",
        )
    with session.begin():
        merchant = authenticate_by_api_key(session, api_key)
        verify_signature(
            body,
            timestamp,
            signature,
            merchant.api_secret,
            max_age_ms=settings.signature_max_age_seconds * 1000,
        )
        touch_last_activity(session, merchant.id)
    return merchant


async def authenticate_merchant(
    request: Request,
    x_ap2_api_key: str | None = Header(default=None),
    x_ap2_signature: str | None = Header(default=None),
    x_ap2_timestamp: str | None = Header(default=None),
    session: Session = Depends(get_session),
) -> Merchant:
    body = _parse_body(await request.body())
    try:
        merchant = authenticate_request(
            session,
            api_key=x_ap2_api_key,
            signature=x_ap2_signature,
            timestamp=x_ap2_timestamp,
            body=body,
        )
    except AuthError as exc:
        logger.warning("Rejected gateway request to %s: %s", request.url.path, exc.code)
        raise
    request.state.merchant = merchant
    return merchant


def authenticate_merchant_key(
    request: Request,
    x_ap2_api_key: str | None = Header(default=None),
    session: Session = Depends(get_session),
) -> Merchant:
    """API-key-only authentication for merchant account management."""
    with session.begin():
        merchant = authenticate_by_api_key(session, x_ap2_api_key)
    request.state.merchant = merchant
    return merchant


def require_merchant_self(merchant_id: str, merchant: Merchant = Depends(authenticate_merchant_key)) -> Merchant:
    if merchant.id != merchant_id:
        raise AuthError(INSUFFICIENT_PERMISSIONS, "Cannot access another merchant's account")
    return merchant


def require_operator(x_ap2_admin_token: str | None = Header(default=None)) -> None:
    expected = settings.admin_token
    if not expected or not x_ap2_admin_token or not hmac.compare_digest(expected, x_ap2_admin_token):
        raise AuthError(INSUFFICIENT_PERMISSIONS, "Operator token required")
