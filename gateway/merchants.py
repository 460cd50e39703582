from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Any

import bcrypt
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from gateway.config import settings
from gateway.errors import NotFoundError, ValidationError
from gateway.models import Merchant

logger = logging.getLogger(__name__)

MERCHANT_STATUSES = ("pending", "active", "suspended", "deactivated")
MERCHANT_TIERS = ("starter", "business", "enterprise")

# (max_transaction_amount, daily_transaction_limit, monthly_transaction_limit)
TIER_LIMITS: dict[str, tuple[int, int, int]] = {
    "starter": (10_000, 100_000, 1_000_000),
    "business": (50_000, 500_000, 5_000_000),
    "enterprise": (100_000, 1_000_000, 10_000_000),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def default_settings(tier: str) -> dict[str, Any]:
    max_amount, daily, monthly = TIER_LIMITS[tier]
    return {
        "supports_cart_mandate": True,
        "supports_intent_mandate": True,
        "supports_payment_mandate": True,
        "max_transaction_amount": max_amount,
        "daily_transaction_limit": daily,
        "monthly_transaction_limit": monthly,
        "requires_webhook_verification": True,
        "allowed_origins": [],
        "enable_auto_approval": False,
        "auto_approval_threshold": 100,
        "notify_on_mandate_created": True,
        "notify_on_intent_created": True,
        "notify_on_payment_executed": True,
    }


def _hash_key(api_key: str) -> str:
    return bcrypt.hashpw(
        api_key.encode("utf-8"),
        bcrypt.gensalt(rounds=settings.api_key_salt_rounds),
    ).decode("utf-8")


def check_api_key(api_key: str, api_key_hash: str) -> bool:
    try:
        return bcrypt.checkpw(api_key.encode("utf-8"), api_key_hash.encode("utf-8"))
    except ValueError:
        return False


def generate_credentials() -> tuple[str, str, str]:
    """Return ``(api_key_id, api_key, api_secret)``.

    The key id is embedded in the key so lookups stay point queries while
    only a bcrypt hash of the full key is stored.
    """
    key_id = secrets.token_hex(8)
    api_key = f"mk_{key_id}_{secrets.token_hex(24)}"
    api_secret = f"sk_{secrets.token_hex(32)}"
    return key_id, api_key, api_secret


def api_key_id(api_key: str) -> str | None:
    parts = api_key.split("_")
    if len(parts) != 3 or parts[0] != "mk" or not parts[1] or not parts[2]:
        return None
    return parts[1]


def generate_webhook_secret() -> str:
    return f"whsec_{secrets.token_hex(24)}"


def public_view(merchant: Merchant) -> dict[str, Any]:
    """Merchant fields that are safe to return on any read."""
    return {
        "id": merchant.id,
        "name": merchant.name,
        "business_name": merchant.business_name,
        "email": merchant.email,
        "website": merchant.website,
        "status": merchant.status,
        "tier": merchant.tier,
        "webhook_url": merchant.webhook_url,
        "settings": dict(merchant.settings or {}),
        "created_at": merchant.created_at,
        "last_activity_at": merchant.last_activity_at,
    }


def register_merchant(
    session: Session,
    *,
    name: str,
    business_name: str,
    email: str,
    tier: str = "starter",
    website: str | None = None,
    webhook_url: str | None = None,
) -> tuple[Merchant, str]:
    """Create a pending merchant. Returns the merchant and its plaintext API key."""
    if tier not in MERCHANT_TIERS:
        raise ValidationError(f"Unknown merchant tier: {tier}")
    existing = session.execute(select(Merchant.id).where(Merchant.email == email)).scalar_one_or_none()
    if existing is not None:
        raise ValidationError("Merchant with this email already exists")

    key_id, api_key, api_secret = generate_credentials()
    merchant = Merchant(
        name=name,
        business_name=business_name,
        email=email,
        website=website,
        status="pending",
        tier=tier,
        api_key_id=key_id,
        api_key_hash=_hash_key(api_key),
        api_secret=api_secret,
        webhook_url=webhook_url,
        webhook_secret=generate_webhook_secret() if webhook_url else None,
        settings=default_settings(tier),
    )
    session.add(merchant)
    session.flush()
    logger.info("Registered merchant %s (%s tier)", merchant.id, tier)
    return merchant, api_key


def get_merchant(session: Session, merchant_id: str) -> Merchant | None:
    return session.execute(select(Merchant).where(Merchant.id == merchant_id)).scalar_one_or_none()


def require_merchant(session: Session, merchant_id: str) -> Merchant:
    merchant = get_merchant(session, merchant_id)
    if merchant is None:
        raise NotFoundError("Merchant not found")
    return merchant


def get_by_api_key(session: Session, api_key: str) -> Merchant | None:
    key_id = api_key_id(api_key)
    if key_id is None:
        return None
    merchant = session.execute(select(Merchant).where(Merchant.api_key_id == key_id)).scalar_one_or_none()
    if merchant is None or not check_api_key(api_key, merchant.api_key_hash):
        return None
    return merchant


def update_status(session: Session, merchant_id: str, status: str) -> Merchant:
    if status not in MERCHANT_STATUSES:
        raise ValidationError(f"Unknown merchant status: {status}")
    merchant = require_merchant(session, merchant_id)
    if merchant.status == "deactivated" and status != "deactivated":
        raise ValidationError("Deactivated merchants cannot be reactivated")
    merchant.status = status
    session.add(merchant)
    logger.info("Merchant %s status set to %s", merchant_id, status)
    return merchant


def update_settings(session: Session, merchant_id: str, changes: dict[str, Any]) -> Merchant:
    merchant = require_merchant(session, merchant_id)
    current = dict(merchant.settings or {})
    unknown = sorted(set(changes) - set(current))
    if unknown:
        raise ValidationError(f"Unknown merchant settings: {', '.join(unknown)}")
    current.update(changes)
    merchant.settings = current
    session.add(merchant)
    return merchant


def update_webhook(session: Session, merchant_id: str, webhook_url: str | None) -> Merchant:
    """Set or clear the webhook URL; a fresh secret is issued whenever a URL is set."""
    merchant = require_merchant(session, merchant_id)
    merchant.webhook_url = webhook_url
    merchant.webhook_secret = generate_webhook_secret() if webhook_url else None
    session.add(merchant)
    return merchant


def rotate_api_keys(session: Session, merchant_id: str) -> tuple[str, str]:
    """Replace the key pair in a single write. Returns ``(api_key, api_secret)``."""
    require_merchant(session, merchant_id)
    key_id, api_key, api_secret = generate_credentials()
    session.execute(
        update(Merchant)
        .where(Merchant.id == merchant_id)
        .values(api_key_id=key_id, api_key_hash=_hash_key(api_key), api_secret=api_secret)
    )
    logger.info("Rotated API credentials for merchant %s", merchant_id)
    return api_key, api_secret


def touch_last_activity(session: Session, merchant_id: str) -> None:
    session.execute(update(Merchant).where(Merchant.id == merchant_id).values(last_activity_at=_now()))


def list_merchants(session: Session, status: str | None = None, limit: int = 100, offset: int = 0) -> list[Merchant]:
    q = select(Merchant).order_by(Merchant.created_at.desc()).limit(limit).offset(offset)
    if status:
        q = q.where(Merchant.status == status)
    return list(session.execute(q).scalars().all())
