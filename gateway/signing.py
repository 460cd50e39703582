from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any

from gateway.errors import EXPIRED_REQUEST, INVALID_SIGNATURE, AuthError

SIGNATURE_FIELDS = ("signature", "timestamp")
DEFAULT_MAX_AGE_MS = 5 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def serialize(body: Any) -> str:
    """Canonical JSON for signing: sorted keys, compact separators.

    The ``signature`` and ``timestamp`` members of a top-level object are not
    part of the signed content.
    """
    if body is None:
        return ""
    if isinstance(body, (bytes, bytearray)):
        if not body:
            return ""
        body = json.loads(body)
    if isinstance(body, dict):
        body = {k: v for k, v in body.items() if k not in SIGNATURE_FIELDS}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)


def compute_signature(secret: str, timestamp: int | str, body: Any) -> str:
    """HMAC-SHA256 over ``f"{timestamp}.{serialize(body)}"``, hex encoded."""
    message = f"{timestamp}.{serialize(body)}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _parse_timestamp(timestamp: int | str | None) -> int | None:
    if timestamp is None or isinstance(timestamp, bool):
        return None
    try:
        return int(timestamp)
    except (TypeError, ValueError):
        return None


def is_timestamp_fresh(timestamp: int | str | None, *, max_age_ms: int = DEFAULT_MAX_AGE_MS, now_ms: int | None = None) -> bool:
    ts = _parse_timestamp(timestamp)
    if ts is None:
        return False
    now = _now_ms() if now_ms is None else now_ms
    return abs(now - ts) <= max_age_ms


def signature_violations(
    body: Any,
    timestamp: int | str | None,
    signature: str | None,
    secret: str,
    *,
    max_age_ms: int = DEFAULT_MAX_AGE_MS,
    now_ms: int | None = None,
) -> list[str]:
    """Run both the signature and the replay-window check and report every failure."""
    violations: list[str] = []
    if not signature or _parse_timestamp(timestamp) is None:
        violations.append(INVALID_SIGNATURE)
    else:
        expected = compute_signature(secret, timestamp, body)  # type: ignore[arg-type]
        if not hmac.compare_digest(expected, str(signature)):
            violations.append(INVALID_SIGNATURE)
    if not is_timestamp_fresh(timestamp, max_age_ms=max_age_ms, now_ms=now_ms):
        violations.append(EXPIRED_REQUEST)
    return violations


def verify_signature(
    body: Any,
    timestamp: int | str | None,
    signature: str | None,
    secret: str,
    *,
    max_age_ms: int = DEFAULT_MAX_AGE_MS,
    now_ms: int | None = None,
) -> None:
    """Raise AuthError on the first violation; return None when the request is authentic."""
    violations = signature_violations(body, timestamp, signature, secret, max_age_ms=max_age_ms, now_ms=now_ms)
    if not violations:
        return
    if violations[0] == EXPIRED_REQUEST:
        raise AuthError(EXPIRED_REQUEST, "Request timestamp expired")
    raise AuthError(INVALID_SIGNATURE, "Invalid signature")
