from __future__ import annotations

import pytest

from gateway.errors import EXPIRED_REQUEST, INVALID_SIGNATURE, AuthError
from gateway.signing import (
    compute_signature,
    is_timestamp_fresh,
    serialize,
    signature_violations,
    verify_signature,
)

SECRET = "sk_test_secret"
NOW = 1_760_000_000_000
BODY = {"mandate_id": "m-1", "amount": 12.5, "agent_id": "agent-1"}


def test_serialize_sorts_keys_and_drops_signature_fields():
    body = {"b": 1, "a": {"d": 2, "c": 3}, "signature": "x", "timestamp": 5}
    assert serialize(body) == '{"a":{"c":3,"d":2},"b":1}'


def test_serialize_empty_body():
    assert serialize(None) == ""
    assert serialize(b"") == ""


def test_signature_ignores_key_order():
    reordered = {"agent_id": "agent-1", "amount": 12.5, "mandate_id": "m-1"}
    assert compute_signature(SECRET, NOW, BODY) == compute_signature(SECRET, NOW, reordered)


def test_signature_is_hex_sha256():
    sig = compute_signature(SECRET, NOW, BODY)
    assert len(sig) == 64
    int(sig, 16)


def test_verify_accepts_valid_signature():
    sig = compute_signature(SECRET, NOW, BODY)
    verify_signature(BODY, NOW, sig, SECRET, now_ms=NOW + 1000)


def test_verify_rejects_tampered_body():
    sig = compute_signature(SECRET, NOW, BODY)
    with pytest.raises(AuthError) as exc:
        verify_signature({**BODY, "amount": 13}, NOW, sig, SECRET, now_ms=NOW)
    assert exc.value.code == INVALID_SIGNATURE
    assert exc.value.status_code == 401


def test_verify_rejects_wrong_secret():
    sig = compute_signature("sk_other", NOW, BODY)
    with pytest.raises(AuthError) as exc:
        verify_signature(BODY, NOW, sig, SECRET, now_ms=NOW)
    assert exc.value.code == INVALID_SIGNATURE


def test_replay_window_boundary():
    assert is_timestamp_fresh(NOW, now_ms=NOW + 300_000)
    assert not is_timestamp_fresh(NOW, now_ms=NOW + 300_001)
    assert is_timestamp_fresh(NOW + 300_000, now_ms=NOW)


def test_stale_but_correct_signature_is_expired():
    sig = compute_signature(SECRET, NOW, BODY)
    with pytest.raises(AuthError) as exc:
        verify_signature(BODY, NOW, sig, SECRET, now_ms=NOW + 300_001)
    assert exc.value.code == EXPIRED_REQUEST


def test_violations_reports_both_failures():
    violations = signature_violations(BODY, NOW, "deadbeef", SECRET, now_ms=NOW + 600_000)
    assert violations == [INVALID_SIGNATURE, EXPIRED_REQUEST]


def test_non_numeric_timestamp_is_rejected():
    with pytest.raises(AuthError) as exc:
        verify_signature(BODY, "yesterday", "abc", SECRET, now_ms=NOW)
    assert exc.value.code == INVALID_SIGNATURE
