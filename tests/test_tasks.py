from __future__ import annotations

from datetime import datetime, timedelta, timezone


def test_mandate_expiry_sweep_notifies_merchants(client, merchant, make_mandate, post_signed, receiver, monkeypatch):
    import gateway.mandates as mandates_mod
    import gateway.tasks as tasks_mod

    valid_until = datetime.now(timezone.utc) + timedelta(hours=1)
    mandate = make_mandate("payment", {"max_transaction_amount": 100}, valid_until=valid_until.isoformat())
    idle = make_mandate("payment", {"max_transaction_amount": 100}, valid_until=valid_until.isoformat())
    body = {"user_id": "user-1", "agent_id": "agent-1", "mandate_id": mandate["id"], "amount": 5}
    assert post_signed(merchant, "/v1/gateway/payment", body).status_code == 200

    later = datetime.now(timezone.utc) + timedelta(hours=2)
    monkeypatch.setattr(mandates_mod, "_now", lambda: later)

    assert tasks_mod.run_mandate_expiry_sweep() == 2
    expired = receiver.payloads("mandate.expired")
    assert [p["data"]["mandate_id"] for p in expired] == [mandate["id"]]
    assert idle["id"] not in {p["data"]["mandate_id"] for p in expired}
    assert tasks_mod.run_mandate_expiry_sweep() == 0


def test_intent_expiry_sweep(client, merchant, make_mandate, post_signed, receiver, monkeypatch):
    import gateway.commerce as commerce_mod
    import gateway.tasks as tasks_mod

    mandate = make_mandate("intent", {"expiry_hours": 1})
    body = {
        "user_id": "user-1",
        "agent_id": "agent-1",
        "mandate_id": mandate["id"],
        "items": [{"product_id": "sku-1", "price": 12}],
    }
    intent_id = post_signed(merchant, "/v1/gateway/intent", body).json()["data"]["intent"]["id"]

    later = datetime.now(timezone.utc) + timedelta(hours=2)
    monkeypatch.setattr(commerce_mod, "_now", lambda: later)

    assert tasks_mod.run_intent_expiry_sweep() == 1
    (payload,) = receiver.payloads("intent.expired")
    assert payload["data"]["intent"]["id"] == intent_id
    assert payload["data"]["intent"]["status"] == "expired"


def test_run_sweeps_retries_due_webhooks(client, merchant, make_mandate, post_signed, receiver, monkeypatch):
    import gateway.tasks as tasks_mod
    import gateway.webhooks as webhooks_mod

    receiver.status_code = 503
    mandate = make_mandate("payment", {"max_transaction_amount": 100})
    body = {"user_id": "user-1", "agent_id": "agent-1", "mandate_id": mandate["id"], "amount": 5}
    post_signed(merchant, "/v1/gateway/payment", body)
    assert len(receiver.requests) == 1

    receiver.status_code = 200
    assert tasks_mod.run_sweeps()["webhooks_attempted"] == 0

    later = datetime.now(timezone.utc) + timedelta(minutes=3)
    monkeypatch.setattr(webhooks_mod, "_now", lambda: later)
    results = tasks_mod.run_sweeps()
    assert results["webhooks_attempted"] == 1
    assert len(receiver.requests) == 2
