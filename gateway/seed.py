from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from gateway.config import SessionLocal, engine, settings
from gateway.mandates import approve_mandate, create_mandate
from gateway.merchants import register_merchant, update_status
from gateway.models import Base


DEMO_MERCHANT = {
    "name": "Demo Store",
    "business_name": "Demo Store LLC",
    "email": "merchant@demo-store.example",
    "website": "https://demo-store.example",
    "tier": "business",
}

DEMO_USER = "user-demo-1"
DEMO_AGENT = "agent-demo-1"

DEMO_MANDATES = [
    ("cart", {"max_items_per_day": 20, "max_item_value": 100, "blocked_categories": ["alcohol"]}),
    ("intent", {"max_intents_per_day": 10, "max_intent_value": 1000, "auto_approve_under": 100}),
    ("payment", {"max_transaction_amount": 500, "daily_spending_limit": 1000, "monthly_spending_limit": 5000}),
]


def seed(session: Session) -> None:
    print("Seeding demo merchant and mandates...")
    with session.begin():
        merchant, api_key = register_merchant(session, **DEMO_MERCHANT)
        update_status(session, merchant.id, "active")
        print(f"- merchant {merchant.business_name}  id={merchant.id}")
        print(f"  api_key={api_key}")
        print(f"  api_secret={merchant.api_secret}")

        valid_until = datetime.now(timezone.utc) + timedelta(days=30)
        for mandate_type, constraints in DEMO_MANDATES:
            mandate = create_mandate(
                session,
                user_id=DEMO_USER,
                agent_id=DEMO_AGENT,
                agent_name="Demo Shopping Agent",
                mandate_type=mandate_type,
                constraints=constraints,
                valid_until=valid_until,
            )
            approve_mandate(session, mandate.id)
            print(f"- {mandate_type} mandate  id={mandate.id}  user={DEMO_USER}  agent={DEMO_AGENT}")


def main() -> int:
    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        seed(session)
    finally:
        session.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
