"""Per-type mandate constraint shapes.

A mandate's ``constraints`` column holds exactly one of these, selected by the
mandate's ``type``. Unknown keys are rejected so a typo never silently turns
into an unlimited grant.
"""

from __future__ import annotations

from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from gateway.errors import ValidationError

MANDATE_TYPES = ("cart", "intent", "payment")


class CartConstraints(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_items_per_day: int | None = Field(default=None, ge=0)
    max_item_value: float | None = Field(default=None, ge=0)
    allowed_categories: list[str] | None = None
    blocked_categories: list[str] | None = None
    allowed_merchants: list[str] | None = None
    requires_approval: bool = False


class IntentConstraints(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_intents_per_day: int | None = Field(default=None, ge=0)
    max_intent_value: float | None = Field(default=None, ge=0)
    auto_approve_under: float | None = Field(default=None, ge=0)
    expiry_hours: int | None = Field(default=None, gt=0)


class PaymentConstraints(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_transaction_amount: float | None = Field(default=None, ge=0)
    daily_spending_limit: float | None = Field(default=None, ge=0)
    monthly_spending_limit: float | None = Field(default=None, ge=0)
    allowed_payment_methods: list[str] | None = None
    requires_two_factor: bool = False
    allowed_merchants: list[str] | None = None

    def has_limit(self) -> bool:
        return any(
            v is not None
            for v in (self.max_transaction_amount, self.daily_spending_limit, self.monthly_spending_limit)
        )


MandateConstraints = Union[CartConstraints, IntentConstraints, PaymentConstraints]

_MODELS: dict[str, type[BaseModel]] = {
    "cart": CartConstraints,
    "intent": IntentConstraints,
    "payment": PaymentConstraints,
}


def parse_constraints(mandate_type: str, payload: dict[str, Any] | None) -> MandateConstraints:
    """Validate a raw constraints object against the shape for ``mandate_type``."""
    model = _MODELS.get(mandate_type)
    if model is None:
        raise ValidationError(f"Unknown mandate type: {mandate_type}")
    try:
        parsed = model.model_validate(payload or {})
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {mandate_type} mandate constraints",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc
    if isinstance(parsed, PaymentConstraints) and not parsed.has_limit():
        raise ValidationError(
            "Payment mandates require at least one of max_transaction_amount, "
            "daily_spending_limit or monthly_spending_limit"
        )
    return parsed  # type: ignore[return-value]


def dump_constraints(constraints: MandateConstraints) -> dict[str, Any]:
    return constraints.model_dump(exclude_none=True)
