from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from gateway.auth import authenticate_merchant
from gateway.config import get_session
from gateway.errors import STATUS_CODES
from gateway.models import Merchant
from gateway.schemas import (
    AuthorizationRequest,
    AuthorizationResponse,
    CartOperationRequest,
    ErrorResponse,
    IntentOperationRequest,
    MandateVerificationRequest,
    MandateVerificationResponse,
    OperationResponse,
    PaymentOperationRequest,
)
from gateway.service import gateway_service


router = APIRouter()

_error_responses: dict[int | str, dict[str, Any]] = {401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}}


def _respond(resp: Any) -> Any:
    """Return ``resp`` as-is on success, or with the status its error code maps to."""
    error = getattr(resp, "error", None)
    if error is None:
        return resp
    return JSONResponse(status_code=STATUS_CODES.get(error.code, 400), content=_dump(resp))


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json")


@router.get("/gateway/docs", tags=["Gateway"])
def api_docs() -> dict:
    return {
        "name": "AP2 Mandate Gateway API",
        "version": "1.0.0",
        "description": "Lets merchants act for AI shopping agents under user-granted mandates",
        "endpoints": {
            "authorization": {"method": "POST", "path": "/v1/gateway/authorize", "description": "Authorize an agent transaction"},
            "mandate_verification": {
                "method": "POST",
                "path": "/v1/gateway/verify-mandate",
                "description": "Verify mandate validity and current usage",
            },
            "cart_operations": {"method": "POST", "path": "/v1/gateway/cart", "description": "Cart add, update and remove"},
            "intent_operations": {"method": "POST", "path": "/v1/gateway/intent", "description": "Create purchase intents"},
            "payment_operations": {"method": "POST", "path": "/v1/gateway/payment", "description": "Execute payments"},
        },
        "authentication": {
            "type": "API Key + HMAC-SHA256 signature",
            "headers": {
                "X-AP2-API-Key": "Your merchant API key",
                "X-AP2-Timestamp": "Epoch milliseconds; requests older than 5 minutes are rejected",
                "X-AP2-Signature": "hex HMAC-SHA256 of '<timestamp>.<canonical JSON body>' keyed with your API secret",
            },
        },
    }


@router.post(
    "/gateway/authorize",
    response_model=AuthorizationResponse,
    responses=_error_responses,
    tags=["Gateway"],
)
def authorize(
    req: AuthorizationRequest,
    merchant: Merchant = Depends(authenticate_merchant),
    session: Session = Depends(get_session),
) -> Any:
    return _respond(gateway_service.authorize_request(session, merchant, req))


@router.post(
    "/gateway/verify-mandate",
    response_model=MandateVerificationResponse,
    responses=_error_responses,
    tags=["Gateway"],
)
def verify_mandate(
    req: MandateVerificationRequest,
    merchant: Merchant = Depends(authenticate_merchant),
    session: Session = Depends(get_session),
) -> Any:
    return _respond(gateway_service.verify_mandate(session, merchant, req))


@router.post("/gateway/cart", response_model=OperationResponse, responses=_error_responses, tags=["Gateway"])
def cart_operation(
    req: CartOperationRequest,
    merchant: Merchant = Depends(authenticate_merchant),
    session: Session = Depends(get_session),
) -> Any:
    return _respond(gateway_service.process_cart_operation(session, merchant, req.user_id, req))


@router.post("/gateway/intent", response_model=OperationResponse, responses=_error_responses, tags=["Gateway"])
def intent_operation(
    req: IntentOperationRequest,
    merchant: Merchant = Depends(authenticate_merchant),
    session: Session = Depends(get_session),
) -> Any:
    return _respond(gateway_service.process_intent_operation(session, merchant, req.user_id, req))


@router.post("/gateway/payment", response_model=OperationResponse, responses=_error_responses, tags=["Gateway"])
def payment_operation(
    req: PaymentOperationRequest,
    merchant: Merchant = Depends(authenticate_merchant),
    session: Session = Depends(get_session),
) -> Any:
    return _respond(gateway_service.process_payment_operation(session, merchant, req.user_id, req))
