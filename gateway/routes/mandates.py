from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from gateway import mandates
from gateway.auth import require_operator
from gateway.commerce import intent_view
from gateway.config import get_session
from gateway.schemas import (
    IntentRejectRequest,
    IntentResponse,
    MandateCreateRequest,
    MandateListResponse,
    MandateResponse,
    MandateRevokeRequest,
)
from gateway.service import gateway_service


# Mandates are granted by users outside the merchant API; these routes are for
# the operator that brokers those grants.
router = APIRouter(dependencies=[Depends(require_operator)])


@router.post("/mandates", status_code=201, response_model=MandateResponse, tags=["Mandates"])
def create_mandate(req: MandateCreateRequest, session: Session = Depends(get_session)) -> MandateResponse:
    with session.begin():
        mandate = mandates.create_mandate(
            session,
            user_id=req.user_id,
            agent_id=req.agent_id,
            agent_name=req.agent_name,
            mandate_type=req.type,
            constraints=req.constraints,
            valid_from=req.valid_from,
            valid_until=req.valid_until,
        )
        return MandateResponse(**mandates.mandate_view(mandate))


@router.get("/mandates/{mandate_id}", response_model=MandateResponse, tags=["Mandates"])
def get_mandate(mandate_id: str, session: Session = Depends(get_session)) -> MandateResponse:
    with session.begin():
        mandate = mandates.require_mandate(session, mandate_id)
        return MandateResponse(**mandates.mandate_view(mandate))


@router.get("/users/{user_id}/mandates", response_model=MandateListResponse, tags=["Mandates"])
def list_user_mandates(
    user_id: str,
    status: str | None = None,
    type: str | None = None,
    session: Session = Depends(get_session),
) -> MandateListResponse:
    with session.begin():
        rows = mandates.list_user_mandates(session, user_id, status=status, mandate_type=type)
        return MandateListResponse(mandates=[MandateResponse(**mandates.mandate_view(m)) for m in rows])


@router.post("/mandates/{mandate_id}/approve", response_model=MandateResponse, tags=["Mandates"])
def approve_mandate(mandate_id: str, session: Session = Depends(get_session)) -> MandateResponse:
    with session.begin():
        mandate = mandates.approve_mandate(session, mandate_id)
        return MandateResponse(**mandates.mandate_view(mandate))


@router.post("/mandates/{mandate_id}/suspend", response_model=MandateResponse, tags=["Mandates"])
def suspend_mandate(mandate_id: str, session: Session = Depends(get_session)) -> MandateResponse:
    with session.begin():
        mandate = mandates.suspend_mandate(session, mandate_id)
        return MandateResponse(**mandates.mandate_view(mandate))


@router.post("/mandates/{mandate_id}/revoke", response_model=MandateResponse, tags=["Mandates"])
def revoke_mandate(
    mandate_id: str,
    req: MandateRevokeRequest | None = None,
    session: Session = Depends(get_session),
) -> MandateResponse:
    with session.begin():
        mandate = mandates.revoke_mandate(session, mandate_id, req.reason if req else None)
        return MandateResponse(**mandates.mandate_view(mandate))


@router.post("/intents/{intent_id}/approve", response_model=IntentResponse, tags=["Intents"])
def approve_intent(intent_id: str, session: Session = Depends(get_session)) -> IntentResponse:
    intent = gateway_service.approve_intent(session, intent_id)
    return IntentResponse(**intent_view(intent))


@router.post("/intents/{intent_id}/reject", response_model=IntentResponse, tags=["Intents"])
def reject_intent(
    intent_id: str,
    req: IntentRejectRequest | None = None,
    session: Session = Depends(get_session),
) -> IntentResponse:
    intent = gateway_service.reject_intent(session, intent_id, req.reason if req else None)
    return IntentResponse(**intent_view(intent))
