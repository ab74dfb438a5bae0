"""
Journey operator endpoints - inspect a lead's journey, pause/resume automation,
report inbound user activity, and record consent.

All routes require X-API-Key when API_KEY is configured.
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from journeyflow.config import get_settings
from journeyflow.schemas.api_responses import (
    ConsentRecordRequest,
    ConsentRecordResponse,
    JourneyActionResponse,
    JourneyDetailResponse,
    SuppressRequest,
    UserActivityRequest,
)
from journeyflow.schemas.journey import JourneyResult
from journeyflow.services.consent import ContactNotFoundError
from journeyflow.services.journey import JourneyService, LeadNotFoundError
from journeyflow.utils.locks import LockTimeoutError
from journeyflow.utils.timeutils import as_utc

logger = logging.getLogger(__name__)
router = APIRouter(tags=["journeys"])


async def require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    expected = get_settings().api_key
    if not expected:
        return
    if not x_api_key or not hmac.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid API key")


def get_journey_service(request: Request) -> JourneyService:
    service = getattr(request.app.state, "journey_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Journey service not ready")
    return service


def _action_response(lead_id: str, result: JourneyResult) -> JourneyActionResponse:
    return JourneyActionResponse(
        lead_id=lead_id,
        state=result.state.value,
        next_action_at=result.next_action_at,
    )


@router.get(
    "/api/v1/leads/{lead_id}/journey",
    response_model=JourneyDetailResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_lead_journey(
    lead_id: str,
    service: JourneyService = Depends(get_journey_service),
):
    """Current journey state. A lead never evaluated reports NEW."""
    try:
        journey = await service.get_journey(lead_id)
    except LeadNotFoundError:
        raise HTTPException(status_code=404, detail="Lead not found")

    if journey is None:
        return JourneyDetailResponse(lead_id=lead_id, state="NEW")

    return JourneyDetailResponse(
        lead_id=str(journey.lead_id),
        state=journey.state,
        next_action_at=as_utc(journey.next_action_at),
        last_action_at=as_utc(journey.last_action_at),
        last_user_activity_at=as_utc(journey.last_user_activity_at),
        last_error=journey.last_error,
        manual_suppressed_until=as_utc(journey.manual_suppressed_until),
        attempts=journey.attempts,
        updated_at=as_utc(journey.updated_at),
    )


@router.post(
    "/api/v1/leads/{lead_id}/journey/suppress",
    response_model=JourneyActionResponse,
    dependencies=[Depends(require_api_key)],
)
async def suppress_lead_journey(
    lead_id: str,
    payload: SuppressRequest,
    service: JourneyService = Depends(get_journey_service),
):
    """Pause automation until a time (or for N hours). until=null lifts the pause."""
    try:
        if payload.hours is not None:
            result = await service.suppress_for(lead_id, payload.hours)
        else:
            result = await service.set_manual_suppression(lead_id, payload.until)
    except LeadNotFoundError:
        raise HTTPException(status_code=404, detail="Lead not found")
    except LockTimeoutError:
        raise HTTPException(status_code=409, detail="Journey is busy, retry shortly")
    return _action_response(lead_id, result)


@router.post(
    "/api/v1/leads/{lead_id}/journey/resume",
    response_model=JourneyActionResponse,
    dependencies=[Depends(require_api_key)],
)
async def resume_lead_journey(
    lead_id: str,
    service: JourneyService = Depends(get_journey_service),
):
    """Lift any suppression and force the journey out of PAUSE."""
    try:
        result = await service.set_manual_suppression(lead_id, None)
    except LeadNotFoundError:
        raise HTTPException(status_code=404, detail="Lead not found")
    except LockTimeoutError:
        raise HTTPException(status_code=409, detail="Journey is busy, retry shortly")
    return _action_response(lead_id, result)


@router.post(
    "/api/v1/leads/{lead_id}/journey/activity",
    response_model=JourneyActionResponse,
    dependencies=[Depends(require_api_key)],
)
async def record_lead_activity(
    lead_id: str,
    payload: Optional[UserActivityRequest] = None,
    service: JourneyService = Depends(get_journey_service),
):
    """Inbound user message (called by the channel webhook after verification)."""
    occurred_at = payload.occurred_at if payload else None
    try:
        result = await service.record_user_activity(lead_id, occurred_at)
    except LeadNotFoundError:
        raise HTTPException(status_code=404, detail="Lead not found")
    except LockTimeoutError:
        raise HTTPException(status_code=409, detail="Journey is busy, retry shortly")
    return _action_response(lead_id, result)


@router.post(
    "/api/v1/contacts/{contact_id}/consent",
    response_model=ConsentRecordResponse,
    dependencies=[Depends(require_api_key)],
)
async def record_contact_consent(
    contact_id: str,
    payload: ConsentRecordRequest,
    service: JourneyService = Depends(get_journey_service),
):
    """Append a consent event to the ledger."""
    try:
        result = await service.record_contact_consent(
            contact_id, payload.status, channel=payload.channel, proof=payload.proof,
        )
    except (ContactNotFoundError, ValueError):
        raise HTTPException(status_code=404, detail="Contact not found")
    except LockTimeoutError:
        raise HTTPException(status_code=409, detail="Journey is busy, retry shortly")
    return ConsentRecordResponse(**result)
