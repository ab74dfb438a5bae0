"""
API request/response schemas for the journey operator endpoints.
"""
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field, model_validator


class JourneyDetailResponse(BaseModel):
    lead_id: str
    state: str
    next_action_at: Optional[datetime] = None
    last_action_at: Optional[datetime] = None
    last_user_activity_at: Optional[datetime] = None
    last_error: Optional[str] = None
    manual_suppressed_until: Optional[datetime] = None
    attempts: int = 0
    updated_at: Optional[datetime] = None


class JourneyActionResponse(BaseModel):
    lead_id: str
    state: str
    next_action_at: Optional[datetime] = None


class SuppressRequest(BaseModel):
    """Either an absolute `until` or a relative `hours`. until=null lifts the suppression."""
    until: Optional[datetime] = None
    hours: Optional[float] = Field(default=None, gt=0, le=24 * 90)

    @model_validator(mode="after")
    def _one_of(self):
        if self.until is not None and self.hours is not None:
            raise ValueError("Provide either 'until' or 'hours', not both")
        return self


class UserActivityRequest(BaseModel):
    occurred_at: Optional[datetime] = None


class ConsentRecordRequest(BaseModel):
    status: Literal["granted", "revoked", "unknown"]
    channel: str = Field(default="whatsapp", max_length=20)
    proof: Optional[dict] = None


class ConsentRecordResponse(BaseModel):
    consent_id: str
    lead_id: str
    status: str
    recorded_at: Optional[datetime] = None
    journey_rechecked: bool = False
