"""
Lead submission and status schemas for the thin lead endpoints.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from leadcall.utils.phone import normalize_phone_e164


class LeadSubmission(BaseModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=6)
    email: Optional[str] = None
    whatsapp: Optional[str] = None
    city: Optional[str] = None
    specialty: Optional[str] = None
    reason: Optional[str] = None
    preferred_channel: str = "voice"
    preferred_language: Optional[str] = "Português"
    timezone: Optional[str] = None
    source: Optional[str] = None
    max_attempts: Optional[int] = Field(default=None, ge=1, le=10)

    @field_validator("phone")
    @classmethod
    def phone_must_be_e164(cls, v: str) -> str:
        normalized = normalize_phone_e164(v)
        if normalized is None:
            raise ValueError("phone is not a valid number")
        return normalized

    @field_validator("whatsapp")
    @classmethod
    def whatsapp_to_e164(cls, v: Optional[str]) -> Optional[str]:
        if not v or not v.strip():
            return None
        return normalize_phone_e164(v) or v.strip()


class AttemptSummary(BaseModel):
    attempt_no: int
    dispatch_status: str
    call_handle: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    outcome: Optional[str] = None


class LeadStatusResponse(BaseModel):
    id: str
    name: str
    phone_masked: str
    status: str
    preferred_channel: str
    next_retry_at: Optional[datetime] = None
    retry_kind: Optional[str] = None
    max_attempts: int
    attempts: list[AttemptSummary] = []
    created_at: Optional[datetime] = None


class LeadActionResponse(BaseModel):
    ok: bool
    lead_id: str
    status: str
    attempt_no: Optional[int] = None
    call_handle: Optional[str] = None
    error: Optional[str] = None


class WebhookAck(BaseModel):
    status: str = "ok"
