"""
Lead endpoints - submission, status lookup, manual retry and async resolution.
"""
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadcall.api.deps import get_contact_service
from leadcall.database import get_db
from leadcall.models.call_attempt import CallAttempt
from leadcall.models.lead import Lead, LeadStatus
from leadcall.schemas.leads import (
    AttemptSummary,
    LeadActionResponse,
    LeadStatusResponse,
    LeadSubmission,
)
from leadcall.services.contact import (
    AttemptInFlightError,
    AttemptsExhaustedError,
    ContactService,
)
from leadcall.services.lead_state import IllegalTransitionError
from leadcall.services.messaging import ChannelIntent
from leadcall.utils.locks import LockTimeoutError, lead_lock
from leadcall.utils.logging import mask_phone

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/lead", tags=["leads"])


def _action_response(lead: Lead, attempt: CallAttempt) -> LeadActionResponse:
    return LeadActionResponse(
        ok=attempt.call_handle is not None,
        lead_id=str(lead.id),
        status=lead.status,
        attempt_no=attempt.attempt_no,
        call_handle=attempt.call_handle,
        error=attempt.error_message,
    )


async def _load_lead(db: AsyncSession, lead_id: str) -> Lead:
    try:
        lead_uuid = uuid.UUID(lead_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid lead id")
    lead = await db.get(Lead, lead_uuid)
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


@router.post("/submit", response_model=LeadActionResponse)
async def submit_lead(
    payload: LeadSubmission,
    db: AsyncSession = Depends(get_db),
    contact: ContactService = Depends(get_contact_service),
):
    """Create a lead and place the first call right away."""
    lead, attempt = await contact.submit_lead(db, payload)
    return _action_response(lead, attempt)


@router.get("/{lead_id}", response_model=LeadStatusResponse)
async def get_lead(lead_id: str, db: AsyncSession = Depends(get_db)):
    lead = await _load_lead(db, lead_id)
    result = await db.execute(
        select(CallAttempt)
        .where(CallAttempt.lead_id == lead.id)
        .order_by(CallAttempt.attempt_no)
    )
    attempts = result.scalars().all()

    return LeadStatusResponse(
        id=str(lead.id),
        name=lead.name,
        phone_masked=mask_phone(lead.phone),
        status=lead.status,
        preferred_channel=lead.preferred_channel,
        next_retry_at=lead.next_retry_at,
        retry_kind=lead.retry_kind,
        max_attempts=lead.max_attempts,
        attempts=[
            AttemptSummary(
                attempt_no=a.attempt_no,
                dispatch_status=a.dispatch_status,
                call_handle=a.call_handle,
                scheduled_at=a.scheduled_at,
                started_at=a.started_at,
                ended_at=a.ended_at,
                outcome=a.outcome,
            )
            for a in attempts
        ],
        created_at=lead.created_at,
    )


@router.post("/{lead_id}/retry", response_model=LeadActionResponse)
async def retry_lead(
    lead_id: str,
    db: AsyncSession = Depends(get_db),
    contact: ContactService = Depends(get_contact_service),
):
    """Re-dispatch a lead now, if it is waiting on a retry or a failed dispatch."""
    lead = await _load_lead(db, lead_id)
    if not contact.is_retryable(lead):
        raise HTTPException(status_code=409, detail=f"Lead is {lead.status}, not retryable")

    try:
        async with lead_lock(str(lead.id)):
            await db.refresh(lead)
            attempt = await contact.dispatch_next_attempt(db, lead)
    except LockTimeoutError:
        raise HTTPException(status_code=409, detail="Lead is being processed")
    except (AttemptInFlightError, AttemptsExhaustedError, IllegalTransitionError) as e:
        logger.info("Manual retry for lead %s refused: %s", lead_id[:8], str(e))
        raise HTTPException(status_code=409, detail=str(e))

    return _action_response(lead, attempt)


@router.post("/{lead_id}/resolved", response_model=LeadActionResponse)
async def mark_lead_resolved(
    lead_id: str,
    db: AsyncSession = Depends(get_db),
    contact: ContactService = Depends(get_contact_service),
):
    """
    The async-channel conversation settled the lead's request. Called by the
    collaborator that reads the WhatsApp thread; only valid while the lead
    waits for a channel choice.
    """
    lead = await _load_lead(db, lead_id)
    try:
        async with lead_lock(str(lead.id)):
            await db.refresh(lead)
            if lead.status != LeadStatus.AWAITING_CHANNEL_CHOICE.value:
                raise HTTPException(status_code=409, detail=f"Lead is {lead.status}, not awaiting a channel choice")
            await contact.apply_channel_intent(db, lead, ChannelIntent.ASYNC, resolved=True)
            await db.commit()
    except LockTimeoutError:
        raise HTTPException(status_code=409, detail="Lead is being processed")

    logger.info("Lead %s resolved over async channel", lead_id[:8], extra={"lead_id": lead_id})
    return LeadActionResponse(ok=True, lead_id=str(lead.id), status=lead.status)
