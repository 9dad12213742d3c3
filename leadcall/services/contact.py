"""
Contact service - drives a lead through dispatches and call outcomes.

Every path that places a call or reacts to one goes through here:
- lead submission (first attempt)
- retry sweep / dispatch-failure recovery / manual retry
- call-ended webhooks and stale in-flight attempts
- inbound channel-preference answers from the async channel

Dependencies (gateway, policy, random source, clock) are injected so the
whole flow runs against fakes in tests.
"""
import logging
import random
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from leadcall.models.appointment import Appointment
from leadcall.models.call_attempt import CallAttempt, DispatchStatus
from leadcall.models.event_log import EventLog
from leadcall.models.lead import Lead, LeadStatus, ContactChannel, RetryKind
from leadcall.schemas.leads import LeadSubmission
from leadcall.services.dispatch import DispatchGateway, build_call_variables
from leadcall.services.lead_state import transition, RETRYABLE_STATUSES
from leadcall.services.messaging import ChannelIntent, strip_channel_prefix
from leadcall.services.outcome_classifier import Classification, CallOutcome
from leadcall.services.retry_scheduler import (
    BusinessHoursPolicy,
    RetryAction,
    RetryDecision,
    compute_next_retry,
)
from leadcall.utils.logging import mask_phone
from leadcall.utils.timezone import utcnow

logger = logging.getLogger(__name__)

STALE_OUTCOME = "stale_no_webhook"
DISPATCH_FAILED_OUTCOME = "dispatch_failed"


class AttemptInFlightError(Exception):
    """A dispatched attempt for this lead has not ended yet."""
    pass


class AttemptsExhaustedError(Exception):
    """The next attempt number would exceed the lead's max_attempts."""
    pass


# ---------------------------------------------------------------------------
# Attempt queries
# ---------------------------------------------------------------------------

async def latest_attempt(db: AsyncSession, lead_id: uuid.UUID) -> Optional[CallAttempt]:
    result = await db.execute(
        select(CallAttempt)
        .where(CallAttempt.lead_id == lead_id)
        .order_by(CallAttempt.attempt_no.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def next_attempt_no(db: AsyncSession, lead_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.max(CallAttempt.attempt_no)).where(CallAttempt.lead_id == lead_id)
    )
    return (result.scalar() or 0) + 1


async def has_in_flight_attempt(db: AsyncSession, lead_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(CallAttempt.id)
        .where(
            and_(
                CallAttempt.lead_id == lead_id,
                CallAttempt.ended_at.is_(None),
                CallAttempt.dispatch_status != DispatchStatus.FAILED.value,
            )
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def find_attempt_by_handle(db: AsyncSession, call_handle: str) -> Optional[CallAttempt]:
    result = await db.execute(
        select(CallAttempt).where(CallAttempt.call_handle == call_handle).limit(1)
    )
    return result.scalar_one_or_none()


async def next_appointment_at(
    db: AsyncSession, lead_id: uuid.UUID, now: datetime
) -> Optional[datetime]:
    """Nearest confirmed appointment strictly in the future."""
    result = await db.execute(
        select(Appointment.start_at)
        .where(
            and_(
                Appointment.lead_id == lead_id,
                Appointment.status == "confirmed",
                Appointment.start_at > now,
            )
        )
        .order_by(Appointment.start_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_lead_awaiting_choice(db: AsyncSession, address: str) -> Optional[Lead]:
    """Lead waiting on a channel answer whose WhatsApp handle or phone matches `address`."""
    bare = strip_channel_prefix(address)
    if not bare:
        return None
    result = await db.execute(
        select(Lead)
        .where(
            and_(
                Lead.status == LeadStatus.AWAITING_CHANNEL_CHOICE.value,
                or_(
                    Lead.whatsapp == bare,
                    Lead.whatsapp == f"whatsapp:{bare}",
                    Lead.phone == bare,
                ),
            )
        )
        .order_by(Lead.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ContactService:
    """Lead contact lifecycle operations."""

    def __init__(
        self,
        gateway: DispatchGateway,
        policy: Optional[BusinessHoursPolicy] = None,
        rng=None,
        clock: Optional[Callable[[], datetime]] = None,
        default_max_attempts: int = 3,
        default_timezone: Optional[str] = None,
    ):
        self.gateway = gateway
        self.policy = policy or BusinessHoursPolicy()
        self.rng = rng or random.Random()
        self.clock = clock or utcnow
        self.default_max_attempts = default_max_attempts
        self.default_timezone = default_timezone or self.policy.default_timezone

    @classmethod
    def from_settings(cls, gateway: DispatchGateway, settings=None) -> "ContactService":
        if settings is None:
            from leadcall.config import get_settings
            settings = get_settings()
        return cls(
            gateway=gateway,
            policy=BusinessHoursPolicy.from_settings(settings),
            default_max_attempts=settings.default_max_attempts,
            default_timezone=settings.default_timezone,
        )

    def now(self) -> datetime:
        return self.clock()

    # -- submission ---------------------------------------------------------

    async def submit_lead(self, db: AsyncSession, submission: LeadSubmission) -> tuple[Lead, CallAttempt]:
        """Create a lead in `new` and immediately place attempt #1."""
        channel = submission.preferred_channel
        if channel not in (ContactChannel.VOICE.value, ContactChannel.ASYNC_MESSAGE.value):
            channel = ContactChannel.VOICE.value

        lead = Lead(
            name=submission.name.strip(),
            phone=submission.phone,
            email=(submission.email or "").strip() or None,
            whatsapp=submission.whatsapp,
            city=(submission.city or "").strip() or None,
            specialty=(submission.specialty or "").strip() or None,
            reason=(submission.reason or "").strip() or None,
            preferred_language=submission.preferred_language,
            preferred_channel=channel,
            timezone=submission.timezone or self.default_timezone,
            source=submission.source,
            status=LeadStatus.NEW.value,
            max_attempts=submission.max_attempts or self.default_max_attempts,
        )
        db.add(lead)
        await db.flush()

        db.add(EventLog(
            lead_id=lead.id,
            action="lead_submitted",
            message=f"Lead submitted (source={submission.source or 'unknown'})",
        ))
        logger.info("Lead %s submitted for %s", str(lead.id)[:8], mask_phone(lead.phone))

        attempt = await self.dispatch_next_attempt(db, lead)
        return lead, attempt

    # -- dispatch -----------------------------------------------------------

    async def dispatch_next_attempt(self, db: AsyncSession, lead: Lead) -> CallAttempt:
        """
        Place the next call for `lead`.

        The attempt row is committed before the gateway call so a concurrent
        sweep sees it as in flight. Gateway failures never escape: the attempt is
        marked failed and the lead lands in dispatch_failed.
        """
        if await has_in_flight_attempt(db, lead.id):
            raise AttemptInFlightError(f"Lead {str(lead.id)[:8]} already has a call in flight")

        attempt_no = await next_attempt_no(db, lead.id)
        if attempt_no > lead.max_attempts:
            raise AttemptsExhaustedError(
                f"Lead {str(lead.id)[:8]} used {attempt_no - 1}/{lead.max_attempts} attempts"
            )

        now = self.now()
        transition(lead, LeadStatus.DISPATCHING, db=db, reason=f"dispatching attempt #{attempt_no}", now=now)

        attempt = CallAttempt(
            lead_id=lead.id,
            attempt_no=attempt_no,
            dispatch_status=DispatchStatus.PENDING.value,
            scheduled_at=now,
        )
        db.add(attempt)
        await db.commit()

        try:
            result = await self.gateway.dispatch(lead.phone, build_call_variables(lead, attempt_no))
        except Exception as e:
            logger.error(
                "Dispatch of attempt #%d for lead %s failed: %s",
                attempt_no, str(lead.id)[:8], str(e),
                extra={"lead_id": str(lead.id), "attempt_no": attempt_no},
            )
            attempt.dispatch_status = DispatchStatus.FAILED.value
            attempt.ended_at = self.now()
            attempt.outcome = DISPATCH_FAILED_OUTCOME
            attempt.error_message = str(e)[:500]
            transition(
                lead, LeadStatus.DISPATCH_FAILED, db=db,
                reason=f"attempt #{attempt_no} dispatch failed",
                data={"error": str(e)[:200], "retry_kind": RetryKind.DISPATCH_BACKOFF.value},
            )
            await db.commit()
            return attempt

        attempt.dispatch_status = DispatchStatus.DISPATCHED.value
        attempt.call_handle = result.call_handle
        transition(
            lead, LeadStatus.IN_PROGRESS, db=db,
            reason=f"attempt #{attempt_no} dispatched",
            data={"call_handle": result.call_handle, "attempt_no": attempt_no},
        )
        await db.commit()

        logger.info(
            "Lead %s attempt #%d dispatched as %s",
            str(lead.id)[:8], attempt_no, result.call_handle,
            extra={"lead_id": str(lead.id), "call_id": result.call_handle, "attempt_no": attempt_no},
        )
        return attempt

    async def escalate_to_async(self, db: AsyncSession, lead: Lead, reason: str) -> None:
        transition(lead, LeadStatus.ASYNC_OUTREACH, db=db, reason=reason)

    # -- outcomes -----------------------------------------------------------

    async def apply_call_outcome(
        self,
        db: AsyncSession,
        lead: Lead,
        attempt: CallAttempt,
        classification: Classification,
    ) -> Optional[RetryDecision]:
        """
        Turn a classified call end into a lead transition.
        Returns None when the outcome is ignored (lead moved on, or the
        attempt is not the lead's latest).
        """
        if lead.status != LeadStatus.IN_PROGRESS.value:
            logger.info(
                "Ignoring outcome of attempt #%d: lead %s is %s",
                attempt.attempt_no, str(lead.id)[:8], lead.status,
            )
            return None

        latest = await latest_attempt(db, lead.id)
        if latest is not None and latest.id != attempt.id:
            logger.info(
                "Ignoring outcome of superseded attempt #%d for lead %s (latest #%d)",
                attempt.attempt_no, str(lead.id)[:8], latest.attempt_no,
            )
            return None

        outcome_data = {
            "attempt_no": attempt.attempt_no,
            "outcome": classification.outcome.value,
            "in_voicemail": classification.in_voicemail,
        }

        if classification.outcome == CallOutcome.IDENTITY_MISMATCH:
            transition(lead, LeadStatus.IDENTITY_MISMATCH, db=db, reason="identity mismatch", data=outcome_data)
            return RetryDecision.stop()

        if classification.outcome == CallOutcome.RESOLVED_OTHER:
            transition(lead, LeadStatus.QUALIFIED, db=db, reason="conversation completed", data=outcome_data)
            return RetryDecision.stop()

        now = self.now()
        appointment_at = await next_appointment_at(db, lead.id, now)
        decision = compute_next_retry(
            next_attempt_no=attempt.attempt_no + 1,
            max_attempts=lead.max_attempts,
            classification=classification,
            timezone_name=lead.timezone,
            appointment_at=appointment_at,
            now=now,
            rng=self.rng,
            policy=self.policy,
        )

        if decision.action == RetryAction.ESCALATE:
            transition(
                lead, LeadStatus.ASYNC_OUTREACH, db=db,
                reason=f"no human reached after {attempt.attempt_no} attempts",
                data=outcome_data,
            )
        elif decision.action == RetryAction.RETRY:
            transition(
                lead, LeadStatus.RETRY_PENDING, db=db,
                reason="voicemail" if classification.in_voicemail else "no answer",
                retry_at=decision.retry_at,
                retry_kind=decision.kind,
                data=outcome_data,
                now=now,
            )
        return decision

    async def close_stale_attempt(self, db: AsyncSession, attempt: CallAttempt) -> Optional[RetryDecision]:
        """
        Close an attempt whose call-ended event never arrived and treat it as
        unanswered. An attempt still pending (the gateway call never returned)
        is closed as a failed dispatch instead.
        """
        if attempt.ended_at is not None:
            return None
        attempt.ended_at = self.now()
        attempt.outcome = STALE_OUTCOME

        lead = await db.get(Lead, attempt.lead_id)
        if lead is None:
            return None

        if attempt.dispatch_status == DispatchStatus.PENDING.value:
            attempt.dispatch_status = DispatchStatus.FAILED.value
            logger.warning(
                "Closing stuck pending attempt #%d for lead %s",
                attempt.attempt_no, str(lead.id)[:8],
            )
            if lead.status == LeadStatus.DISPATCHING.value:
                transition(
                    lead, LeadStatus.DISPATCH_FAILED, db=db,
                    reason=f"attempt #{attempt.attempt_no} never confirmed by provider",
                )
            return None

        logger.warning(
            "Closing stale attempt #%d for lead %s (no call-ended event)",
            attempt.attempt_no, str(lead.id)[:8],
        )
        return await self.apply_call_outcome(
            db, lead, attempt, Classification(CallOutcome.NO_HUMAN_REACHED)
        )

    # -- async channel ------------------------------------------------------

    async def apply_channel_intent(
        self,
        db: AsyncSession,
        lead: Lead,
        intent: ChannelIntent,
        resolved: bool = False,
    ) -> Optional[CallAttempt]:
        """
        React to the person's channel answer. A voice request re-enters the
        call flow with one more attempt allowed; an async answer records the
        preference and, when the conversation is resolved, qualifies the lead.
        """
        if lead.status != LeadStatus.AWAITING_CHANNEL_CHOICE.value:
            logger.info(
                "Channel intent %s ignored: lead %s is %s",
                intent.value, str(lead.id)[:8], lead.status,
            )
            return None

        if intent == ChannelIntent.VOICE:
            lead.preferred_channel = ContactChannel.VOICE.value
            upcoming = await next_attempt_no(db, lead.id)
            if upcoming > lead.max_attempts:
                lead.max_attempts = upcoming
            return await self.dispatch_next_attempt(db, lead)

        if intent == ChannelIntent.ASYNC:
            lead.preferred_channel = ContactChannel.ASYNC_MESSAGE.value
            if resolved:
                transition(lead, LeadStatus.QUALIFIED, db=db, reason="resolved over async channel")
            else:
                db.add(EventLog(
                    lead_id=lead.id,
                    action="channel_preference_recorded",
                    message="Lead prefers to continue by message",
                ))
        return None

    def is_retryable(self, lead: Lead) -> bool:
        return lead.status in {s.value for s in RETRYABLE_STATUSES}
