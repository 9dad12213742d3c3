"""
Call lifecycle webhook handling.

started  -> stamp started_at on the attempt
ended    -> classify, close the attempt, hand the outcome to the contact service
analyzed -> attach transcript/analysis, never changes lead status

Redelivered events are no-ops: an attempt with ended_at set is never
re-classified, so duplicate "ended" events cannot schedule twice.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from leadcall.models.call_attempt import CallAttempt
from leadcall.models.lead import Lead
from leadcall.schemas.call_events import (
    CallEvent,
    EVENT_ANALYZED,
    EVENT_ENDED,
    EVENT_STARTED,
    normalize_call_event,
)
from leadcall.services.contact import ContactService, find_attempt_by_handle
from leadcall.services.outcome_classifier import CLASSIFIER_VERSION, classify_call_end
from leadcall.utils.locks import lead_lock

logger = logging.getLogger(__name__)

RESULT_MISSING_CALL_ID = "missing_call_id"
RESULT_IGNORED = "ignored"
RESULT_UNKNOWN_CALL = "unknown_call"
RESULT_STARTED = "started"
RESULT_ENDED = "ended"
RESULT_DUPLICATE = "duplicate"
RESULT_ANALYZED = "analyzed"


class CallWebhookHandler:
    """Applies normalized call events to attempts and leads.

    Call-ended processing commits inside the per-lead lock; started and
    analyzed updates are left for the caller to commit.
    """

    def __init__(self, contact: ContactService):
        self.contact = contact

    async def handle(self, db: AsyncSession, raw: dict) -> str:
        event = normalize_call_event(raw)
        if not event.call_handle:
            logger.warning("Call webhook without call id (event=%s)", event.raw_event_type)
            return RESULT_MISSING_CALL_ID
        if event.event_type is None:
            logger.info(
                "Ignoring call webhook event %s for %s",
                event.raw_event_type, event.call_handle,
                extra={"call_id": event.call_handle},
            )
            return RESULT_IGNORED

        attempt = await find_attempt_by_handle(db, event.call_handle)
        if attempt is None:
            logger.info(
                "Call webhook for unknown call %s", event.call_handle,
                extra={"call_id": event.call_handle},
            )
            return RESULT_UNKNOWN_CALL

        if event.event_type == EVENT_STARTED:
            return self._handle_started(attempt)
        if event.event_type == EVENT_ENDED:
            return await self._handle_ended(db, attempt, event)
        if event.event_type == EVENT_ANALYZED:
            return self._handle_analyzed(attempt, event)
        return RESULT_IGNORED

    def _handle_started(self, attempt: CallAttempt) -> str:
        if attempt.ended_at is not None:
            logger.info(
                "Call-started event for closed attempt #%d ignored", attempt.attempt_no,
                extra={"call_id": attempt.call_handle, "attempt_no": attempt.attempt_no},
            )
            return RESULT_IGNORED
        if attempt.started_at is None:
            attempt.started_at = self.contact.now()
        return RESULT_STARTED

    async def _handle_ended(self, db: AsyncSession, attempt: CallAttempt, event: CallEvent) -> str:
        async with lead_lock(str(attempt.lead_id)):
            await db.refresh(attempt)
            result = await self._close_attempt(db, attempt, event)
            await db.commit()
            return result

    async def _close_attempt(self, db: AsyncSession, attempt: CallAttempt, event: CallEvent) -> str:
        if attempt.ended_at is not None:
            logger.info(
                "Duplicate call-ended event for %s ignored", event.call_handle,
                extra={"call_id": event.call_handle, "attempt_no": attempt.attempt_no},
            )
            return RESULT_DUPLICATE

        classification = classify_call_end(event.signals)
        signals = event.signals

        attempt.ended_at = self.contact.now()
        attempt.outcome = classification.raw_label(signals.outcome or signals.disconnect_reason)
        if event.transcript:
            attempt.transcript = event.transcript
        if event.analysis:
            attempt.analysis = {**(attempt.analysis or {}), **event.analysis}
        attempt.extra_data = {
            **(attempt.extra_data or {}),
            "classification": classification.outcome.value,
            "in_voicemail": classification.in_voicemail,
            "classifier_version": CLASSIFIER_VERSION,
        }

        logger.info(
            "Call %s ended: %r", event.call_handle, classification,
            extra={
                "call_id": event.call_handle,
                "attempt_no": attempt.attempt_no,
                "lead_id": str(attempt.lead_id),
            },
        )

        lead = await db.get(Lead, attempt.lead_id, populate_existing=True)
        if lead is None:
            logger.warning("Attempt %s has no lead", event.call_handle)
            return RESULT_ENDED

        await self.contact.apply_call_outcome(db, lead, attempt, classification)
        return RESULT_ENDED

    def _handle_analyzed(self, attempt: CallAttempt, event: CallEvent) -> str:
        if event.transcript:
            attempt.transcript = event.transcript
        if event.analysis:
            attempt.analysis = {**(attempt.analysis or {}), **event.analysis}
        return RESULT_ANALYZED
