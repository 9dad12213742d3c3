"""
Tests for leadcall/services/contact.py - submission, dispatch bookkeeping,
outcome application and channel intents.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from leadcall.models import Appointment, CallAttempt, DispatchStatus, EventLog, LeadStatus, RetryKind
from leadcall.schemas.leads import LeadSubmission
from leadcall.services.contact import (
    AttemptInFlightError,
    AttemptsExhaustedError,
    STALE_OUTCOME,
    find_lead_awaiting_choice,
    has_in_flight_attempt,
    latest_attempt,
    next_appointment_at,
    next_attempt_no,
)
from leadcall.services.messaging import ChannelIntent
from leadcall.services.outcome_classifier import CallOutcome, Classification
from leadcall.services.retry_scheduler import RetryAction
from leadcall.utils.timezone import as_utc

T0 = datetime(2026, 3, 10, 13, 0, tzinfo=timezone.utc)
NO_ANSWER = Classification(CallOutcome.NO_HUMAN_REACHED)
VOICEMAIL = Classification(CallOutcome.NO_HUMAN_REACHED, in_voicemail=True)


async def _attempts(db, lead_id) -> list[CallAttempt]:
    result = await db.execute(
        select(CallAttempt).where(CallAttempt.lead_id == lead_id).order_by(CallAttempt.attempt_no)
    )
    return list(result.scalars().all())


async def _in_progress_lead(db, lead_factory, contact, **overrides):
    """Lead whose first call has just been dispatched."""
    lead = await lead_factory(**overrides)
    attempt = await contact.dispatch_next_attempt(db, lead)
    return lead, attempt


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


class TestSubmitLead:
    async def test_creates_lead_and_dispatches_first_attempt(self, db, contact, gateway):
        lead, attempt = await contact.submit_lead(db, LeadSubmission(
            name="  João Pereira ", phone="+55 11 98765-4321", city="Campinas", reason="dor no peito",
        ))

        assert lead.status == LeadStatus.IN_PROGRESS.value
        assert lead.phone == "+5511987654321"
        assert lead.name == "João Pereira"
        assert lead.timezone == "America/Sao_Paulo"
        assert lead.max_attempts == 3
        assert attempt.attempt_no == 1
        assert attempt.dispatch_status == DispatchStatus.DISPATCHED.value
        assert attempt.call_handle == "call_0001"

        to, variables = gateway.calls[0]
        assert to == "+5511987654321"
        assert variables["first_name"] == "João"
        assert variables["attempt_no"] == "1"
        assert variables["lead_id"] == str(lead.id)

    async def test_dispatch_failure_marks_attempt_failed(self, db, contact, gateway, dispatch_error):
        gateway.fail_with = dispatch_error
        lead, attempt = await contact.submit_lead(db, LeadSubmission(name="Ana", phone="+5511900000000"))

        assert lead.status == LeadStatus.DISPATCH_FAILED.value
        assert lead.next_retry_at is None
        assert attempt.dispatch_status == DispatchStatus.FAILED.value
        assert attempt.ended_at is not None
        assert attempt.call_handle is None
        assert "503" in attempt.error_message

    async def test_custom_max_attempts(self, db, contact):
        lead, _ = await contact.submit_lead(
            db, LeadSubmission(name="Ana", phone="+5511900000000", max_attempts=5),
        )
        assert lead.max_attempts == 5

    async def test_writes_audit_trail(self, db, contact):
        lead, _ = await contact.submit_lead(db, LeadSubmission(name="Ana", phone="+5511900000000"))
        result = await db.execute(select(EventLog.action).where(EventLog.lead_id == lead.id))
        actions = list(result.scalars().all())
        assert "lead_submitted" in actions
        assert actions.count("status_changed") == 2


# ---------------------------------------------------------------------------
# Dispatch bookkeeping
# ---------------------------------------------------------------------------


class TestDispatchNextAttempt:
    async def test_refuses_while_call_in_flight(self, db, lead_factory, contact):
        lead, _ = await _in_progress_lead(db, lead_factory, contact)
        lead.status = LeadStatus.RETRY_PENDING.value
        lead.next_retry_at = T0 + timedelta(hours=1)
        with pytest.raises(AttemptInFlightError):
            await contact.dispatch_next_attempt(db, lead)

    async def test_refuses_past_max_attempts(self, db, lead_factory, contact):
        lead = await lead_factory(status=LeadStatus.DISPATCH_FAILED.value, max_attempts=1)
        db.add(CallAttempt(
            lead_id=lead.id, attempt_no=1, dispatch_status=DispatchStatus.FAILED.value,
            scheduled_at=T0, ended_at=T0,
        ))
        await db.commit()
        with pytest.raises(AttemptsExhaustedError):
            await contact.dispatch_next_attempt(db, lead)

    async def test_failed_attempt_number_is_not_reused(self, db, lead_factory, contact, gateway, dispatch_error):
        gateway.fail_with = dispatch_error
        lead, failed = await _in_progress_lead(db, lead_factory, contact)
        assert failed.attempt_no == 1

        gateway.fail_with = None
        retried = await contact.dispatch_next_attempt(db, lead)
        assert retried.attempt_no == 2
        assert [a.attempt_no for a in await _attempts(db, lead.id)] == [1, 2]
        assert lead.status == LeadStatus.IN_PROGRESS.value

    async def test_dispatch_failure_event_records_backoff_kind(self, db, lead_factory, contact, gateway, dispatch_error):
        gateway.fail_with = dispatch_error
        lead, _ = await _in_progress_lead(db, lead_factory, contact)
        result = await db.execute(
            select(EventLog).where(EventLog.lead_id == lead.id).order_by(EventLog.created_at.desc())
        )
        events = [e for e in result.scalars().all() if e.data and e.data.get("to") == "dispatch_failed"]
        assert events[0].data["retry_kind"] == RetryKind.DISPATCH_BACKOFF.value


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class TestApplyCallOutcome:
    async def test_no_answer_schedules_business_hours_retry(self, db, lead_factory, contact):
        lead, attempt = await _in_progress_lead(db, lead_factory, contact)
        attempt.ended_at = T0
        decision = await contact.apply_call_outcome(db, lead, attempt, NO_ANSWER)

        assert decision.action == RetryAction.RETRY
        assert lead.status == LeadStatus.RETRY_PENDING.value
        assert lead.retry_kind == RetryKind.BUSINESS_HOURS.value
        # 10:00 local + 2h lookahead
        assert lead.next_retry_at == T0 + timedelta(hours=2)

    async def test_voicemail_schedules_short_callback(self, db, lead_factory, contact):
        lead, attempt = await _in_progress_lead(db, lead_factory, contact)
        await contact.apply_call_outcome(db, lead, attempt, VOICEMAIL)

        assert lead.retry_kind == RetryKind.SHORT_CALLBACK.value
        assert timedelta(minutes=15) < lead.next_retry_at - T0 < timedelta(minutes=25)

    async def test_identity_mismatch_is_terminal(self, db, lead_factory, contact):
        lead, attempt = await _in_progress_lead(db, lead_factory, contact)
        await contact.apply_call_outcome(db, lead, attempt, Classification(CallOutcome.IDENTITY_MISMATCH))
        assert lead.status == LeadStatus.IDENTITY_MISMATCH.value
        assert lead.next_retry_at is None

    async def test_resolved_qualifies(self, db, lead_factory, contact):
        lead, attempt = await _in_progress_lead(db, lead_factory, contact)
        await contact.apply_call_outcome(db, lead, attempt, Classification(CallOutcome.RESOLVED_OTHER))
        assert lead.status == LeadStatus.QUALIFIED.value

    async def test_last_attempt_escalates(self, db, lead_factory, contact):
        lead, attempt = await _in_progress_lead(db, lead_factory, contact, max_attempts=1)
        decision = await contact.apply_call_outcome(db, lead, attempt, VOICEMAIL)
        assert decision.action == RetryAction.ESCALATE
        assert lead.status == LeadStatus.ASYNC_OUTREACH.value
        assert lead.preferred_channel == "async_message"
        assert lead.next_retry_at is None

    async def test_ignored_when_lead_not_in_progress(self, db, lead_factory, contact):
        lead, attempt = await _in_progress_lead(db, lead_factory, contact)
        await contact.apply_call_outcome(db, lead, attempt, Classification(CallOutcome.RESOLVED_OTHER))
        assert await contact.apply_call_outcome(db, lead, attempt, NO_ANSWER) is None
        assert lead.status == LeadStatus.QUALIFIED.value

    async def test_superseded_attempt_ignored(self, db, lead_factory, contact):
        lead, first = await _in_progress_lead(db, lead_factory, contact)
        db.add(CallAttempt(
            lead_id=lead.id, attempt_no=2, dispatch_status=DispatchStatus.DISPATCHED.value,
            call_handle="call_newer", scheduled_at=T0,
        ))
        await db.commit()
        assert await contact.apply_call_outcome(db, lead, first, NO_ANSWER) is None
        assert lead.status == LeadStatus.IN_PROGRESS.value

    async def test_appointment_conflict_pushes_retry(self, db, lead_factory, contact):
        lead, attempt = await _in_progress_lead(db, lead_factory, contact)
        # Candidate is 12:00 local; appointment at 13:00 local same day
        db.add(Appointment(lead_id=lead.id, start_at=T0 + timedelta(hours=3)))
        await db.commit()

        await contact.apply_call_outcome(db, lead, attempt, NO_ANSWER)
        # Pushed to Wednesday 08:00 local (11:00 UTC)
        assert as_utc(lead.next_retry_at) == datetime(2026, 3, 11, 11, 0, tzinfo=timezone.utc)


class TestCloseStaleAttempt:
    async def test_dispatched_attempt_treated_as_no_answer(self, db, lead_factory, contact):
        lead, attempt = await _in_progress_lead(db, lead_factory, contact)
        decision = await contact.close_stale_attempt(db, attempt)
        assert decision.action == RetryAction.RETRY
        assert attempt.outcome == STALE_OUTCOME
        assert attempt.ended_at is not None
        assert lead.status == LeadStatus.RETRY_PENDING.value
        assert lead.retry_kind == RetryKind.BUSINESS_HOURS.value

    async def test_pending_attempt_becomes_dispatch_failure(self, db, lead_factory, contact):
        lead = await lead_factory(status=LeadStatus.DISPATCHING.value)
        attempt = CallAttempt(lead_id=lead.id, attempt_no=1, scheduled_at=T0 - timedelta(hours=3))
        db.add(attempt)
        await db.commit()

        assert await contact.close_stale_attempt(db, attempt) is None
        assert attempt.dispatch_status == DispatchStatus.FAILED.value
        assert lead.status == LeadStatus.DISPATCH_FAILED.value

    async def test_already_ended_is_noop(self, db, lead_factory, contact):
        lead, attempt = await _in_progress_lead(db, lead_factory, contact)
        attempt.ended_at = T0
        assert await contact.close_stale_attempt(db, attempt) is None
        assert lead.status == LeadStatus.IN_PROGRESS.value


# ---------------------------------------------------------------------------
# Channel intents
# ---------------------------------------------------------------------------


class TestApplyChannelIntent:
    async def _awaiting(self, db, lead_factory):
        lead = await lead_factory(status=LeadStatus.AWAITING_CHANNEL_CHOICE.value, max_attempts=1)
        db.add(CallAttempt(
            lead_id=lead.id, attempt_no=1, dispatch_status=DispatchStatus.DISPATCHED.value,
            call_handle="call_old", scheduled_at=T0 - timedelta(hours=5), ended_at=T0 - timedelta(hours=5),
        ))
        await db.commit()
        return lead

    async def test_voice_intent_dispatches_extra_attempt(self, db, lead_factory, contact, gateway):
        lead = await self._awaiting(db, lead_factory)
        attempt = await contact.apply_channel_intent(db, lead, ChannelIntent.VOICE)

        assert attempt.attempt_no == 2
        assert lead.max_attempts == 2
        assert lead.preferred_channel == "voice"
        assert lead.status == LeadStatus.IN_PROGRESS.value
        assert len(gateway.calls) == 1

    async def test_async_intent_records_preference(self, db, lead_factory, contact, gateway):
        lead = await self._awaiting(db, lead_factory)
        assert await contact.apply_channel_intent(db, lead, ChannelIntent.ASYNC) is None
        assert lead.status == LeadStatus.AWAITING_CHANNEL_CHOICE.value
        assert lead.preferred_channel == "async_message"
        assert gateway.calls == []

    async def test_async_intent_resolved_qualifies(self, db, lead_factory, contact):
        lead = await self._awaiting(db, lead_factory)
        await contact.apply_channel_intent(db, lead, ChannelIntent.ASYNC, resolved=True)
        assert lead.status == LeadStatus.QUALIFIED.value

    async def test_unknown_intent_changes_nothing(self, db, lead_factory, contact):
        lead = await self._awaiting(db, lead_factory)
        await contact.apply_channel_intent(db, lead, ChannelIntent.UNKNOWN)
        assert lead.status == LeadStatus.AWAITING_CHANNEL_CHOICE.value

    async def test_ignored_outside_awaiting(self, db, lead_factory, contact, gateway):
        lead = await lead_factory(status=LeadStatus.QUALIFIED.value)
        assert await contact.apply_channel_intent(db, lead, ChannelIntent.VOICE) is None
        assert gateway.calls == []


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    async def test_next_attempt_no_starts_at_one(self, db, lead_factory):
        lead = await lead_factory()
        assert await next_attempt_no(db, lead.id) == 1
        assert await latest_attempt(db, lead.id) is None

    async def test_in_flight_ignores_ended_and_failed_rows(self, db, lead_factory):
        lead = await lead_factory(status=LeadStatus.DISPATCH_FAILED.value)
        db.add_all([
            CallAttempt(
                lead_id=lead.id, attempt_no=1, dispatch_status=DispatchStatus.DISPATCHED.value,
                call_handle="done", scheduled_at=T0, ended_at=T0,
            ),
            CallAttempt(
                lead_id=lead.id, attempt_no=2, dispatch_status=DispatchStatus.FAILED.value,
                scheduled_at=T0,
            ),
        ])
        await db.commit()
        assert await has_in_flight_attempt(db, lead.id) is False

        db.add(CallAttempt(
            lead_id=lead.id, attempt_no=3, dispatch_status=DispatchStatus.PENDING.value, scheduled_at=T0,
        ))
        await db.commit()
        assert await has_in_flight_attempt(db, lead.id) is True

    async def test_next_appointment_skips_past_and_cancelled(self, db, lead_factory):
        lead = await lead_factory()
        db.add_all([
            Appointment(lead_id=lead.id, start_at=T0 - timedelta(hours=1)),
            Appointment(lead_id=lead.id, start_at=T0 + timedelta(hours=1), status="cancelled"),
            Appointment(lead_id=lead.id, start_at=T0 + timedelta(hours=5)),
        ])
        await db.commit()
        found = await next_appointment_at(db, lead.id, T0)
        assert as_utc(found) == T0 + timedelta(hours=5)

    async def test_find_lead_by_whatsapp_address(self, db, lead_factory):
        lead = await lead_factory(status=LeadStatus.AWAITING_CHANNEL_CHOICE.value, whatsapp="+5511911112222")
        assert (await find_lead_awaiting_choice(db, "whatsapp:+5511911112222")).id == lead.id

    async def test_find_lead_by_phone(self, db, lead_factory):
        lead = await lead_factory(
            status=LeadStatus.AWAITING_CHANNEL_CHOICE.value, whatsapp=None, phone="+5511933334444",
        )
        assert (await find_lead_awaiting_choice(db, "whatsapp:+5511933334444")).id == lead.id

    async def test_find_lead_ignores_other_statuses(self, db, lead_factory):
        await lead_factory(status=LeadStatus.IN_PROGRESS.value, whatsapp="+5511955556666")
        assert await find_lead_awaiting_choice(db, "whatsapp:+5511955556666") is None
