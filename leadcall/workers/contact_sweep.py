"""
Contact sweep - the two periodic passes that keep leads moving without a webhook.

Retry pass (every 10 minutes by default):
- close attempts whose call-ended event never arrived
- re-dispatch retry_pending leads whose next_retry_at is due
- re-dispatch dispatch_failed leads once the failure backoff has passed

Prompt pass (hourly by default):
- send the channel-preference prompt to async_outreach leads

Each lead is handled in its own session under its per-lead lock, so one bad
lead never aborts the batch. A lead that errors is parked for a short
processing backoff (in memory, separate from its voice retry timer).
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from leadcall.models.call_attempt import CallAttempt, DispatchStatus
from leadcall.models.lead import Lead, LeadStatus, RetryKind
from leadcall.services.contact import (
    ContactService,
    has_in_flight_attempt,
    latest_attempt,
    next_attempt_no,
)
from leadcall.services.lead_state import transition
from leadcall.services.messaging import AsyncChannel
from leadcall.utils.locks import LockTimeoutError, lead_lock, write_heartbeat
from leadcall.utils.logging import generate_correlation_id, set_correlation_id
from leadcall.utils.timezone import as_utc

logger = logging.getLogger(__name__)

RETRY_WORKER_NAME = "retry_sweep"
PROMPT_WORKER_NAME = "channel_prompt"

LeadHandler = Callable[[AsyncSession, Lead, datetime], Awaitable[bool]]


class ContactSweep:
    """Owns the retry and prompt loops; every collaborator is injected."""

    def __init__(
        self,
        session_factory,
        contact: ContactService,
        channel: AsyncChannel,
        min_attempt_gap: timedelta = timedelta(hours=2),
        dispatch_failure_backoff: timedelta = timedelta(minutes=15),
        stale_attempt_timeout: timedelta = timedelta(minutes=120),
        processing_backoff: timedelta = timedelta(minutes=15),
        batch_size: int = 50,
        retry_interval: int = 600,
        prompt_interval: int = 3600,
    ):
        self.session_factory = session_factory
        self.contact = contact
        self.channel = channel
        self.min_attempt_gap = min_attempt_gap
        self.dispatch_failure_backoff = dispatch_failure_backoff
        self.stale_attempt_timeout = stale_attempt_timeout
        self.processing_backoff = processing_backoff
        self.batch_size = batch_size
        self.retry_interval = retry_interval
        self.prompt_interval = prompt_interval
        self._backoff_until: dict[uuid.UUID, datetime] = {}

    @classmethod
    def from_settings(
        cls,
        session_factory=None,
        contact: Optional[ContactService] = None,
        channel: Optional[AsyncChannel] = None,
        settings=None,
    ) -> "ContactSweep":
        if settings is None:
            from leadcall.config import get_settings
            settings = get_settings()
        if session_factory is None:
            from leadcall.database import get_session_factory
            session_factory = get_session_factory()
        if contact is None:
            from leadcall.services.dispatch import RetellDispatchGateway
            contact = ContactService.from_settings(RetellDispatchGateway.from_settings(settings), settings)
        if channel is None:
            from leadcall.services.messaging import TwilioWhatsAppChannel
            channel = TwilioWhatsAppChannel.from_settings(settings)
        return cls(
            session_factory=session_factory,
            contact=contact,
            channel=channel,
            min_attempt_gap=timedelta(hours=settings.min_attempt_gap_hours),
            dispatch_failure_backoff=timedelta(minutes=settings.dispatch_failure_backoff_minutes),
            stale_attempt_timeout=timedelta(minutes=settings.stale_attempt_timeout_minutes),
            processing_backoff=timedelta(minutes=settings.dispatch_failure_backoff_minutes),
            batch_size=settings.sweep_batch_size,
            retry_interval=settings.retry_sweep_interval_seconds,
            prompt_interval=settings.channel_prompt_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def run_retry_loop(self) -> None:
        logger.info("Retry sweep started (interval=%ds)", self.retry_interval)
        while True:
            set_correlation_id(generate_correlation_id())
            try:
                processed = await self.run_retry_pass()
                if processed > 0:
                    logger.info("Retry sweep processed %d leads", processed)
            except Exception as e:
                logger.error("Retry sweep error: %s", str(e), exc_info=True)

            await write_heartbeat(RETRY_WORKER_NAME, ttl=self.retry_interval * 3)
            await asyncio.sleep(self.retry_interval)

    async def run_prompt_loop(self) -> None:
        logger.info("Channel prompt sweep started (interval=%ds)", self.prompt_interval)
        while True:
            set_correlation_id(generate_correlation_id())
            try:
                prompted = await self.run_prompt_pass()
                if prompted > 0:
                    logger.info("Channel prompt sweep prompted %d leads", prompted)
            except Exception as e:
                logger.error("Channel prompt sweep error: %s", str(e), exc_info=True)

            await write_heartbeat(PROMPT_WORKER_NAME, ttl=self.prompt_interval * 3)
            await asyncio.sleep(self.prompt_interval)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_retry_pass(self) -> int:
        """One retry tick. Returns the number of leads acted on."""
        now = self.contact.now()
        processed = await self._close_stale_attempts(now)

        for lead_id in await self._select_lead_ids(
            and_(
                Lead.status == LeadStatus.RETRY_PENDING.value,
                Lead.next_retry_at <= now,
            ),
            order_by=Lead.next_retry_at,
        ):
            if await self._process_lead(lead_id, now, self._handle_retry_pending):
                processed += 1

        for lead_id in await self._select_lead_ids(
            Lead.status == LeadStatus.DISPATCH_FAILED.value,
            order_by=Lead.updated_at,
        ):
            if await self._process_lead(lead_id, now, self._handle_dispatch_failed):
                processed += 1

        return processed

    async def run_prompt_pass(self) -> int:
        """One prompt tick. Returns the number of leads prompted."""
        now = self.contact.now()
        prompted = 0
        for lead_id in await self._select_lead_ids(
            Lead.status == LeadStatus.ASYNC_OUTREACH.value,
            order_by=Lead.updated_at,
        ):
            if await self._process_lead(lead_id, now, self._handle_async_outreach):
                prompted += 1
        return prompted

    # ------------------------------------------------------------------
    # Per-lead handlers (run inside the lead's lock and session)
    # ------------------------------------------------------------------

    async def _handle_retry_pending(self, db: AsyncSession, lead: Lead, now: datetime) -> bool:
        if lead.status != LeadStatus.RETRY_PENDING.value:
            return False

        if await has_in_flight_attempt(db, lead.id):
            logger.info("Lead %s has a call in flight, skipping", str(lead.id)[:8])
            return False

        if lead.retry_kind != RetryKind.SHORT_CALLBACK.value:
            last = await latest_attempt(db, lead.id)
            if last is not None:
                last_start = as_utc(last.started_at or last.scheduled_at)
                if last_start is not None and now - last_start < self.min_attempt_gap:
                    logger.info(
                        "Lead %s last attempt started %s ago, waiting for the %s gap",
                        str(lead.id)[:8], now - last_start, self.min_attempt_gap,
                    )
                    return False

        return await self._dispatch_or_escalate(db, lead)

    async def _handle_dispatch_failed(self, db: AsyncSession, lead: Lead, now: datetime) -> bool:
        if lead.status != LeadStatus.DISPATCH_FAILED.value:
            return False

        last = await latest_attempt(db, lead.id)
        failed_at = as_utc(last.ended_at) if last is not None else None
        if failed_at is not None and now - failed_at < self.dispatch_failure_backoff:
            return False

        return await self._dispatch_or_escalate(db, lead)

    async def _handle_async_outreach(self, db: AsyncSession, lead: Lead, now: datetime) -> bool:
        if lead.status != LeadStatus.ASYNC_OUTREACH.value:
            return False

        result = await self.channel.send_channel_prompt(lead)
        transition(
            lead, LeadStatus.AWAITING_CHANNEL_CHOICE, db=db,
            reason="channel preference prompt sent",
            data={"message_sid": result.get("sid")},
        )
        return True

    async def _dispatch_or_escalate(self, db: AsyncSession, lead: Lead) -> bool:
        upcoming = await next_attempt_no(db, lead.id)
        if upcoming > lead.max_attempts:
            await self.contact.escalate_to_async(
                db, lead, f"{upcoming - 1}/{lead.max_attempts} attempts used",
            )
            return True

        await self.contact.dispatch_next_attempt(db, lead)
        return True

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _close_stale_attempts(self, now: datetime) -> int:
        cutoff = now - self.stale_attempt_timeout
        async with self.session_factory() as db:
            result = await db.execute(
                select(CallAttempt.id, CallAttempt.lead_id)
                .where(
                    and_(
                        CallAttempt.ended_at.is_(None),
                        CallAttempt.dispatch_status != DispatchStatus.FAILED.value,
                        CallAttempt.scheduled_at <= cutoff,
                    )
                )
                .order_by(CallAttempt.scheduled_at)
                .limit(self.batch_size)
            )
            rows = result.all()

        closed = 0
        for attempt_id, lead_id in rows:
            try:
                async with lead_lock(str(lead_id)):
                    async with self.session_factory() as db:
                        attempt = await db.get(CallAttempt, attempt_id)
                        if attempt is None or attempt.ended_at is not None:
                            continue
                        await self.contact.close_stale_attempt(db, attempt)
                        await db.commit()
                        closed += 1
            except LockTimeoutError:
                logger.info("Lead %s busy, stale attempt left for next tick", str(lead_id)[:8])
            except Exception as e:
                logger.error(
                    "Closing stale attempt %s failed: %s", str(attempt_id)[:8], str(e),
                    exc_info=True,
                )
        return closed

    async def _select_lead_ids(self, criteria, order_by) -> list[uuid.UUID]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Lead.id).where(criteria).order_by(order_by).limit(self.batch_size)
            )
            return list(result.scalars().all())

    async def _process_lead(self, lead_id: uuid.UUID, now: datetime, handler: LeadHandler) -> bool:
        blocked_until = self._backoff_until.get(lead_id)
        if blocked_until is not None and now < blocked_until:
            return False

        try:
            async with lead_lock(str(lead_id)):
                async with self.session_factory() as db:
                    lead = await db.get(Lead, lead_id)
                    if lead is None:
                        return False
                    acted = await handler(db, lead, now)
                    await db.commit()
        except LockTimeoutError:
            logger.info("Lead %s is being processed elsewhere, skipping", str(lead_id)[:8])
            return False
        except Exception as e:
            self._backoff_until[lead_id] = now + self.processing_backoff
            logger.error(
                "Sweep failed for lead %s: %s", str(lead_id)[:8], str(e),
                exc_info=True,
                extra={"lead_id": str(lead_id)},
            )
            return False

        self._backoff_until.pop(lead_id, None)
        return acted


async def run_contact_sweep() -> None:
    """Run both sweep loops until cancelled."""
    sweep = ContactSweep.from_settings()
    await asyncio.gather(sweep.run_retry_loop(), sweep.run_prompt_loop())
