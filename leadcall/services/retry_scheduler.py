"""
Retry scheduler - decides when (and whether) a lead gets another voice call.

Rules:
- Identity mismatch / resolved outcomes: stop, the voice loop is over.
- Next attempt would exceed max_attempts: escalate to the async channel.
- Voicemail: short callback 15-25 min out (uniform), ignoring business hours,
  to catch the person while the missed call is still on their screen.
- Anything else: now + lookahead, clamped into the next business window
  (Mon-Sat 08:00-20:00 local by default), then pushed a full business day if it
  lands within the appointment buffer of the lead's next appointment.

All slot math happens in the lead's local timezone; returned instants are UTC.
The randomness source is injected so tests can pin the callback offset.
"""
import enum
import logging
import random
from datetime import datetime, date, time, timedelta, timezone
from typing import Optional

from leadcall.models.lead import RetryKind
from leadcall.services.outcome_classifier import Classification
from leadcall.utils.timezone import as_utc, get_zoneinfo, utcnow

logger = logging.getLogger(__name__)

# Upper bound on "push to next business day" hops when appointments cluster
MAX_CONFLICT_PUSHES = 14

_default_rng = random.Random()


class RetryAction(str, enum.Enum):
    RETRY = "retry"
    ESCALATE = "escalate"
    STOP = "stop"


class RetryDecision:
    """What the state machine should do after a call outcome."""

    def __init__(
        self,
        action: RetryAction,
        retry_at: Optional[datetime] = None,
        kind: Optional[RetryKind] = None,
    ):
        self.action = action
        self.retry_at = retry_at
        self.kind = kind

    @classmethod
    def stop(cls) -> "RetryDecision":
        return cls(RetryAction.STOP)

    @classmethod
    def escalate(cls) -> "RetryDecision":
        return cls(RetryAction.ESCALATE)

    def __repr__(self) -> str:
        kind = self.kind.value if self.kind else None
        return f"<RetryDecision {self.action.value} at={self.retry_at} kind={kind}>"


class BusinessHoursPolicy:
    """Calling window and spacing rules. Hours are local wall-clock, end exclusive."""

    def __init__(
        self,
        start_hour: int = 8,
        end_hour: int = 20,
        business_days: frozenset = frozenset({0, 1, 2, 3, 4, 5}),
        lookahead: timedelta = timedelta(hours=2),
        appointment_buffer: timedelta = timedelta(hours=2),
        short_callback_min: timedelta = timedelta(minutes=15),
        short_callback_max: timedelta = timedelta(minutes=25),
        default_timezone: str = "America/Sao_Paulo",
    ):
        if not business_days:
            raise ValueError("At least one business day is required")
        if not 0 <= start_hour < end_hour <= 24:
            raise ValueError(f"Invalid business hours {start_hour}-{end_hour}")
        if short_callback_max <= short_callback_min:
            raise ValueError("Short callback window must be non-empty")
        self.start_hour = start_hour
        self.end_hour = end_hour
        self.business_days = frozenset(business_days)
        self.lookahead = lookahead
        self.appointment_buffer = appointment_buffer
        self.short_callback_min = short_callback_min
        self.short_callback_max = short_callback_max
        self.default_timezone = default_timezone

    @classmethod
    def from_settings(cls, settings=None) -> "BusinessHoursPolicy":
        if settings is None:
            from leadcall.config import get_settings
            settings = get_settings()
        return cls(
            start_hour=settings.business_start_hour,
            end_hour=settings.business_end_hour,
            business_days=settings.business_day_set,
            lookahead=timedelta(hours=settings.retry_lookahead_hours),
            appointment_buffer=timedelta(hours=settings.appointment_buffer_hours),
            short_callback_min=timedelta(minutes=settings.voicemail_callback_min_minutes),
            short_callback_max=timedelta(minutes=settings.voicemail_callback_max_minutes),
            default_timezone=settings.default_timezone,
        )

    def is_business_time(self, local_dt: datetime) -> bool:
        return (
            local_dt.weekday() in self.business_days
            and self.start_hour <= local_dt.hour < self.end_hour
        )

    def day_start(self, day: date, tzinfo) -> datetime:
        return datetime.combine(day, time(self.start_hour), tzinfo=tzinfo)

    def next_business_day_start(self, local_dt: datetime) -> datetime:
        """Opening time of the first business day strictly after local_dt's date."""
        day = local_dt.date()
        for offset in range(1, 8):
            candidate = day + timedelta(days=offset)
            if candidate.weekday() in self.business_days:
                return self.day_start(candidate, local_dt.tzinfo)
        raise ValueError("No business day within a week")

    def clamp(self, local_dt: datetime) -> datetime:
        """Earliest moment at or after local_dt that falls inside a business window."""
        if self.is_business_time(local_dt):
            return local_dt
        if local_dt.weekday() in self.business_days and local_dt.hour < self.start_hour:
            return self.day_start(local_dt.date(), local_dt.tzinfo)
        return self.next_business_day_start(local_dt)


def short_callback_offset(policy: BusinessHoursPolicy, rng=None) -> timedelta:
    """Uniform offset strictly inside (short_callback_min, short_callback_max)."""
    rng = rng or _default_rng
    low = int(policy.short_callback_min.total_seconds()) + 1
    high = int(policy.short_callback_max.total_seconds()) - 1
    return timedelta(seconds=rng.randint(low, high))


def business_hours_slot(
    now: datetime,
    policy: BusinessHoursPolicy,
    timezone_name: Optional[str] = None,
    appointment_at: Optional[datetime] = None,
) -> datetime:
    """Next business-hours slot (UTC) at least `lookahead` from now, clear of the appointment."""
    tz = get_zoneinfo(timezone_name, policy.default_timezone)
    candidate = policy.clamp((now + policy.lookahead).astimezone(tz))

    appointment = as_utc(appointment_at)
    if appointment is not None and appointment > now:
        for _ in range(MAX_CONFLICT_PUSHES):
            if abs(candidate - appointment) >= policy.appointment_buffer:
                break
            logger.debug(
                "Retry slot %s within %s of appointment %s - pushing a business day",
                candidate.isoformat(), policy.appointment_buffer, appointment.isoformat(),
            )
            candidate = policy.next_business_day_start(candidate)

    return candidate.astimezone(timezone.utc)


def compute_next_retry(
    next_attempt_no: int,
    max_attempts: int,
    classification: Optional[Classification] = None,
    timezone_name: Optional[str] = None,
    appointment_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    rng=None,
    policy: Optional[BusinessHoursPolicy] = None,
) -> RetryDecision:
    """
    Decide the follow-up for a lead after an attempt.

    classification=None means a generic reschedule (e.g. stale attempt or
    manual nudge): treated like a non-voicemail no-answer.
    """
    policy = policy or BusinessHoursPolicy.from_settings()
    now = as_utc(now) or utcnow()

    if classification is not None and not classification.is_no_human:
        return RetryDecision.stop()

    if next_attempt_no > max_attempts:
        return RetryDecision.escalate()

    if classification is not None and classification.in_voicemail:
        return RetryDecision(
            RetryAction.RETRY,
            retry_at=now + short_callback_offset(policy, rng),
            kind=RetryKind.SHORT_CALLBACK,
        )

    try:
        slot = business_hours_slot(now, policy, timezone_name, appointment_at)
    except Exception as e:
        logger.warning("Retry slot computation failed (%s) - using default timezone slot", str(e))
        slot = business_hours_slot(now, policy, policy.default_timezone)

    return RetryDecision(RetryAction.RETRY, retry_at=slot, kind=RetryKind.BUSINESS_HOURS)
