"""
Lead state machine - the only code allowed to write Lead.status,
Lead.next_retry_at and Lead.retry_kind.

next_retry_at/retry_kind are set only when entering retry_pending and are
cleared on every other transition.
"""
import logging
from datetime import datetime
from typing import Optional

from leadcall.models.event_log import EventLog
from leadcall.models.lead import Lead, LeadStatus, ContactChannel, RetryKind
from leadcall.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

S = LeadStatus

ALLOWED_TRANSITIONS: dict[LeadStatus, frozenset] = {
    S.NEW: frozenset({S.DISPATCHING}),
    S.DISPATCHING: frozenset({S.IN_PROGRESS, S.DISPATCH_FAILED}),
    S.IN_PROGRESS: frozenset({S.RETRY_PENDING, S.ASYNC_OUTREACH, S.IDENTITY_MISMATCH, S.QUALIFIED}),
    S.RETRY_PENDING: frozenset({S.DISPATCHING, S.ASYNC_OUTREACH}),
    S.DISPATCH_FAILED: frozenset({S.DISPATCHING, S.ASYNC_OUTREACH}),
    S.ASYNC_OUTREACH: frozenset({S.AWAITING_CHANNEL_CHOICE}),
    S.AWAITING_CHANNEL_CHOICE: frozenset({S.DISPATCHING, S.QUALIFIED}),
    S.QUALIFIED: frozenset(),
    S.IDENTITY_MISMATCH: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.QUALIFIED, S.IDENTITY_MISMATCH})
RETRYABLE_STATUSES = frozenset({S.RETRY_PENDING, S.DISPATCH_FAILED})


class IllegalTransitionError(Exception):
    """Raised when a status change is not in ALLOWED_TRANSITIONS."""

    def __init__(self, current: str, target: str, detail: str = ""):
        self.current = current
        self.target = target
        msg = f"Illegal lead transition {current} -> {target}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


def current_status(lead: Lead) -> LeadStatus:
    try:
        return LeadStatus(lead.status)
    except ValueError:
        raise IllegalTransitionError(str(lead.status), "?", "unknown current status")


def can_transition(lead: Lead, target: LeadStatus) -> bool:
    try:
        return target in ALLOWED_TRANSITIONS[current_status(lead)]
    except IllegalTransitionError:
        return False


def transition(
    lead: Lead,
    target: LeadStatus,
    *,
    db=None,
    reason: str = "",
    retry_at: Optional[datetime] = None,
    retry_kind: Optional[RetryKind] = None,
    data: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Optional[EventLog]:
    """
    Move a lead to `target`, enforcing the transition table and the
    next_retry_at invariant. Adds an EventLog row when a session is given.
    """
    source = current_status(lead)
    if target not in ALLOWED_TRANSITIONS[source]:
        raise IllegalTransitionError(source.value, target.value)

    if target == S.RETRY_PENDING:
        now = as_utc(now) or utcnow()
        retry_at = as_utc(retry_at)
        if retry_at is None:
            raise IllegalTransitionError(source.value, target.value, "retry_pending requires next_retry_at")
        if retry_at <= now:
            raise IllegalTransitionError(source.value, target.value, "next_retry_at must be in the future")
        lead.next_retry_at = retry_at
        lead.retry_kind = (retry_kind or RetryKind.BUSINESS_HOURS).value
    else:
        lead.next_retry_at = None
        lead.retry_kind = None

    if target == S.ASYNC_OUTREACH:
        lead.preferred_channel = ContactChannel.ASYNC_MESSAGE.value

    lead.status = target.value

    logger.info(
        "Lead %s: %s -> %s%s",
        str(lead.id)[:8], source.value, target.value,
        f" ({reason})" if reason else "",
        extra={"lead_id": str(lead.id), "status": target.value},
    )

    if db is None:
        return None

    event_data = {"from": source.value, "to": target.value}
    if lead.next_retry_at is not None:
        event_data["next_retry_at"] = lead.next_retry_at.isoformat()
        event_data["retry_kind"] = lead.retry_kind
    if data:
        event_data.update(data)

    event = EventLog(
        lead_id=lead.id,
        action="status_changed",
        from_status=source.value,
        to_status=target.value,
        message=reason or f"{source.value} -> {target.value}",
        data=event_data,
    )
    db.add(event)
    return event
