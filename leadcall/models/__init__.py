"""
Database models - import all models here so Alembic can discover them.
"""
from leadcall.models.lead import Lead, LeadStatus, ContactChannel, RetryKind
from leadcall.models.call_attempt import CallAttempt, DispatchStatus
from leadcall.models.appointment import Appointment
from leadcall.models.event_log import EventLog

__all__ = [
    "Lead",
    "LeadStatus",
    "ContactChannel",
    "RetryKind",
    "CallAttempt",
    "DispatchStatus",
    "Appointment",
    "EventLog",
]
