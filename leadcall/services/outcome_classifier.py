"""
Outcome classifier - maps call-end signals to a canonical outcome.

Rules are ordered, first match wins:
1. No human reached: voicemail flag / voicemail disconnect code, voicemail
   phrasing in the transcript (EN + pt-BR), or no-answer style wording in the
   disposition text.
2. Identity mismatch: divergent / identity-failed / name-mismatch wording.
3. Anything else is a resolved conversation. Silence is optimistic on purpose:
   an ambiguous event must never feed an endless retry loop.

Changing the keyword lists changes how past events would be read on replay,
so bump CLASSIFIER_VERSION with every edit.
"""
import enum
import re
from typing import Optional

from leadcall.schemas.call_events import CallEndSignals

CLASSIFIER_VERSION = "3"

VOICEMAIL_DISCONNECT_CODES = {
    "voicemail",
    "voicemail_reached",
    "machine_detected",
    "answering_machine",
}

_VOICEMAIL_TRANSCRIPT_RE = re.compile(
    r"voicemail|voice[- ]?mail|caixa postal|correio de voz|deixe sua mensagem"
    r"|ap[oó]s o sinal|after the (?:tone|beep)|leave a message|voymail",
    re.IGNORECASE,
)

_VOICEMAIL_COLLECTED_RE = re.compile(
    r"not available|mismatched_reason.*not available",
    re.IGNORECASE,
)

_NO_HUMAN_RE = re.compile(
    r"voicemail|voice[- ]?mail|answering[_ -]?machine|caixa postal"
    r"|no[_ -]?answer|no[_-]?pickup|didn'?t pick|did not pick|missed"
    r"|timeout|timed[_ -]?out|busy|failed|cancell?ed|declined|unreachable"
    r"|n[aã]o atend|n[aã]o atendeu|ocupad[oa]|fora de [aá]rea|sem resposta",
    re.IGNORECASE,
)

_IDENTITY_MISMATCH_RE = re.compile(
    r"divergent|diverg[eê]nte|identity[_ -]?fail|mismatch[_ ]name|name[_ ]mismatch"
    r"|wrong[_ ]person|pessoa errada",
    re.IGNORECASE,
)


class CallOutcome(str, enum.Enum):
    NO_HUMAN_REACHED = "no_human_reached"
    IDENTITY_MISMATCH = "identity_mismatch"
    RESOLVED_OTHER = "resolved_other"


class Classification:
    """Result of classifying one call-end event."""

    def __init__(self, outcome: CallOutcome, in_voicemail: bool = False, matched_text: str = ""):
        self.outcome = outcome
        self.in_voicemail = in_voicemail
        self.matched_text = matched_text

    @property
    def is_no_human(self) -> bool:
        return self.outcome == CallOutcome.NO_HUMAN_REACHED

    def raw_label(self, fallback: Optional[str] = None) -> str:
        """Short label persisted on the attempt for diagnostics."""
        if fallback:
            return fallback[:255]
        if self.in_voicemail:
            return "voicemail"
        return "ended"

    def __eq__(self, other) -> bool:
        if not isinstance(other, Classification):
            return NotImplemented
        return self.outcome == other.outcome and self.in_voicemail == other.in_voicemail

    def __repr__(self) -> str:
        return f"<Classification {self.outcome.value} voicemail={self.in_voicemail}>"


def disposition_text(signals: CallEndSignals) -> str:
    """All disposition-ish fields joined and lowercased."""
    parts = [
        signals.outcome,
        signals.disconnect_reason,
        signals.call_status,
        signals.summary_result,
        signals.summary_outcome,
    ]
    return " ".join(p for p in parts if p).lower()


def detect_voicemail(signals: CallEndSignals, text: str = "") -> bool:
    if signals.voicemail_flag:
        return True
    reason = (signals.disconnect_reason or "").strip().lower()
    if reason in VOICEMAIL_DISCONNECT_CODES:
        return True
    if text and _VOICEMAIL_TRANSCRIPT_RE.search(text):
        return True
    if signals.transcript and _VOICEMAIL_TRANSCRIPT_RE.search(signals.transcript):
        return True
    if signals.collected_variables and _VOICEMAIL_COLLECTED_RE.search(signals.collected_variables):
        return True
    return False


def classify_call_end(signals: CallEndSignals) -> Classification:
    """Pure: the same signals always yield the same Classification."""
    text = disposition_text(signals)

    if detect_voicemail(signals, text):
        return Classification(CallOutcome.NO_HUMAN_REACHED, in_voicemail=True, matched_text=text)

    if text and _NO_HUMAN_RE.search(text):
        return Classification(CallOutcome.NO_HUMAN_REACHED, matched_text=text)

    if text and _IDENTITY_MISMATCH_RE.search(text):
        return Classification(CallOutcome.IDENTITY_MISMATCH, matched_text=text)

    return Classification(CallOutcome.RESOLVED_OTHER, matched_text=text)
