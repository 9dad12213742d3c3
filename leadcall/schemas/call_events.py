"""
Call lifecycle webhook schemas.

The provider payload is loosely structured and most fields are optional.
normalize_call_event() is the only place that digs through it; everything
downstream consumes the narrow CallEvent / CallEndSignals models.
"""
import json
import logging
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


EVENT_STARTED = "started"
EVENT_ENDED = "ended"
EVENT_ANALYZED = "analyzed"

_EVENT_ALIASES = {
    "call_started": EVENT_STARTED,
    "started": EVENT_STARTED,
    "call_ended": EVENT_ENDED,
    "ended": EVENT_ENDED,
    "call_analyzed": EVENT_ANALYZED,
    "analyzed": EVENT_ANALYZED,
}


class CallSummaryPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    result: Optional[str] = None
    call_outcome: Optional[str] = None


class CallAnalysisPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    in_voicemail: Optional[bool] = None
    call_summary: Optional[str] = None


class CallPayload(BaseModel):
    """Nested call object of a provider webhook."""
    model_config = ConfigDict(extra="allow")

    call_id: Optional[str] = None
    call_status: Optional[str] = None
    disconnection_reason: Optional[str] = None
    transcript: Optional[str] = None
    transcript_object: Optional[list] = None
    call_analysis: Optional[CallAnalysisPayload] = None
    summary: Optional[CallSummaryPayload] = None
    collected_dynamic_variables: Optional[dict] = None


class CallWebhookPayload(BaseModel):
    """Raw provider webhook body. Either `event` or `type` carries the event name."""
    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    type: Optional[str] = None
    call_id: Optional[str] = None
    outcome: Optional[str] = None
    transcript: Optional[str] = None
    analysis: Optional[Any] = None
    call: CallPayload = Field(default_factory=CallPayload)


class CallEndSignals(BaseModel):
    """Everything the outcome classifier is allowed to look at."""
    model_config = ConfigDict(frozen=True)

    disconnect_reason: Optional[str] = None
    call_status: Optional[str] = None
    outcome: Optional[str] = None
    summary_result: Optional[str] = None
    summary_outcome: Optional[str] = None
    transcript: str = ""  # lowercased
    collected_variables: str = ""  # JSON text of collected dynamic variables
    voicemail_flag: bool = False


class CallEvent(BaseModel):
    """Normalized call lifecycle event."""
    event_type: Optional[str] = None  # started / ended / analyzed, None if unknown
    raw_event_type: Optional[str] = None
    call_handle: Optional[str] = None
    signals: CallEndSignals = Field(default_factory=CallEndSignals)
    transcript: Optional[str] = None
    analysis: Optional[dict] = None


def _analysis_blob(payload: CallWebhookPayload) -> Optional[dict]:
    call = payload.call
    blob: dict = {}
    if call.call_analysis is not None:
        blob["call_analysis"] = call.call_analysis.model_dump(exclude_none=True)
    if call.transcript_object:
        blob["transcript_object"] = call.transcript_object
    if payload.analysis is not None:
        blob["analysis"] = payload.analysis
    return blob or None


def _full_transcript(payload: CallWebhookPayload) -> Optional[str]:
    call = payload.call
    if call.transcript:
        return call.transcript
    if payload.transcript:
        return payload.transcript
    if call.transcript_object:
        return json.dumps(call.transcript_object, ensure_ascii=False)
    return None


def _str_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _fallback_payload(data: dict) -> CallWebhookPayload:
    """Keep only the routing fields when the body is malformed elsewhere."""
    call = data.get("call") or {}
    return CallWebhookPayload(
        event=_str_or_none(data.get("event")),
        type=_str_or_none(data.get("type")),
        call_id=_str_or_none(data.get("call_id")),
        outcome=_str_or_none(data.get("outcome")),
        call=CallPayload(
            call_id=_str_or_none(call.get("call_id")),
            disconnection_reason=_str_or_none(call.get("disconnection_reason")),
            call_status=_str_or_none(call.get("call_status")),
        ),
    )


def normalize_call_event(raw: dict) -> CallEvent:
    """Map a raw provider payload onto CallEvent. Never raises on missing fields."""
    data = dict(raw or {})
    if not isinstance(data.get("call"), dict):
        data.pop("call", None)
    try:
        payload = CallWebhookPayload.model_validate(data)
    except ValidationError as e:
        logger.warning("Call webhook payload did not match schema: %s", str(e))
        payload = _fallback_payload(data)
    call = payload.call

    raw_type = payload.event or payload.type
    event_type = _EVENT_ALIASES.get((raw_type or "").strip().lower())

    summary = call.summary or CallSummaryPayload()
    analysis = call.call_analysis or CallAnalysisPayload()

    signals = CallEndSignals(
        disconnect_reason=call.disconnection_reason,
        call_status=call.call_status,
        outcome=payload.outcome,
        summary_result=summary.result,
        summary_outcome=summary.call_outcome,
        transcript=(call.transcript or payload.transcript or "").lower(),
        collected_variables=json.dumps(call.collected_dynamic_variables or {}, ensure_ascii=False),
        voicemail_flag=bool(analysis.in_voicemail),
    )

    return CallEvent(
        event_type=event_type,
        raw_event_type=raw_type,
        call_handle=call.call_id or payload.call_id,
        signals=signals,
        transcript=_full_transcript(payload),
        analysis=_analysis_blob(payload),
    )
