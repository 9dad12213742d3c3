"""
Webhook endpoints - call lifecycle events from the voice provider and
inbound WhatsApp replies from Twilio.

Security layers (in order):
1. Signature validation (HMAC-SHA256 for call events, Twilio signature for WhatsApp)
2. Payload processing

Once a request is authenticated it is always acknowledged: the voice provider
redelivers on anything but 2xx, and a redelivery storm helps nobody.
"""
import json
import logging

from fastapi import APIRouter, Request, Depends, HTTPException
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from leadcall.api.deps import get_contact_service
from leadcall.config import get_settings
from leadcall.database import get_db
from leadcall.schemas.leads import WebhookAck
from leadcall.services.call_webhooks import CallWebhookHandler
from leadcall.services.contact import ContactService, find_lead_awaiting_choice
from leadcall.services.messaging import (
    ChannelIntent,
    parse_channel_intent,
    reply_for_intent,
    strip_channel_prefix,
)
from leadcall.utils.locks import LockTimeoutError, lead_lock
from leadcall.utils.logging import mask_phone
from leadcall.utils.webhook_signatures import (
    get_webhook_url,
    validate_call_event_signature,
    validate_twilio_signature,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhook", tags=["webhooks"])

CALL_SIGNATURE_HEADER = "X-Retell-Signature"


def _reject(source: str, request: Request) -> None:
    client_ip = request.client.host if request.client else "unknown"
    logger.warning("Invalid webhook signature: source=%s ip=%s", source, client_ip)
    raise HTTPException(status_code=401, detail="Invalid webhook signature")


def _twiml(message: str) -> Response:
    from twilio.twiml.messaging_response import MessagingResponse
    response = MessagingResponse()
    response.message(message)
    return Response(content=str(response), media_type="application/xml")


@router.post("/retell", response_model=WebhookAck)
async def call_event_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    contact: ContactService = Depends(get_contact_service),
):
    """Call started / ended / analyzed events."""
    body = await request.body()
    signature = request.headers.get(CALL_SIGNATURE_HEADER, "")
    if not validate_call_event_signature(get_settings().webhook_secret, signature, body):
        _reject("retell", request)

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Call webhook body is not JSON")
        return WebhookAck(status="ignored")
    if not isinstance(payload, dict):
        logger.warning("Call webhook body is not a JSON object")
        return WebhookAck(status="ignored")

    handler = CallWebhookHandler(contact)
    try:
        result = await handler.handle(db, payload)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error("Call webhook processing error: %s", str(e), exc_info=True)
        return WebhookAck(status="error")

    return WebhookAck(status=result)


@router.post("/twilio/whatsapp")
async def whatsapp_inbound_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    contact: ContactService = Depends(get_contact_service),
):
    """
    Inbound WhatsApp reply to the channel-preference prompt.
    Twilio sends form-encoded data and expects TwiML back.
    """
    form_data = await request.form()
    form_params = dict(form_data)

    url = await get_webhook_url(request)
    signature = request.headers.get("X-Twilio-Signature", "")
    if not validate_twilio_signature(get_settings().twilio_auth_token, signature, url, form_params):
        _reject("twilio", request)

    from_address = form_params.get("From", "")
    body_text = form_params.get("Body", "")
    intent = parse_channel_intent(body_text)

    try:
        lead = await find_lead_awaiting_choice(db, from_address)
        if lead is None:
            logger.info("WhatsApp reply from %s matches no waiting lead", mask_phone(strip_channel_prefix(from_address)))
        else:
            logger.info(
                "WhatsApp reply for lead %s: intent=%s", str(lead.id)[:8], intent.value,
                extra={"lead_id": str(lead.id)},
            )
            async with lead_lock(str(lead.id)):
                await db.refresh(lead)
                await contact.apply_channel_intent(db, lead, intent)
                await db.commit()
    except LockTimeoutError:
        await db.rollback()
        logger.warning("WhatsApp reply arrived while lead was busy; asking the sender to repeat")
        intent = ChannelIntent.UNKNOWN
    except Exception as e:
        await db.rollback()
        logger.error("WhatsApp webhook processing error: %s", str(e), exc_info=True)
        intent = ChannelIntent.UNKNOWN

    return _twiml(reply_for_intent(intent))
