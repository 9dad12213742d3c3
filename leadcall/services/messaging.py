"""
Async channel - WhatsApp over Twilio, used once voice attempts run out.

Sends the channel-preference prompt and reads the person's answer back as an
intent (wants a call / happy to continue by message). The Twilio REST client
is synchronous, so sends run in the default thread pool.
"""
import asyncio
import enum
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

from leadcall.utils.logging import mask_phone

logger = logging.getLogger(__name__)

TWILIO_CLIENT_TIMEOUT = 10

_VOICE_INTENT_RE = re.compile(r"\b(call|ligar|liga|ligação|ligacao|telefone|telefonema)\b", re.IGNORECASE)
_ASYNC_INTENT_RE = re.compile(r"whats(app)?|zap|aqui mesmo|mensagem|por aqui", re.IGNORECASE)

REPLY_VOICE = 'Certo! Vou ligar para você. Se preferir um horário específico, diga: "ligar às 16:00".'
REPLY_ASYNC = "Perfeito, podemos continuar por aqui no WhatsApp. Como posso ajudar com sua consulta?"
REPLY_UNKNOWN = 'Recebi sua mensagem. Se preferir ligação, diga "ligar". Se preferir continuar por aqui, diga "WhatsApp".'


class ChannelIntent(str, enum.Enum):
    VOICE = "voice"
    ASYNC = "async"
    UNKNOWN = "unknown"


class ChannelSendError(Exception):
    """The async channel provider rejected or failed the send."""
    pass


def parse_channel_intent(text: Optional[str]) -> ChannelIntent:
    """Voice wins when both appear ("me liga, não quero whatsapp")."""
    message = (text or "").strip()
    if not message:
        return ChannelIntent.UNKNOWN
    if _VOICE_INTENT_RE.search(message):
        return ChannelIntent.VOICE
    if _ASYNC_INTENT_RE.search(message):
        return ChannelIntent.ASYNC
    return ChannelIntent.UNKNOWN


def reply_for_intent(intent: ChannelIntent) -> str:
    if intent == ChannelIntent.VOICE:
        return REPLY_VOICE
    if intent == ChannelIntent.ASYNC:
        return REPLY_ASYNC
    return REPLY_UNKNOWN


def channel_prompt_text(first_name: str) -> str:
    greeting = f"Olá {first_name}!" if first_name else "Olá!"
    return (
        f"{greeting} Tentamos falar por telefone. Você prefere continuar por "
        '*ligação* ou *WhatsApp*? Responda "ligar" ou "WhatsApp".'
    )


def whatsapp_address(lead) -> Optional[str]:
    """WhatsApp handle for a lead, falling back to its phone number."""
    handle = (lead.whatsapp or "").strip() or (lead.phone or "").strip()
    if not handle:
        return None
    if handle.startswith("whatsapp:"):
        return handle
    return f"whatsapp:{handle}"


def strip_channel_prefix(address: str) -> str:
    return (address or "").replace("whatsapp:", "", 1).strip()


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous function in the thread pool to avoid blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


class AsyncChannel(ABC):
    """Abstract asynchronous messaging channel."""

    @abstractmethod
    async def send(self, to: str, body: str) -> dict:
        """
        Send a message. Returns {"sid": str, "status": str}.
        Raises ChannelSendError on failure.
        """
        ...

    async def send_channel_prompt(self, lead) -> dict:
        to = whatsapp_address(lead)
        if not to:
            raise ChannelSendError("Lead has no phone or WhatsApp handle")
        return await self.send(to, channel_prompt_text(lead.first_name))


class TwilioWhatsAppChannel(AsyncChannel):
    """WhatsApp via Twilio Messaging."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        messaging_service_sid: str = "",
        from_address: str = "",
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.messaging_service_sid = messaging_service_sid
        self.from_address = from_address
        self._client = None

    @classmethod
    def from_settings(cls, settings=None) -> "TwilioWhatsAppChannel":
        if settings is None:
            from leadcall.config import get_settings
            settings = get_settings()
        return cls(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            messaging_service_sid=settings.twilio_messaging_service_sid,
            from_address=settings.twilio_whatsapp_from,
        )

    def _get_client(self):
        """Twilio REST client with configured timeout (cached per instance)."""
        if self._client is None:
            from twilio.rest import Client as TwilioClient
            from twilio.http.http_client import TwilioHttpClient
            http_client = TwilioHttpClient(timeout=TWILIO_CLIENT_TIMEOUT)
            self._client = TwilioClient(
                self.account_sid,
                self.auth_token,
                http_client=http_client,
            )
        return self._client

    async def send(self, to: str, body: str) -> dict:
        if not self.messaging_service_sid and not self.from_address:
            raise ChannelSendError("No Twilio messaging service or WhatsApp sender configured")

        params = {"to": to, "body": body}
        if self.messaging_service_sid:
            params["messaging_service_sid"] = self.messaging_service_sid
        else:
            from_address = self.from_address
            if not from_address.startswith("whatsapp:"):
                from_address = f"whatsapp:{from_address}"
            params["from_"] = from_address

        try:
            client = self._get_client()
            message = await _run_sync(client.messages.create, **params)
        except Exception as e:
            logger.error("WhatsApp send to %s failed: %s", mask_phone(strip_channel_prefix(to)), str(e))
            raise ChannelSendError(str(e)) from e

        logger.info("WhatsApp message %s sent to %s", message.sid, mask_phone(strip_channel_prefix(to)))
        return {"sid": message.sid, "status": message.status}
