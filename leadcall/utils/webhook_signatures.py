"""
Authenticity checks for inbound webhooks.

- Call lifecycle events (Retell): X-Retell-Signature is "sha256=" followed by
  the hex HMAC-SHA256 of the raw body, keyed with the webhook secret.
- WhatsApp replies (Twilio): X-Twilio-Signature, checked with Twilio's own
  RequestValidator against the public URL and the form parameters.

Every check answers False rather than raising; the endpoints turn False into a 401.
"""
import hashlib
import hmac
import logging

from twilio.request_validator import RequestValidator

logger = logging.getLogger(__name__)

SHA256_PREFIX = "sha256="


def _hmac_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def sign_hmac_sha256(secret: str, body: bytes, header_prefix: str = SHA256_PREFIX) -> str:
    """Header value a sender would attach for ``body``."""
    return header_prefix + _hmac_hex(secret, body)


def validate_hmac_sha256(
    secret: str,
    signature: str,
    body: bytes,
    header_prefix: str = SHA256_PREFIX,
    require_prefix: bool = False,
) -> bool:
    """Constant-time comparison of ``signature`` against the body's HMAC. Hex case is ignored."""
    if not secret or not signature:
        return False

    candidate = signature.strip()
    has_prefix = candidate.startswith(header_prefix)
    if require_prefix and not has_prefix:
        return False
    if has_prefix:
        candidate = candidate[len(header_prefix):]

    try:
        return hmac.compare_digest(_hmac_hex(secret, body), candidate.lower())
    except TypeError:
        # compare_digest refuses non-ASCII str; such a header can never match
        logger.warning("Webhook signature header is not ASCII")
        return False


def validate_call_event_signature(secret: str, signature: str, body: bytes) -> bool:
    # bare hex digests are refused for call events
    return validate_hmac_sha256(secret, signature, body, require_prefix=True)


def validate_twilio_signature(auth_token: str, signature: str, url: str, params: dict) -> bool:
    if not signature:
        logger.warning("WhatsApp webhook arrived without X-Twilio-Signature")
        return False
    try:
        return RequestValidator(auth_token).validate(url, params, signature)
    except Exception as e:
        logger.error("Twilio signature check raised: %s", str(e))
        return False


async def get_webhook_url(request) -> str:
    """
    Public URL Twilio signed.

    Behind the reverse proxy request.url is the internal address, so the
    forwarded proto and host headers take precedence.
    """
    headers = request.headers
    proto = headers.get("x-forwarded-proto", "https")
    host = headers.get("x-forwarded-host") or headers.get("host", "")
    url = f"{proto}://{host}{request.url.path}"
    query = request.url.query
    return f"{url}?{query}" if query else url
