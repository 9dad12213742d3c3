"""
Tests for leadcall/utils/webhook_signatures.py.
"""
from unittest.mock import MagicMock, patch

from leadcall.utils.webhook_signatures import (
    get_webhook_url,
    sign_hmac_sha256,
    validate_call_event_signature,
    validate_hmac_sha256,
    validate_twilio_signature,
)

BODY = b'{"event":"call_ended","call":{"call_id":"c1"}}'


class TestHmac:
    def test_valid_prefixed(self):
        assert validate_call_event_signature("s3cret", sign_hmac_sha256("s3cret", BODY), BODY)

    def test_tampered_body(self):
        sig = sign_hmac_sha256("s3cret", BODY)
        assert not validate_call_event_signature("s3cret", sig, BODY + b" ")

    def test_uppercase_hex_accepted(self):
        sig = sign_hmac_sha256("s3cret", BODY)
        assert validate_hmac_sha256("s3cret", "sha256=" + sig[7:].upper(), BODY)

    def test_prefix_optional_for_generic(self):
        bare = sign_hmac_sha256("s3cret", BODY, header_prefix="")
        assert validate_hmac_sha256("s3cret", bare, BODY)
        assert not validate_call_event_signature("s3cret", bare, BODY)

    def test_non_ascii_signature_rejected(self):
        assert validate_call_event_signature("s3cret", "sha256=éé", BODY) is False
        assert validate_hmac_sha256("s3cret", "ü" * 64, BODY) is False

    def test_empty_secret_or_signature(self):
        assert not validate_hmac_sha256("", sign_hmac_sha256("", BODY), BODY)
        assert not validate_hmac_sha256("s3cret", "", BODY)


class TestTwilio:
    def test_missing_signature(self):
        assert validate_twilio_signature("tok", "", "https://x/y", {}) is False

    def test_delegates_to_request_validator(self):
        with patch("twilio.request_validator.RequestValidator.validate", return_value=True) as validate:
            assert validate_twilio_signature("tok", "sig", "https://x/y", {"Body": "oi"})
        validate.assert_called_once_with("https://x/y", {"Body": "oi"}, "sig")

    def test_real_validator_rejects_garbage(self):
        assert validate_twilio_signature("tok", "garbage", "https://x/y", {"Body": "oi"}) is False


class TestWebhookUrl:
    async def test_forwarded_headers_win(self):
        req = MagicMock()
        req.headers = {"x-forwarded-proto": "https", "x-forwarded-host": "api.example.com", "host": "internal:8000"}
        req.url.path = "/api/v1/webhook/twilio/whatsapp"
        req.url.query = ""
        assert await get_webhook_url(req) == "https://api.example.com/api/v1/webhook/twilio/whatsapp"

    async def test_query_preserved(self):
        req = MagicMock()
        req.headers = {"host": "localhost:8000", "x-forwarded-proto": "http"}
        req.url.path = "/hook"
        req.url.query = "a=1"
        assert await get_webhook_url(req) == "http://localhost:8000/hook?a=1"
