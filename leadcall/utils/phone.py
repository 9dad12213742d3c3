"""
Phone number normalization - E.164 format using the phonenumbers library.
Numbers without a country code are parsed in the default region (Brazil).
"""
import logging
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)

DEFAULT_REGION = "BR"


def normalize_phone_e164(phone: Optional[str], default_region: str = DEFAULT_REGION) -> Optional[str]:
    """
    Normalize a phone number to E.164 format.

    Handles:
    - +55 11 98765-4321 → +5511987654321
    - (11) 98765-4321   → +5511987654321
    - whatsapp:+55...   → +55...

    Returns None if the number cannot be parsed or is impossible.
    """
    if not phone or not phone.strip():
        return None

    cleaned = phone.strip()
    if cleaned.startswith("whatsapp:"):
        cleaned = cleaned[len("whatsapp:"):]

    try:
        parsed = phonenumbers.parse(cleaned, default_region)
    except phonenumbers.NumberParseException:
        return None

    # Accept "possible" numbers too, not only officially assigned ranges
    if not phonenumbers.is_valid_number(parsed) and not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
