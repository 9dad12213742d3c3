"""
Dispatch gateway - places the outbound voice call.

The core only needs a call handle back, or an exception. RetellDispatchGateway
talks to the Retell create-phone-call API; tests inject their own gateway.
All calls have a 10-second timeout per project standard.
"""
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from leadcall.utils.logging import mask_phone

logger = logging.getLogger(__name__)

CREATE_PHONE_CALL_PATH = "/v2/create-phone-call"


class DispatchError(Exception):
    """The provider could not place the call."""
    pass


class DispatchResult:
    """Handle returned by a successful dispatch."""

    def __init__(self, call_handle: str, raw: Optional[dict] = None):
        self.call_handle = call_handle
        self.raw = raw or {}

    def __repr__(self) -> str:
        return f"<DispatchResult {self.call_handle}>"


class DispatchGateway(ABC):
    """Abstract outbound calling capability."""

    @abstractmethod
    async def dispatch(self, to: str, variables: dict[str, str]) -> DispatchResult:
        """
        Place a call to `to` with flat string dynamic variables.
        Raises DispatchError on any failure.
        """
        ...


def phone_last4(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")[-4:]


def build_call_variables(lead, attempt_no: int) -> dict[str, str]:
    """Flat string map handed to the voice agent for this attempt."""
    name = lead.name or ""
    return {
        "lead_id": str(lead.id),
        "name": name,
        "first_name": name.strip().split(" ")[0] if name.strip() else "",
        "city": lead.city or "",
        "specialty": lead.specialty or "",
        "reason": lead.reason or "",
        "preferred_language": lead.preferred_language or "",
        "attempt_no": str(attempt_no),
    }


class RetellDispatchGateway(DispatchGateway):
    """Retell AI phone call API."""

    def __init__(
        self,
        api_key: str,
        from_number: str,
        base_url: str = "https://api.retellai.com",
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_settings(cls, settings=None) -> "RetellDispatchGateway":
        if settings is None:
            from leadcall.config import get_settings
            settings = get_settings()
        return cls(
            api_key=settings.retell_api_key,
            from_number=settings.retell_from_number,
            base_url=settings.retell_base_url,
            timeout=settings.retell_timeout_seconds,
        )

    async def dispatch(self, to: str, variables: dict[str, str]) -> DispatchResult:
        if not self.from_number:
            raise DispatchError("RETELL_FROM_NUMBER not set")
        if not self.api_key:
            raise DispatchError("RETELL_API_KEY not set")

        payload_vars = {"phone_last4": phone_last4(to)}
        payload_vars.update({k: str(v) for k, v in (variables or {}).items()})

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}{CREATE_PHONE_CALL_PATH}",
                    headers=self._headers,
                    json={
                        "from_number": self.from_number,
                        "to_number": to,
                        "retell_llm_dynamic_variables": payload_vars,
                    },
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Retell dispatch to %s rejected: HTTP %d",
                mask_phone(to), e.response.status_code,
            )
            raise DispatchError(f"Provider returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Retell dispatch to %s failed: %s", mask_phone(to), str(e))
            raise DispatchError(str(e)) from e

        call_id = data.get("call_id") if isinstance(data, dict) else None
        if not call_id:
            raise DispatchError("Provider response missing call_id")

        logger.info("Retell call %s placed to %s", call_id, mask_phone(to))
        return DispatchResult(call_handle=call_id, raw=data)
