"""
Simulate call lifecycle events against a running instance.

Signs each payload the way the voice provider does (X-Retell-Signature:
sha256=<hex HMAC of the raw body>) so it passes webhook authentication.

Usage:
    python scripts/simulate_call_event.py --call-id call_abc123
    python scripts/simulate_call_event.py --call-id call_abc123 --scenario voicemail
    python scripts/simulate_call_event.py --call-id call_abc123 --scenario mismatch --secret s3cret
"""
import argparse
import asyncio
import json
import logging

import httpx

from leadcall.utils.webhook_signatures import sign_hmac_sha256

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"
WEBHOOK_PATH = "/api/v1/webhook/retell"

SCENARIOS = {
    "no_answer": {"disconnection_reason": "dial_no_answer", "call_status": "ended"},
    "voicemail": {
        "disconnection_reason": "voicemail_reached",
        "call_status": "ended",
        "call_analysis": {"in_voicemail": True},
    },
    "mismatch": {
        "disconnection_reason": "agent_hangup",
        "call_status": "ended",
        "summary": {"result": "mismatch name", "call_outcome": "divergent"},
    },
    "qualified": {
        "disconnection_reason": "user_hangup",
        "call_status": "ended",
        "summary": {"result": "interested", "call_outcome": "appointment_requested"},
    },
}


async def post_event(base_url: str, secret: str, payload: dict) -> httpx.Response:
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Retell-Signature": sign_hmac_sha256(secret, body),
    }
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{base_url}{WEBHOOK_PATH}", content=body, headers=headers)
        logger.info("%s -> %s %s", payload["event"], resp.status_code, resp.text)
        return resp


async def simulate_call(base_url: str, secret: str, call_id: str, scenario: str) -> None:
    """Send started, ended and analyzed events for one call."""
    ended_call = {"call_id": call_id, **SCENARIOS[scenario]}

    await post_event(base_url, secret, {"event": "call_started", "call": {"call_id": call_id}})
    await post_event(base_url, secret, {"event": "call_ended", "call": ended_call})
    await post_event(base_url, secret, {
        "event": "call_analyzed",
        "call": {
            **ended_call,
            "transcript": f"Simulated transcript ({scenario})",
        },
    })


def main():
    parser = argparse.ArgumentParser(description="Simulate call lifecycle webhooks")
    parser.add_argument("--call-id", required=True, help="Call handle of an existing attempt")
    parser.add_argument("--scenario", choices=sorted(SCENARIOS), default="no_answer")
    parser.add_argument("--secret", default="", help="Webhook secret (defaults to settings)")
    parser.add_argument("--base-url", default=BASE_URL)
    args = parser.parse_args()

    secret = args.secret
    if not secret:
        from leadcall.config import get_settings
        secret = get_settings().webhook_secret
    if not secret:
        parser.error("No webhook secret configured; pass --secret")

    asyncio.run(simulate_call(args.base_url, secret, args.call_id, args.scenario))


if __name__ == "__main__":
    main()
