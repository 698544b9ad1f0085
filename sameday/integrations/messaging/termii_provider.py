from __future__ import annotations

import os

import requests

from sameday.integrations.messaging.base import MessageResult, MessagingProvider, international_number


TERMII_BASE = "https://api.ng.termii.com/api"


def _map_termii_error(status: int, message: str) -> tuple[str, bool]:
    msg = (message or "").lower()
    if status in (401, 403):
        return "AUTH_FAILED", False
    if status == 429:
        return "RATE_LIMITED", True
    if status >= 500 or status == 404:
        return "PROVIDER_DOWN", True
    if status in (400, 422):
        if "sender" in msg:
            return "INVALID_SENDER", False
        return "INVALID_RECIPIENT", False
    return "PROVIDER_DOWN", True


class TermiiMessagingProvider(MessagingProvider):
    name = "termii"

    def __init__(self, *, api_key: str, sender_id: str, timeout: float = 12.0):
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout

    def send_sms(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        payload = {
            "to": international_number(to),
            "from": self.sender_id,
            "sms": message,
            "type": "plain",
            "channel": "generic",
            "api_key": self.api_key,
        }
        try:
            r = requests.post(f"{TERMII_BASE}/sms/send", json=payload, timeout=self.timeout)
            data = r.json() if r.content else {}
        except requests.Timeout:
            return MessageResult(ok=False, code="PROVIDER_DOWN", message="timeout", retryable=True)
        except (requests.RequestException, ValueError) as e:
            return MessageResult(ok=False, code="PROVIDER_DOWN", message=str(e)[:200], retryable=True)

        raw = data if isinstance(data, dict) else {"payload": data}
        if 200 <= r.status_code < 300:
            return MessageResult(
                ok=True,
                code="OK",
                message="sent",
                provider_ref=str(raw.get("message_id") or reference or "")[:120],
                raw=raw,
            )
        detail = str(raw.get("message") or raw.get("error") or "")
        code, retryable = _map_termii_error(r.status_code, detail)
        return MessageResult(
            ok=False,
            code=code,
            message=(detail or f"http_{r.status_code}")[:200],
            retryable=retryable,
            raw=raw,
        )


def termii_health() -> dict:
    missing = []
    if not (os.getenv("TERMII_API_KEY") or "").strip():
        missing.append("TERMII_API_KEY")
    if not (os.getenv("TERMII_SENDER_ID") or "").strip():
        missing.append("TERMII_SENDER_ID")
    return {"missing": missing}
