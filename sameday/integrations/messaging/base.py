from __future__ import annotations

from dataclasses import dataclass

DEFAULT_COUNTRY_CODE = "234"


@dataclass
class MessageResult:
    ok: bool
    code: str = ""
    message: str = ""
    provider_ref: str = ""
    retryable: bool = False
    raw: dict | None = None

    def failure_text(self) -> str:
        """Stored on the notification row as `last_error`."""
        return f"{self.code or 'UNKNOWN'}:{self.message}"[:240]


def international_number(phone: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """08031234567, +2348031234567 and 2348031234567 all become 2348031234567."""
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    if digits.startswith("0"):
        return country_code + digits[1:]
    return digits


class MessagingProvider:
    name = "unknown"

    def send_sms(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        raise NotImplementedError
