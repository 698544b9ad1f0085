from __future__ import annotations

import os

from sameday.integrations.messaging.base import MessageResult, MessagingProvider


class MockMessagingProvider(MessagingProvider):
    """Deterministic provider for local runs and tests.

    Messages containing "[fail]" (or every message when MOCK_SMS_FORCE_FAIL=1)
    fail with a retryable error. Sent messages are kept in `outbox`.
    """

    name = "mock"

    def __init__(self):
        self.outbox: list[dict] = []

    def _force_failure(self, message: str) -> bool:
        msg = (message or "").lower()
        return "[fail]" in msg or (os.getenv("MOCK_SMS_FORCE_FAIL") or "").strip() == "1"

    def send_sms(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        if self._force_failure(message):
            return MessageResult(ok=False, code="PROVIDER_DOWN", message="mock forced failure", retryable=True)
        self.outbox.append({"to": to, "message": message, "reference": reference})
        return MessageResult(
            ok=True,
            code="OK",
            message="mock_sent",
            provider_ref=f"mock-{reference or len(self.outbox)}",
            raw={"to": to, "reference": reference},
        )
