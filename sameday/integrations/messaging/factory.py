from __future__ import annotations

import os

from sameday.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from sameday.integrations.messaging.base import MessagingProvider
from sameday.integrations.messaging.mock_provider import MockMessagingProvider
from sameday.integrations.messaging.termii_provider import TermiiMessagingProvider, termii_health


def _mode() -> str:
    return (os.getenv("MESSAGING_PROVIDER") or "disabled").strip().lower()


def build_messaging_provider() -> MessagingProvider:
    mode = _mode()
    if mode in ("", "disabled", "off", "none"):
        raise IntegrationDisabledError("messaging")
    if mode == "mock":
        return MockMessagingProvider()
    if mode != "termii":
        raise IntegrationMisconfiguredError("messaging", f"unknown provider {mode}")

    missing = termii_health().get("missing", [])
    if missing:
        raise IntegrationMisconfiguredError("messaging", f"missing {', '.join(missing)}")
    return TermiiMessagingProvider(
        api_key=(os.getenv("TERMII_API_KEY") or "").strip(),
        sender_id=(os.getenv("TERMII_SENDER_ID") or "").strip(),
    )


def messaging_health() -> dict:
    mode = _mode()
    missing = termii_health().get("missing", []) if mode == "termii" else []
    if mode in ("", "disabled", "off", "none"):
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "mode": mode or "disabled", "missing": missing}
