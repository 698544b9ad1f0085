from __future__ import annotations


class IntegrationError(RuntimeError):
    """An outside service (SMS gateway, ...) the engine cannot use right now."""

    kind = "unavailable"

    def __init__(self, integration: str, detail: str = ""):
        self.integration = (integration or "integration").strip().lower()
        self.detail = (detail or "").strip()
        text = f"INTEGRATION_{self.kind.upper()}:{self.integration}"
        super().__init__(f"{text}:{self.detail}" if self.detail else text)

    @property
    def reason(self) -> str:
        """Short code for job summaries, e.g. "messaging_disabled"."""
        return f"{self.integration}_{self.kind}"


class IntegrationDisabledError(IntegrationError):
    kind = "disabled"


class IntegrationMisconfiguredError(IntegrationError):
    kind = "misconfigured"
