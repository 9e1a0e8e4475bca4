class AnonchatError(Exception):
    """Base class for every error surfaced to the user as a notice."""


class ValidationError(AnonchatError):
    """Raised for missing or empty user input; no network call was made."""


class RelayError(AnonchatError):
    """Raised when the remote store or its realtime channel fails."""

    def __init__(self, op: str, detail: str = ""):
        self.op = op
        self.detail = detail
        super().__init__(f"{op} failed: {detail}" if detail else f"{op} failed")
