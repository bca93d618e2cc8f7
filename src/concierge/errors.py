"""Error types raised by the conversation gate and its collaborators."""
from __future__ import annotations

from typing import Any, Dict, Optional


class GateError(Exception):
    """Base class for errors that map onto a structured HTTP response."""

    status_code: int = 500
    code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        detail: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class MalformedPayload(GateError):
    """Request body is not JSON or does not carry a valid transcript."""

    status_code = 400
    code = "invalid_request"


class MisconfiguredService(GateError):
    """A required setting (the provider API key) is missing."""

    status_code = 500
    code = "misconfigured"


class ProviderFailure(GateError):
    """The completion provider reported an error or could not be reached."""

    status_code = 502
    code = "provider_error"


class EmptyCompletion(GateError):
    """The provider answered successfully but returned no usable text."""

    status_code = 502
    code = "empty_response"


class SpendCapReached(GateError):
    """Today's recorded spend is at or above the configured hard cap."""

    status_code = 429
    code = "daily_cap_reached"

    def __init__(self, message: str, current: float, limit: float):
        super().__init__(message, detail={"spent": round(current, 6), "cap": limit})
        self.current = current
        self.limit = limit
