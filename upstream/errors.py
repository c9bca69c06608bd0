"""
Upstream Errors

Structured failure of a session-mint call, plus extraction of a
human-readable message from the backend's error payloads.
"""

from typing import Any, Mapping, Optional


class UpstreamSessionError(Exception):
    """
    Session mint failed.

    Attributes:
        message: Human-readable message for the caller
        status: HTTP-style status code
        details: Raw upstream payload, when there was one
    """

    def __init__(self, message: str, status: int = 500, details: Any = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.details = details

    def __repr__(self) -> str:
        return f"UpstreamSessionError(status={self.status}, message={self.message!r})"


def _message_of(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping) and isinstance(value.get("message"), str):
        return value["message"]
    return None


def extract_upstream_error(payload: Optional[Mapping[str, Any]]) -> Optional[str]:
    """
    Pull a message out of an upstream error body.

    Tried in order: error, error.message, details, details.error,
    details.error.message, message.
    """
    if not isinstance(payload, Mapping):
        return None

    found = _message_of(payload.get("error"))
    if found:
        return found

    details = payload.get("details")
    if isinstance(details, str):
        return details
    if isinstance(details, Mapping) and "error" in details:
        found = _message_of(details.get("error"))
        if found:
            return found

    if isinstance(payload.get("message"), str):
        return payload["message"]
    return None
