"""Error taxonomy for the gateway pipeline.

Every failure a caller can observe is a ClientError subclass carrying
an HTTP-like status (0 when there is none), a short type tag and any
structured detail the provider returned.
"""

from __future__ import annotations

from typing import Any


class ClientError(Exception):
    """Base class for all errors raised by the gateway."""

    type: str = "client_error"

    def __init__(
        self,
        message: str,
        status: int = 0,
        data: Any = None,
        type: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.data = data
        if type is not None:
            self.type = type

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible error envelope."""
        return {
            "error": {
                "message": self.message,
                "code": self.status,
                "type": self.type,
                "details": self.data,
            }
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(status={self.status}, type={self.type!r}, message={self.message!r})"


class ValidationError(ClientError):
    """Malformed caller input. Never retried."""

    type = "validation_error"


class TransportError(ClientError):
    """Network or HTTP failure talking to the provider."""

    type = "transport_error"

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429


class StreamParseError(ClientError):
    """A single stream record could not be decoded. Logged, never raised to callers."""

    type = "stream_parse_error"

    def __init__(self, message: str, line: str = ""):
        super().__init__(message, data={"line": line})
        self.line = line


class CancellationError(ClientError):
    """The dispatch's cancellation token fired mid-operation. Never retried."""

    type = "cancelled"
