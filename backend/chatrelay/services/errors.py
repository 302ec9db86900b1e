"""Relay error values.

Failures travel through the relay as ``RelayError`` return values rather than
exceptions, and are translated into HTTP responses or stream records once, at
the endpoint boundary.
"""
import enum
from dataclasses import dataclass


class RelayErrorKind(str, enum.Enum):
    VALIDATION_FAILED = "ValidationFailed"
    RATE_LIMITED = "RateLimited"
    UPSTREAM_TIMEOUT = "UpstreamTimeout"
    UPSTREAM_AUTH_FAILED = "UpstreamAuthFailed"
    UPSTREAM_RATE_LIMITED = "UpstreamRateLimited"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    STREAM_INTERRUPTED = "StreamInterrupted"


STATUS_CODES: dict[RelayErrorKind, int] = {
    RelayErrorKind.VALIDATION_FAILED: 400,
    RelayErrorKind.RATE_LIMITED: 429,
    RelayErrorKind.UPSTREAM_RATE_LIMITED: 429,
    RelayErrorKind.UPSTREAM_TIMEOUT: 408,
    RelayErrorKind.UPSTREAM_AUTH_FAILED: 500,
    RelayErrorKind.UPSTREAM_UNAVAILABLE: 500,
    RelayErrorKind.STREAM_INTERRUPTED: 500,
}

CLIENT_MESSAGES: dict[RelayErrorKind, str] = {
    RelayErrorKind.VALIDATION_FAILED: "Validation error. Please check your input.",
    RelayErrorKind.RATE_LIMITED: "Too many requests. Please try again later.",
    RelayErrorKind.UPSTREAM_RATE_LIMITED: "The language model is busy. Please try again shortly.",
    RelayErrorKind.UPSTREAM_TIMEOUT: "The language model took too long to respond. Please try again.",
    RelayErrorKind.UPSTREAM_AUTH_FAILED: "The chat service is not configured correctly.",
    RelayErrorKind.UPSTREAM_UNAVAILABLE: "The language model is currently unavailable. Please try again later.",
    RelayErrorKind.STREAM_INTERRUPTED: "The response stream was interrupted. Please try again.",
}


@dataclass(frozen=True)
class RelayError:
    """A terminal failure of one chat call.

    ``detail`` is for server-side logs only. Validation reasons are the one
    exception: they describe the caller's own input and are returned as-is.
    """

    kind: RelayErrorKind
    detail: str = ""
    retry_after: int | None = None

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    @property
    def client_message(self) -> str:
        if self.kind is RelayErrorKind.VALIDATION_FAILED and self.detail:
            return self.detail
        return CLIENT_MESSAGES[self.kind]

    def to_body(self) -> dict:
        return {
            "status": "error",
            "code": self.status_code,
            "error": self.kind.value,
            "message": self.client_message,
        }

    def to_stream_payload(self) -> dict:
        return {"error": self.kind.value, "message": self.client_message}


def validation_failed(reason: str) -> RelayError:
    return RelayError(RelayErrorKind.VALIDATION_FAILED, reason)
