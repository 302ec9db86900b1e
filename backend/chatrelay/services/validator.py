"""Inbound chat request validation.

Runs before any network I/O so oversized or malformed payloads never reach the
upstream provider.
"""
from typing import Any

from pydantic import ValidationError

from chatrelay.config import Settings
from chatrelay.schemas.chat import ChatRequest
from chatrelay.services.errors import RelayError, validation_failed


def _format_location(loc: tuple) -> str:
    return ".".join(str(part) for part in loc)


def _describe(exc: ValidationError) -> str:
    """Turn the first pydantic error into a one-line, human-readable reason."""
    first = exc.errors()[0]
    loc = _format_location(first.get("loc", ()))
    msg = first.get("msg", "Invalid value")
    return f"{loc}: {msg}" if loc else msg


def validate_chat_request(payload: Any, settings: Settings) -> ChatRequest | RelayError:
    """Validate a decoded JSON payload into a ChatRequest.

    Returns a ValidationFailed RelayError instead of raising.
    """
    if not isinstance(payload, dict):
        return validation_failed("Request body must be a JSON object.")

    history = payload.get("history")
    if isinstance(history, list) and len(history) > settings.max_history_turns:
        return validation_failed(
            f"history: at most {settings.max_history_turns} turns are allowed "
            f"(got {len(history)})."
        )

    try:
        request = ChatRequest.model_validate(payload)
    except ValidationError as e:
        return validation_failed(_describe(e))

    trimmed = request.message.strip()
    if not trimmed:
        return validation_failed("message: must not be empty.")
    # The message is forwarded as received, so padding counts toward the limit
    if len(request.message) > settings.max_message_length:
        return validation_failed(
            f"message: exceeds {settings.max_message_length} character limit "
            f"({len(request.message)} characters)."
        )

    return request
