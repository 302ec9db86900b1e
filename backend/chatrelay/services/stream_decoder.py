"""Decoder for the OpenAI chat completions streaming wire format.

The provider sends server-sent events, one record per line::

    data: {"choices": [{"delta": {"content": "Hel"}, ...}], ...}
    data: {"choices": [{"delta": {"content": "lo"}, ...}], ...}
    data: [DONE]

This module knows nothing about connections; it decodes one line at a time so
another provider's framing can be swapped in without touching the relay.
"""
import json

DONE_MARKER = "[DONE]"


class EndOfStream:
    """Sentinel for the provider's explicit end-of-stream marker."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = EndOfStream()


class MalformedRecord(Exception):
    """A single record could not be decoded. Safe to skip."""

    def __init__(self, message: str, line: str = ""):
        self.message = message
        self.line = line
        super().__init__(message)


class ProviderStreamError(Exception):
    """The provider reported an error inside the stream."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def decode_line(line: str) -> str | EndOfStream | None:
    """Decode one line of the event stream.

    Returns the text delta carried by the record, END_OF_STREAM for the
    termination marker, or None for lines that carry no text (blank
    separators, comments, other SSE fields, role-only or empty deltas).

    Raises:
        MalformedRecord: the record's payload is not the expected JSON shape.
        ProviderStreamError: the record is a provider error object.
    """
    line = line.strip()
    if not line or line.startswith(":"):
        return None

    field, _, value = line.partition(":")
    if field != "data":
        return None

    data = value.strip()
    if data == DONE_MARKER:
        return END_OF_STREAM
    if not data:
        return None

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise MalformedRecord(f"Invalid JSON in stream record: {e}", line)

    if not isinstance(payload, dict):
        raise MalformedRecord("Stream record is not a JSON object", line)

    if payload.get("error"):
        error = payload["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise ProviderStreamError(message or "Unknown provider error")

    choices = payload.get("choices")
    if not isinstance(choices, list):
        raise MalformedRecord("Stream record has no choices list", line)
    if not choices:
        # Usage-only records carry an empty choices list
        return None

    choice = choices[0]
    if not isinstance(choice, dict):
        raise MalformedRecord("Stream choice is not an object", line)

    delta = choice.get("delta") or {}
    if not isinstance(delta, dict):
        raise MalformedRecord("Stream delta is not an object", line)

    content = delta.get("content")
    if content is None or content == "":
        return None
    if not isinstance(content, str):
        raise MalformedRecord("Stream delta content is not a string", line)
    return content
