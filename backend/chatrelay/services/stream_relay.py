"""Relay upstream fragments to the client as an ordered event sequence."""
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from chatrelay.schemas.chat import ChatRequest
from chatrelay.services.errors import RelayError
from chatrelay.services.llm_provider import StreamFragment, UpstreamClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayEvent:
    """One event for the client: a token, or exactly one terminal done/error."""

    kind: str  # token | done | error
    text: str = ""
    index: int = -1
    error: RelayError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind != "token"


DONE = RelayEvent(kind="done")


async def relay_stream(upstream: UpstreamClient, request: ChatRequest) -> AsyncIterator[RelayEvent]:
    """Yield each fragment as soon as it arrives, then one terminal event.

    The upstream stream is closed however this generator ends: normal
    completion, an upstream error, an early aclose() by the consumer, or
    cancellation when the client disconnects.
    """
    opened = await upstream.open_stream(request)
    if isinstance(opened, RelayError):
        yield RelayEvent(kind="error", error=opened)
        return

    try:
        while True:
            item = await opened.next_fragment()
            if isinstance(item, StreamFragment):
                yield RelayEvent(kind="token", text=item.text, index=item.index)
            elif isinstance(item, RelayError):
                yield RelayEvent(kind="error", error=item)
                return
            else:
                yield DONE
                return
    finally:
        await opened.aclose()
