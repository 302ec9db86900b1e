"""Upstream LLM client.

Talks to an OpenAI-compatible chat completions API in one of two modes:

- complete(): one buffered request, returns the full reply text.
- open_stream(): a long-lived streaming request, returns a FragmentStream
  whose next_fragment() yields text fragments in provider order.

Provider failures are returned as RelayError values, never raised.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from chatrelay.config import Settings
from chatrelay.schemas.chat import ChatRequest
from chatrelay.services.errors import RelayError, RelayErrorKind
from chatrelay.services.stream_decoder import (
    END_OF_STREAM,
    EndOfStream,
    MalformedRecord,
    ProviderStreamError,
    decode_line,
)

logger = logging.getLogger(__name__)

# Max characters of an upstream error body kept in logs
ERROR_BODY_LIMIT = 400


@dataclass(frozen=True)
class UpstreamCompletion:
    text: str
    model: str = ""
    finish_reason: str | None = None


@dataclass(frozen=True)
class StreamFragment:
    """One incremental piece of generated text; ``index`` is its delivery position."""

    index: int
    text: str


class FragmentStream(ABC):
    """Finite, non-restartable sequence of fragments from one upstream call.

    next_fragment() returns StreamFragment items until it returns a terminal
    item: END_OF_STREAM on a clean finish, or a RelayError. Once terminal, it
    keeps returning that same item.
    """

    @abstractmethod
    async def next_fragment(self) -> StreamFragment | EndOfStream | RelayError:
        ...

    async def aclose(self) -> None:
        pass


class UpstreamClient(ABC):
    @abstractmethod
    async def complete(self, request: ChatRequest) -> UpstreamCompletion | RelayError:
        ...

    @abstractmethod
    async def open_stream(self, request: ChatRequest) -> FragmentStream | RelayError:
        ...

    def is_configured(self) -> bool:
        return True


def status_error(status_code: int, body: str = "") -> RelayError:
    """Map a non-2xx provider status to a RelayError."""
    detail = f"HTTP {status_code}: {body[:ERROR_BODY_LIMIT]}"
    if status_code == 401:
        return RelayError(RelayErrorKind.UPSTREAM_AUTH_FAILED, detail)
    if status_code == 429:
        return RelayError(RelayErrorKind.UPSTREAM_RATE_LIMITED, detail)
    return RelayError(RelayErrorKind.UPSTREAM_UNAVAILABLE, detail)


class OpenAIFragmentStream(FragmentStream):
    """Reads an open streaming response line by line.

    Owns both the response and its client and closes them on any terminal
    item or on aclose().
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response, idle_timeout: float):
        self._client = client
        self._response = response
        self._lines = response.aiter_lines()
        self._idle_timeout = idle_timeout
        self._position = 0
        self._terminal: EndOfStream | RelayError | None = None
        self._closed = False

    async def next_fragment(self) -> StreamFragment | EndOfStream | RelayError:
        if self._terminal is not None:
            return self._terminal

        while True:
            try:
                async with asyncio.timeout(self._idle_timeout):
                    line = await anext(self._lines)
            except StopAsyncIteration:
                return await self._finish(self._interrupted(
                    "Upstream closed the stream without an end-of-stream marker"
                ))
            except (TimeoutError, httpx.TimeoutException):
                return await self._finish(self._interrupted(
                    f"No data from upstream for {self._idle_timeout}s"
                ))
            except httpx.HTTPError as e:
                return await self._finish(self._interrupted(
                    f"Upstream connection failed: {type(e).__name__}: {e}"
                ))

            try:
                decoded = decode_line(line)
            except MalformedRecord as e:
                logger.warning(f"Skipping malformed stream record: {e.message} ({e.line[:200]!r})")
                continue
            except ProviderStreamError as e:
                return await self._finish(self._interrupted(f"Provider error in stream: {e.message}"))

            if decoded is None:
                continue
            if decoded is END_OF_STREAM:
                return await self._finish(END_OF_STREAM)

            fragment = StreamFragment(index=self._position, text=decoded)
            self._position += 1
            return fragment

    def _interrupted(self, detail: str) -> RelayError:
        return RelayError(RelayErrorKind.STREAM_INTERRUPTED, detail)

    async def _finish(self, terminal: EndOfStream | RelayError) -> EndOfStream | RelayError:
        self._terminal = terminal
        if isinstance(terminal, RelayError):
            logger.warning(
                f"Upstream stream interrupted after {self._position} fragments: {terminal.detail}"
            )
        await self.aclose()
        return terminal

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._terminal is None:
            self._terminal = self._interrupted("Stream closed before the end-of-stream marker")
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class OpenAIChatClient(UpstreamClient):
    """Client for OpenAI-compatible /chat/completions endpoints."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        # Injected in tests (httpx.MockTransport); None means a real network transport
        self._transport = transport

    def is_configured(self) -> bool:
        return self.settings.api_key_configured

    def build_messages(self, request: ChatRequest) -> list[dict]:
        """System prompt, then history in chronological order, then the new message."""
        messages = []
        if self.settings.system_prompt:
            messages.append({"role": "system", "content": self.settings.system_prompt})
        messages.extend({"role": turn.role, "content": turn.content} for turn in request.history)
        messages.append({"role": "user", "content": request.message})
        return messages

    def _payload(self, request: ChatRequest, stream: bool) -> dict:
        payload = {
            "model": self.settings.openai_model,
            "messages": self.build_messages(request),
        }
        if stream:
            payload["stream"] = True
        return payload

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.settings.openai_api_key}",
            "Content-Type": "application/json",
        }

    def _client(self, read_timeout: float) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            read_timeout,
            connect=self.settings.connect_timeout,
        )
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _missing_key(self) -> RelayError:
        logger.error("OPENAI_API_KEY is not configured; refusing to call the upstream provider")
        return RelayError(RelayErrorKind.UPSTREAM_AUTH_FAILED, "OPENAI_API_KEY is not configured")

    async def complete(self, request: ChatRequest) -> UpstreamCompletion | RelayError:
        if not self.is_configured():
            return self._missing_key()

        deadline = self.settings.request_timeout
        try:
            async with asyncio.timeout(deadline):
                async with self._client(deadline) as client:
                    resp = await client.post(
                        self.settings.chat_completions_url,
                        json=self._payload(request, stream=False),
                        headers=self._headers(),
                    )
        except (TimeoutError, httpx.TimeoutException):
            logger.warning(f"Upstream request exceeded {deadline}s deadline")
            return RelayError(RelayErrorKind.UPSTREAM_TIMEOUT, f"No response within {deadline}s")
        except httpx.HTTPError as e:
            logger.error(f"Upstream request failed: {type(e).__name__}: {e}")
            return RelayError(RelayErrorKind.UPSTREAM_UNAVAILABLE, str(e))

        if not resp.is_success:
            error = status_error(resp.status_code, resp.text)
            logger.error(f"Upstream returned {error.kind.value}: {error.detail}")
            return error

        try:
            data = resp.json()
            choice = data["choices"][0]
            content = choice["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Unexpected upstream response shape: {e}; body={resp.text[:ERROR_BODY_LIMIT]}")
            return RelayError(RelayErrorKind.UPSTREAM_UNAVAILABLE, "Malformed completion response")

        if not isinstance(content, str):
            logger.error(f"Upstream completion has no text content: {str(choice)[:ERROR_BODY_LIMIT]}")
            return RelayError(RelayErrorKind.UPSTREAM_UNAVAILABLE, "Completion without text content")

        return UpstreamCompletion(
            text=content,
            model=data.get("model") or self.settings.openai_model,
            finish_reason=choice.get("finish_reason"),
        )

    async def open_stream(self, request: ChatRequest) -> FragmentStream | RelayError:
        if not self.is_configured():
            return self._missing_key()

        deadline = self.settings.request_timeout
        client = self._client(self.settings.stream_idle_timeout)
        upstream_request = client.build_request(
            "POST",
            self.settings.chat_completions_url,
            json=self._payload(request, stream=True),
            headers=self._headers(),
        )

        try:
            async with asyncio.timeout(deadline):
                response = await client.send(upstream_request, stream=True)
        except (TimeoutError, httpx.TimeoutException):
            await client.aclose()
            logger.warning(f"Upstream stream did not open within {deadline}s")
            return RelayError(RelayErrorKind.UPSTREAM_TIMEOUT, f"Stream not opened within {deadline}s")
        except httpx.HTTPError as e:
            await client.aclose()
            logger.error(f"Upstream stream request failed: {type(e).__name__}: {e}")
            return RelayError(RelayErrorKind.UPSTREAM_UNAVAILABLE, str(e))
        except BaseException:
            await client.aclose()
            raise

        if not response.is_success:
            try:
                await response.aread()
                body = response.text
            except httpx.HTTPError:
                body = ""
            finally:
                await response.aclose()
                await client.aclose()
            error = status_error(response.status_code, body)
            logger.error(f"Upstream stream refused with {error.kind.value}: {error.detail}")
            return error

        return OpenAIFragmentStream(client, response, self.settings.stream_idle_timeout)


def get_upstream_client(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> UpstreamClient:
    """Create the upstream client for the configured provider."""
    provider = settings.llm_provider.lower()

    if provider == "openai":
        logger.info(f"Creating upstream client: model={settings.openai_model}, base_url={settings.openai_base_url}")
        return OpenAIChatClient(settings, transport=transport)

    raise ValueError(f"Unknown LLM provider: '{settings.llm_provider}'. Supported: openai.")
