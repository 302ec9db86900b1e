"""Chat endpoints.

POST /chat returns the full reply as JSON. POST /chat-stream relays the reply
as server-sent events: ``token`` records in provider order, then exactly one
``done`` or ``error`` record.
"""
import json
import logging
from contextlib import aclosing

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from chatrelay.api.deps import client_identity, get_app_settings, get_rate_limiter, get_upstream
from chatrelay.config import Settings
from chatrelay.schemas.chat import ChatReply, ChatRequest, ErrorResponse
from chatrelay.services.errors import RelayError, RelayErrorKind, validation_failed
from chatrelay.services.llm_provider import UpstreamClient
from chatrelay.services.rate_limiter import RateLimiter
from chatrelay.services.session import CallState, ChatCall
from chatrelay.services.stream_relay import relay_stream
from chatrelay.services.validator import validate_chat_request

logger = logging.getLogger(__name__)
router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    408: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def error_response(error: RelayError) -> JSONResponse:
    headers = {"Retry-After": str(error.retry_after)} if error.retry_after else None
    return JSONResponse(status_code=error.status_code, content=error.to_body(), headers=headers)


def sse_event(event: str, data: dict | str) -> str:
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def stream_error_response(error: RelayError) -> StreamingResponse:
    """A stream holding only the error record, sent with the error's status."""
    headers = dict(SSE_HEADERS)
    if error.retry_after:
        headers["Retry-After"] = str(error.retry_after)

    async def single_error():
        yield sse_event("error", error.to_stream_payload())

    return StreamingResponse(
        single_error(),
        status_code=error.status_code,
        media_type="text/event-stream",
        headers=headers,
    )


async def admit_call(
    call: ChatCall,
    request: Request,
    settings: Settings,
    limiter: RateLimiter,
) -> ChatRequest | RelayError:
    """Validate the body, then charge the caller's rate limit."""
    call.advance(CallState.VALIDATING)
    try:
        payload = await request.json()
    except ValueError:
        return call.fail(validation_failed("Request body must be valid JSON."))

    validated = validate_chat_request(payload, settings)
    if isinstance(validated, RelayError):
        return call.fail(validated)

    call.advance(CallState.RATE_CHECKING)
    decision = await limiter.hit(call.identity)
    if not decision.allowed:
        return call.fail(RelayError(
            RelayErrorKind.RATE_LIMITED,
            f"More than {settings.rate_limit_capacity} requests in {settings.rate_limit_window_seconds}s",
            retry_after=decision.retry_after,
        ))

    call.advance(CallState.DISPATCHING)
    return validated


@router.post("/chat", response_model=ChatReply, responses=ERROR_RESPONSES)
async def send_chat_message(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    limiter: RateLimiter = Depends(get_rate_limiter),
    upstream: UpstreamClient = Depends(get_upstream),
):
    """Send a chat message and receive the complete reply."""
    call = ChatCall(mode="buffered", identity=client_identity(request))

    admitted = await admit_call(call, request, settings, limiter)
    if isinstance(admitted, RelayError):
        return error_response(admitted)

    call.advance(CallState.COMPLETING)
    result = await upstream.complete(admitted)
    if isinstance(result, RelayError):
        return error_response(call.fail(result))

    call.advance(CallState.DONE)
    return ChatReply(reply=result.text)


@router.post("/chat-stream", response_class=StreamingResponse)
async def stream_chat_message(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    limiter: RateLimiter = Depends(get_rate_limiter),
    upstream: UpstreamClient = Depends(get_upstream),
):
    """Send a chat message and receive the reply as an SSE stream.

    Every failure arrives as one ``error`` record, then the stream closes.
    Validation and rate-limit failures keep their 400/429 status.
    """
    call = ChatCall(mode="stream", identity=client_identity(request))

    admitted = await admit_call(call, request, settings, limiter)
    if isinstance(admitted, RelayError):
        return stream_error_response(admitted)

    call.advance(CallState.STREAMING)

    async def generate_sse():
        try:
            async with aclosing(relay_stream(upstream, admitted)) as events:
                async for event in events:
                    if event.kind == "token":
                        call.fragments += 1
                        yield sse_event("token", {"content": event.text, "index": event.index})
                    elif event.kind == "done":
                        call.advance(CallState.DONE)
                        yield sse_event("done", "[DONE]")
                    else:
                        call.fail(event.error)
                        yield sse_event("error", event.error.to_stream_payload())
        except Exception as e:
            logger.exception(f"Chat streaming error: {e}")
            if not call.finished:
                error = call.fail(RelayError(RelayErrorKind.STREAM_INTERRUPTED, f"{type(e).__name__}: {e}"))
                yield sse_event("error", error.to_stream_payload())
        finally:
            if not call.finished:
                call.disconnect()

    return StreamingResponse(
        generate_sse(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
