"""Per-call state tracking for the chat endpoints.

Received -> Validating -> RateChecking -> Dispatching -> Completing|Streaming -> Done,
with Errored reachable from any non-final state. Each call logs one summary
line when it finishes.
"""
import enum
import logging
import time

from chatrelay.services.errors import RelayError

logger = logging.getLogger(__name__)


class CallState(str, enum.Enum):
    RECEIVED = "Received"
    VALIDATING = "Validating"
    RATE_CHECKING = "RateChecking"
    DISPATCHING = "Dispatching"
    COMPLETING = "Completing"
    STREAMING = "Streaming"
    DONE = "Done"
    ERRORED = "Errored"


FINAL_STATES = {CallState.DONE, CallState.ERRORED}

TRANSITIONS: dict[CallState, set[CallState]] = {
    CallState.RECEIVED: {CallState.VALIDATING},
    CallState.VALIDATING: {CallState.RATE_CHECKING},
    CallState.RATE_CHECKING: {CallState.DISPATCHING},
    CallState.DISPATCHING: {CallState.COMPLETING, CallState.STREAMING},
    CallState.COMPLETING: {CallState.DONE},
    CallState.STREAMING: {CallState.DONE},
}


class InvalidTransition(Exception):
    def __init__(self, current: CallState, target: CallState):
        self.message = f"Cannot move chat call from {current.value} to {target.value}"
        super().__init__(self.message)


class ChatCall:
    """Lifecycle of one inbound chat call."""

    def __init__(self, mode: str, identity: str):
        self.mode = mode
        self.identity = identity
        self.state = CallState.RECEIVED
        self.error: RelayError | None = None
        self.fragments = 0
        self.cancelled = False
        self._started = time.perf_counter()

    @property
    def finished(self) -> bool:
        return self.state in FINAL_STATES

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._started) * 1000)

    def advance(self, target: CallState) -> None:
        if target not in TRANSITIONS.get(self.state, set()):
            raise InvalidTransition(self.state, target)
        self.state = target
        if target is CallState.DONE:
            self._log_summary()

    def fail(self, error: RelayError) -> RelayError:
        """Move to Errored, log, and hand the error back for reporting."""
        if self.finished:
            raise InvalidTransition(self.state, CallState.ERRORED)
        failed_in = self.state
        self.state = CallState.ERRORED
        self.error = error
        self._log_summary(failed_in)
        return error

    def disconnect(self) -> None:
        """The client went away mid-call; the upstream request has been cancelled."""
        self.cancelled = True
        logger.info(
            f"Chat call cancelled by client: mode={self.mode}, client={self.identity}, "
            f"state={self.state.value}, fragments={self.fragments}, elapsed_ms={self.elapsed_ms}"
        )

    def _log_summary(self, failed_in: CallState | None = None) -> None:
        if self.error is None:
            logger.info(
                f"Chat call done: mode={self.mode}, client={self.identity}, "
                f"fragments={self.fragments}, elapsed_ms={self.elapsed_ms}"
            )
            return

        log = logger.warning if self.error.status_code < 500 else logger.error
        log(
            f"Chat call failed: mode={self.mode}, client={self.identity}, "
            f"state={failed_in.value if failed_in else self.state.value}, "
            f"error={self.error.kind.value}, detail={self.error.detail!r}, "
            f"fragments={self.fragments}, elapsed_ms={self.elapsed_ms}"
        )
