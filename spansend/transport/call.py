"""
Async handles for submitted export requests.

A Call moves from PENDING to exactly one of SUCCEEDED, FAILED or CANCELLED.
It supports blocking waits, completion callbacks and cancellation from any
thread. Transport failures are only ever visible here, never raised to the
thread that submitted the request.

Responses are streamed so that cancelling a running call can close the
response and unblock the worker reading its body. The phase before the
response headers arrive cannot be interrupted; it ends with the response
or with the client timeout. The dispatcher frees the slot of a cancelled
call straight away either way.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Optional

import httpx

from spansend.exceptions import CallCancelledError, TransportError


logger = logging.getLogger(__name__)


class CallState(Enum):
    """States of a call."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SkipReason(str, Enum):
    """Why a call completed without touching the network."""
    DISABLED = "disabled"
    ASSEMBLY_FAILED = "assembly_failed"
    CLOSED = "closed"


class Call:
    """Handle for one outbound request.

    The request runs on a dispatcher worker via ``run()``. Callers observe it
    through ``result()``, ``exception()``, ``add_done_callback()`` and
    ``cancel()``.

    Example:
        call = sender.send(payload)
        call.add_done_callback(lambda c: print(c.state))
        call.result(timeout=5)
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        request: Optional[httpx.Request] = None,
    ) -> None:
        self._client = client
        self._request = request
        self._state = CallState.PENDING
        self._error: Optional[BaseException] = None
        self._status_code: Optional[int] = None
        self._condition = threading.Condition()
        self._callbacks: list[Callable[["Call"], None]] = []
        self._started = False
        self._response: Optional[httpx.Response] = None

    @property
    def request(self) -> Optional[httpx.Request]:
        return self._request

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def status_code(self) -> Optional[int]:
        """HTTP status of the response, once one was received."""
        return self._status_code

    @property
    def skipped(self) -> Optional[SkipReason]:
        """Reason the call was skipped locally; None for real requests."""
        return None

    def done(self) -> bool:
        return self._state is not CallState.PENDING

    def cancelled(self) -> bool:
        return self._state is CallState.CANCELLED

    def run(self) -> None:
        """Execute the request on the current thread.

        Called by a dispatcher worker. A call cancelled before it starts is
        never sent. A call cancelled while running keeps its CANCELLED state
        whatever the response turns out to be, and a response already
        streaming is closed.
        """
        with self._condition:
            if self.done() or self._started:
                return
            self._started = True

        try:
            response = self._client.send(self._request, stream=True)
            with self._condition:
                if self.done():
                    response.close()
                    return
                self._response = response
            try:
                response.read()
            finally:
                response.close()
                with self._condition:
                    self._response = None
        except httpx.HTTPError as e:
            self._complete(
                CallState.FAILED,
                TransportError(
                    f"Request to {self._request.url} failed: {e}",
                    details={"error": type(e).__name__},
                ),
            )
            return
        except Exception as e:
            # Closing the client or the response under a running request lands here
            self._complete(
                CallState.FAILED,
                TransportError(f"Request to {self._request.url} failed: {e}"),
            )
            return

        self._status_code = response.status_code
        if response.is_success:
            self._complete(CallState.SUCCEEDED)
        else:
            self._complete(
                CallState.FAILED,
                TransportError(
                    f"Response failed: {response.status_code}",
                    details={
                        "url": str(self._request.url),
                        "status_code": response.status_code,
                    },
                ),
            )

    def fail(self, error: BaseException) -> bool:
        """Fail a pending call without running it."""
        return self._complete(CallState.FAILED, error)

    def cancel(self) -> bool:
        """Cancel the call.

        Returns:
            True if the call is now cancelled, False if it had already
            completed some other way.
        """
        if self._complete(CallState.CANCELLED):
            with self._condition:
                response = self._response
            if response is not None:
                response.close()
            logger.debug(f"Cancelled call to {self._request_url()}")
            return True
        return self.cancelled()

    def result(self, timeout: Optional[float] = None) -> None:
        """Block until the call completes.

        Args:
            timeout: Seconds to wait, None to wait forever

        Raises:
            TimeoutError: If the call did not complete in time
            CallCancelledError: If the call was cancelled
            TransportError: If the request failed
        """
        with self._condition:
            if not self._condition.wait_for(self.done, timeout):
                raise TimeoutError(f"Call to {self._request_url()} still pending")

        if self._state is CallState.CANCELLED:
            raise CallCancelledError(f"Call to {self._request_url()} was cancelled")
        if self._state is CallState.FAILED:
            raise self._error.with_traceback(None)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        """Block until completion and return the failure, if any."""
        with self._condition:
            if not self._condition.wait_for(self.done, timeout):
                raise TimeoutError(f"Call to {self._request_url()} still pending")
        return self._error

    def add_done_callback(self, fn: Callable[["Call"], None]) -> None:
        """Register a completion callback.

        Runs immediately on the calling thread if the call is already done,
        otherwise on whichever thread completes the call.
        """
        with self._condition:
            if not self.done():
                self._callbacks.append(fn)
                return
        self._invoke(fn)

    def _complete(
        self,
        state: CallState,
        error: Optional[BaseException] = None,
    ) -> bool:
        with self._condition:
            if self.done():
                return False
            self._state = state
            self._error = error
            callbacks = self._callbacks
            self._callbacks = []
            self._condition.notify_all()

        for fn in callbacks:
            self._invoke(fn)
        return True

    def _invoke(self, fn: Callable[["Call"], None]) -> None:
        try:
            fn(self)
        except Exception:
            logger.exception(f"Callback for call to {self._request_url()} raised")

    def _request_url(self) -> str:
        return str(self._request.url) if self._request is not None else "<none>"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._request_url()} {self._state.value}>"


class NoOpCall(Call):
    """A call that is already SUCCEEDED and never touched the network.

    ``skipped`` records why, so a local skip can be told apart from a real
    delivery.
    """

    def __init__(self, reason: SkipReason) -> None:
        super().__init__()
        self._reason = reason
        self._state = CallState.SUCCEEDED

    @property
    def skipped(self) -> Optional[SkipReason]:
        return self._reason

    def run(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"<NoOpCall skipped={self._reason.value}>"
