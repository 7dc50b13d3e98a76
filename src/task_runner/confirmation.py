# confirmation.py
# Human-in-the-loop gate modelled as message passing.
#
# A step that needs approval puts a ConfirmationRequest on a queue and
# awaits a future. Responders (a console prompt, a policy, an API handler)
# pull requests off the queue and resolve them with respond(). An unanswered
# request resolves to a timed-out ABORT response, which the guardrail maps
# to Blocked.

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Union

from task_runner.models import ConfirmationChoice, ConfirmationRequest, ConfirmationResponse

logger = logging.getLogger(__name__)

ConfirmationHandler = Callable[
    [ConfirmationRequest], Union[ConfirmationResponse, Awaitable[ConfirmationResponse]]
]


class ConfirmationBroker:
    """Request channel plus one response future per outstanding request."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ConfirmationRequest] = asyncio.Queue()
        self._pending: dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Requesting side
    # ------------------------------------------------------------------

    async def request(self, request: ConfirmationRequest) -> ConfirmationResponse:
        """
        Publish `request` and wait for its answer.

        Returns a timed-out ABORT response once request.timeout_seconds
        elapse. Cancellation of the caller withdraws the request.
        """
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request.request_id] = future
        self._queue.put_nowait(request)
        try:
            return await asyncio.wait_for(future, timeout=request.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Confirmation %s timed out after %.1fs", request.request_id, request.timeout_seconds
            )
            return ConfirmationResponse.timeout(request)
        finally:
            self._pending.pop(request.request_id, None)

    # ------------------------------------------------------------------
    # Responding side
    # ------------------------------------------------------------------

    def pending(self) -> list[str]:
        return list(self._pending)

    async def next_request(self) -> ConfirmationRequest:
        """Next request still awaiting an answer. Withdrawn ones are dropped."""
        while True:
            request = await self._queue.get()
            if request.request_id in self._pending:
                return request

    def respond(self, response: ConfirmationResponse) -> bool:
        """Resolve a pending request. Returns False if it already timed out or was withdrawn."""
        future = self._pending.get(response.request_id)
        if future is None or future.done():
            logger.debug("Dropping late confirmation response for %s", response.request_id)
            return False
        future.set_result(response)
        return True

    async def serve(self, handler: ConfirmationHandler) -> None:
        """Answer requests forever with `handler`. Run it as a background task."""
        while True:
            request = await self.next_request()
            answer = handler(request)
            if inspect.isawaitable(answer):
                answer = await answer
            self.respond(answer)


# ---------------------------------------------------------------------------
# Canned policies
# ---------------------------------------------------------------------------


def approve_all(request: ConfirmationRequest) -> ConfirmationResponse:
    return ConfirmationResponse(request_id=request.request_id, choice=ConfirmationChoice.PROCEED)


def deny_all(request: ConfirmationRequest) -> ConfirmationResponse:
    return ConfirmationResponse(request_id=request.request_id, choice=ConfirmationChoice.ABORT)
