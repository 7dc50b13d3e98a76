import asyncio

import pytest

from task_runner.confirmation import ConfirmationBroker, approve_all, deny_all
from task_runner.models import (
    ConfirmationChoice,
    ConfirmationRequest,
    ConfirmationResponse,
    OperationType,
    RiskLevel,
)


def make_request(timeout=1.0, **kw):
    return ConfirmationRequest(
        operation_type=OperationType.DELETE,
        target="old.log",
        risk_level=RiskLevel.HIGH,
        timeout_seconds=timeout,
        **kw,
    )


# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unanswered_request_times_out_as_abort():
    broker = ConfirmationBroker()
    request = make_request(timeout=0.05)

    response = await broker.request(request)

    assert response.timed_out
    assert response.choice == ConfirmationChoice.ABORT
    assert response.request_id == request.request_id
    assert broker.pending() == []


@pytest.mark.asyncio
async def test_respond_resolves_the_waiting_request():
    broker = ConfirmationBroker()
    request = make_request()
    waiter = asyncio.create_task(broker.request(request))

    received = await broker.next_request()
    assert received.request_id == request.request_id
    assert broker.pending() == [request.request_id]

    assert broker.respond(approve_all(received))
    response = await waiter

    assert response.choice == ConfirmationChoice.PROCEED
    assert not response.timed_out
    assert broker.pending() == []


@pytest.mark.asyncio
async def test_late_response_is_dropped():
    broker = ConfirmationBroker()
    request = make_request(timeout=0.01)
    await broker.request(request)

    assert not broker.respond(approve_all(request))


@pytest.mark.asyncio
async def test_withdrawn_requests_are_not_served():
    broker = ConfirmationBroker()
    stale = make_request(timeout=0.01)
    await broker.request(stale)

    fresh = make_request()
    waiter = asyncio.create_task(broker.request(fresh))
    received = await asyncio.wait_for(broker.next_request(), timeout=1)
    broker.respond(deny_all(received))
    await waiter

    assert received.request_id == fresh.request_id


@pytest.mark.asyncio
async def test_serve_accepts_async_handlers():
    broker = ConfirmationBroker()
    seen = []

    async def handler(request):
        seen.append(request.target)
        return ConfirmationResponse(request_id=request.request_id, choice=ConfirmationChoice.SKIP)

    responder = asyncio.create_task(broker.serve(handler))
    try:
        response = await broker.request(make_request())
    finally:
        responder.cancel()
        await asyncio.gather(responder, return_exceptions=True)

    assert response.choice == ConfirmationChoice.SKIP
    assert seen == ["old.log"]


# ---------------------------------------------------------------------------
# Request rendering
# ---------------------------------------------------------------------------

def test_prompt_lists_patterns_and_rollback():
    request = make_request(reasons=["Recursive delete"], rollback_capable=False)
    text = request.format_prompt()

    assert "Target:    old.log" in text
    assert "Risk:      High" in text
    assert "Rollback:  NOT possible" in text
    assert "  - Recursive delete" in text
    assert text.endswith("Options: proceed / skip / abort / modify")
