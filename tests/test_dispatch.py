"""Dispatch client retry/backoff and the operator dispatch scenario."""

import asyncio
import json

import httpx
import pytest

from lumira.common.errors import DispatchError
from lumira.common.signatures import sign_body
from lumira.common.state_machine import OrderStatus
from lumira.services.dispatch.client import DispatchClient
from lumira.services.orders.service import DISPATCH_EXHAUSTED, OrderService


WORKER_URL = "http://worker.test/generate"
SECRET = "dispatch-test-secret"


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_client(handler, sleep, url=WORKER_URL) -> DispatchClient:
    return DispatchClient(
        url=url,
        secret=SECRET,
        transport=httpx.MockTransport(handler),
        sleep=sleep,
        max_attempts=3,
        backoff_base_seconds=2.0,
        timeout_seconds=10.0,
    )


def test_two_failures_then_success_retries_with_exponential_backoff():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if len(requests) < 3:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(200, json={"accepted": True})

    sleep = SleepRecorder()
    result = asyncio.run(make_client(handler, sleep).send({"orderId": "o1", "level": 2}))

    assert result.sent
    assert result.attempts == 3
    assert len(requests) == 3
    assert sleep.calls == [2.0, 4.0]


def test_request_is_signed_over_exact_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = request.content
        seen["signature"] = request.headers["X-Lumira-Signature"]
        seen["content_type"] = request.headers["Content-Type"]
        return httpx.Response(202)

    asyncio.run(make_client(handler, SleepRecorder()).send({"orderId": "o1", "regeneration": True}))

    assert seen["signature"] == sign_body(SECRET, seen["body"])
    assert seen["content_type"] == "application/json"
    assert json.loads(seen["body"]) == {"orderId": "o1", "regeneration": True}


def test_timeouts_exhaust_attempts_and_raise():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("worker did not answer", request=request)

    sleep = SleepRecorder()
    with pytest.raises(DispatchError) as excinfo:
        asyncio.run(make_client(handler, sleep).send({"orderId": "o1"}))

    assert excinfo.value.attempts == 3
    assert sleep.calls == [2.0, 4.0]


def test_missing_target_is_a_deliberate_skip():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result = asyncio.run(make_client(handler, SleepRecorder(), url="").send({"orderId": "o1"}))
    assert not result.sent
    assert result.attempts == 0


def test_unresponsive_worker_marks_order_failed(make_order, store, make_orchestrator, notifier, runner):
    """PAID order, worker never answers: 3 attempts, DispatchError, order FAILED."""

    order = make_order(OrderStatus.PAID)
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(json.loads(request.content))
        raise httpx.ReadTimeout("no response", request=request)

    sleep = SleepRecorder()
    service = OrderService(store, make_client(handler, sleep), make_orchestrator(), notifier, runner)

    with pytest.raises(DispatchError):
        asyncio.run(service.dispatch(order.id, "Focus on career questions", "expert-1"))

    failed = store.get_order(order.id)
    assert failed.status == OrderStatus.FAILED
    assert failed.error_log == DISPATCH_EXHAUSTED == "dispatch exhausted retries"
    assert failed.expert_instructions == "Focus on career questions"
    assert len(attempts) == 3
    assert sleep.calls == [2.0, 4.0]
    assert attempts[0]["orderNumber"] == order.order_number
    assert attempts[0]["operator"] == "expert-1"
    assert attempts[0]["client"]["email"] == "client@example.com"
    assert "regeneration" not in attempts[0]


def test_successful_dispatch_leaves_order_processing(make_order, store, make_orchestrator, notifier, runner):
    order = make_order(OrderStatus.PAID)
    service = OrderService(
        store,
        make_client(lambda request: httpx.Response(200), SleepRecorder()),
        make_orchestrator(),
        notifier,
        runner,
    )

    dispatched, detail = asyncio.run(service.dispatch(order.id, "instructions", "expert-1"))
    assert detail == "dispatched"
    assert dispatched.status == OrderStatus.PROCESSING


def test_regeneration_flag_and_revision_bump(make_order, store, make_orchestrator, notifier, runner):
    order = make_order(OrderStatus.FAILED)
    store.record_instructions(order.id, "Earlier instructions")
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200)

    service = OrderService(store, make_client(handler, SleepRecorder()), make_orchestrator(), notifier, runner)
    regenerated, detail = asyncio.run(service.regenerate(order.id, "expert-2"))

    assert detail == "dispatched"
    assert regenerated.status == OrderStatus.PROCESSING
    assert regenerated.revision_count == 1
    assert regenerated.error_log is None
    assert bodies[0]["regeneration"] is True
    assert bodies[0]["instructions"] == "Earlier instructions"


def test_skipped_dispatch_falls_back_to_internal_generation(make_order, store, make_orchestrator, notifier, runner):
    order = make_order(OrderStatus.PAID)
    unconfigured = DispatchClient(url="", secret=SECRET, sleep=SleepRecorder())
    service = OrderService(store, unconfigured, make_orchestrator(), notifier, runner)

    async def scenario():
        result = await service.dispatch(order.id, "", "expert-1")
        await runner.drain()
        return result

    _, detail = asyncio.run(scenario())
    assert detail == "generation_started"
    assert store.get_order(order.id).status == OrderStatus.AWAITING_VALIDATION
