"""Tests for the request router."""

import threading
import time

import pytest

from gantz.errors import RelayTransportError
from gantz.relay.router import RequestRouter, RequestState
from gantz.tools.registry import ToolRegistry
from gantz.tools.schema import InvocationRequest, InvocationResult, ResultStatus

from conftest import TOOLS_YAML, wait_until


class FakeExecutor:
    """Records calls and blocks each one until released or cancelled."""

    default_timeout = 30.0

    def __init__(self):
        self.calls = []
        self.release = threading.Event()

    def execute(self, spec, arguments=None, timeout=None, cancel_event=None, correlation_id=""):
        self.calls.append({"tool": spec.name, "arguments": arguments, "timeout": timeout})
        while not self.release.wait(0.01):
            if cancel_event is not None and cancel_event.is_set():
                return InvocationResult(
                    correlation_id=correlation_id, tool_name=spec.name, status=ResultStatus.CANCELLED,
                )
        return InvocationResult(
            correlation_id=correlation_id, tool_name=spec.name, stdout="done", exit_code=0,
        )


class Outbox:
    def __init__(self):
        self.messages = []

    def __call__(self, message):
        self.messages.append(message)

    def for_id(self, request_id):
        return [m for m in self.messages if m.get("id") == request_id]


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def router(executor, outbox, clock):
    registry = ToolRegistry.load(TOOLS_YAML)
    router = RequestRouter(
        lambda: registry, executor, outbox, sweep_grace=2, max_timeout=60, clock=clock,
    )
    yield router
    executor.release.set()
    router.stop()


def _call(cid, tool="echo_back", timeout=None, **arguments):
    return InvocationRequest(correlation_id=cid, tool_name=tool, arguments=arguments, timeout=timeout)


class TestDispatch:
    """Tests for dispatch and result delivery."""

    def test_result_delivered_once(self, router, executor, outbox):
        router.dispatch(_call("c1", text="hi"))
        assert wait_until(lambda: executor.calls)
        assert router.state_of("c1") is RequestState.DISPATCHED
        assert router.in_flight == 1

        executor.release.set()
        assert wait_until(lambda: outbox.for_id("c1"))

        [reply] = outbox.for_id("c1")
        assert reply["outcome"] == "ok"
        assert reply["payload"]["stdout"] == "done"
        assert router.state_of("c1") is RequestState.COMPLETED
        assert router.in_flight == 0

    def test_unknown_tool_never_reaches_executor(self, router, executor, outbox):
        router.dispatch(_call("c1", tool="rm_everything"))

        [reply] = outbox.for_id("c1")
        assert reply["outcome"] == "protocol_error"
        assert reply["error"]["code"] == "unknown_tool"
        assert executor.calls == []
        assert router.state_of("c1") is None

    def test_duplicate_id_rejected(self, router, executor, outbox):
        router.dispatch(_call("c1", text="a"))
        router.dispatch(_call("c1", text="b"))

        [reply] = outbox.for_id("c1")
        assert reply["error"]["code"] == "duplicate_request"
        assert wait_until(lambda: len(executor.calls) == 1)

    def test_late_result_dropped(self, router, outbox):
        assert router.on_result("ghost", InvocationResult(correlation_id="ghost")) is False
        assert outbox.messages == []

    @pytest.mark.parametrize("requested, expected", [
        (5, 5),
        (1_000, 60),
        (None, 1.0),
    ])
    def test_effective_timeout(self, router, executor, requested, expected):
        router.dispatch(_call("c1", tool="nap", timeout=requested, seconds=1))
        assert wait_until(lambda: executor.calls)
        assert executor.calls[0]["timeout"] == expected

    def test_default_timeout_from_executor(self, router, executor):
        router.dispatch(_call("c1", text="x"))
        assert wait_until(lambda: executor.calls)
        assert executor.calls[0]["timeout"] == 30.0

    def test_send_failure_does_not_propagate(self, executor, clock):
        def broken_send(message):
            raise RelayTransportError("relay down")

        registry = ToolRegistry.load(TOOLS_YAML)
        router = RequestRouter(lambda: registry, executor, broken_send, clock=clock)
        try:
            router.dispatch(_call("c1", tool="nope"))
            executor.release.set()
            router.dispatch(_call("c2", text="x"))
            assert wait_until(lambda: router.state_of("c2") is RequestState.COMPLETED)
        finally:
            router.stop()


class TestCancellation:
    """Tests for cancel, cancel_all and the sweeper."""

    def test_cancel_replies_once_and_drops_late_result(self, router, executor, outbox):
        router.dispatch(_call("c1", text="hi"))
        assert wait_until(lambda: executor.calls)

        assert router.cancel("c1") is True
        assert router.cancel("c1") is False

        [reply] = outbox.for_id("c1")
        assert reply["error"]["code"] == "cancelled"
        assert router.state_of("c1") is RequestState.CANCELLED

        # the executor notices the cancel and reports back; that report is dropped
        executor.release.set()
        assert wait_until(lambda: router.in_flight == 0)
        assert len(outbox.for_id("c1")) == 1

    def test_cancel_unknown_id_is_harmless(self, router, outbox):
        assert router.cancel("never-seen") is False
        assert outbox.messages == []

    def test_cancel_all_is_silent(self, router, executor, outbox):
        router.dispatch(_call("c1", text="a"))
        router.dispatch(_call("c2", text="b"))
        assert wait_until(lambda: len(executor.calls) == 2)

        assert sorted(router.cancel_all()) == ["c1", "c2"]
        assert router.in_flight == 0
        assert router.state_of("c2") is RequestState.CANCELLED

        executor.release.set()
        time.sleep(0.2)
        assert outbox.messages == []

    def test_sweep_times_out_stuck_requests(self, router, executor, outbox, clock):
        router.dispatch(_call("c1", tool="nap", timeout=5, seconds=1))
        assert wait_until(lambda: executor.calls)

        clock.advance(6)
        assert router.sweep() == []

        clock.advance(2)
        assert router.sweep() == ["c1"]

        [reply] = outbox.for_id("c1")
        assert reply["outcome"] == "tool_error"
        assert reply["error"]["code"] == "timeout"
        assert reply["duration_ms"] == 8000
        assert router.state_of("c1") is RequestState.TIMED_OUT

        executor.release.set()
        time.sleep(0.2)
        assert len(outbox.for_id("c1")) == 1
