"""Request router - correlates inbound calls with running executions."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from gantz.errors import DuplicateRequestError, RelayTransportError, UnknownToolError
from gantz.relay.protocol import ProtocolAdapter
from gantz.tools.executor import ToolExecutor
from gantz.tools.registry import ToolRegistry
from gantz.tools.schema import InvocationRequest, InvocationResult, ResultStatus, ToolSpec

logger = logging.getLogger(__name__)


class RequestState(Enum):
    """Lifecycle of one invocation request."""

    RECEIVED = "received"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class _Outstanding:
    request: InvocationRequest
    spec: ToolSpec
    timeout: float
    deadline: float
    dispatched_at: float = 0.0
    cancel_event: threading.Event = field(default_factory=threading.Event)
    state: RequestState = RequestState.RECEIVED


class RequestRouter:
    """
    Runs calls on a worker pool and sends each result back exactly once.

    The outstanding-request table is the only shared mutable state; every
    transition out of it (result, sweep, cancel) pops the entry under the
    lock, so whichever gets there first owns the reply and the others drop.

    Example:
        >>> router = RequestRouter(lambda: registry, ToolExecutor(), relay_send)
        >>> router.start()
        >>> router.dispatch(InvocationRequest(correlation_id="c1", tool_name="echo_back",
        ...                                   arguments={"text": "hi"}))
    """

    def __init__(
        self,
        registry: Callable[[], ToolRegistry],
        executor: ToolExecutor,
        send: Callable[[Dict[str, Any]], None],
        adapter: Optional[ProtocolAdapter] = None,
        max_workers: int = 8,
        sweep_interval: float = 1.0,
        sweep_grace: float = 2.0,
        max_timeout: float = 600.0,
        history_size: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._executor = executor
        self._send = send
        self._adapter = adapter or ProtocolAdapter()
        self.sweep_interval = sweep_interval
        self.sweep_grace = sweep_grace
        self.max_timeout = max_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._outstanding: Dict[str, _Outstanding] = {}
        self._history: "OrderedDict[str, RequestState]" = OrderedDict()
        self._history_size = history_size
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gantz-tool")
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the background sweeper."""
        if self._sweeper is not None:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="gantz-sweeper", daemon=True)
        self._sweeper.start()

    def stop(self) -> None:
        """Cancel everything in flight and stop the workers."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self.sweep_interval * 2)
            self._sweeper = None
        self.cancel_all()
        self._pool.shutdown(wait=False, cancel_futures=True)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._outstanding)

    def state_of(self, correlation_id: str) -> Optional[RequestState]:
        """Current state, or the terminal state of a recently finished request."""
        with self._lock:
            entry = self._outstanding.get(correlation_id)
            if entry is not None:
                return entry.state
            return self._history.get(correlation_id)

    # ── Dispatch ──────────────────────────────────────────────────────────

    def dispatch(self, request: InvocationRequest) -> None:
        """
        Look the tool up and hand the call to a worker.

        Unknown tools and duplicate in-flight ids are answered right away
        with a protocol error; nothing is spawned for them.
        """
        cid = request.correlation_id
        try:
            spec = self._registry().resolve(request.tool_name)
        except UnknownToolError as exc:
            logger.info("Call %s rejected: %s", cid, exc)
            self._deliver(self._adapter.error_response(cid, exc))
            return

        timeout = self._effective_timeout(spec, request.timeout)
        now = self._clock()
        entry = _Outstanding(
            request=request,
            spec=spec,
            timeout=timeout,
            deadline=now + timeout + self.sweep_grace,
            dispatched_at=now,
        )

        with self._lock:
            duplicate = cid in self._outstanding
            if not duplicate:
                self._outstanding[cid] = entry
                entry.state = RequestState.DISPATCHED

        if duplicate:
            self._deliver(self._adapter.error_response(
                cid, DuplicateRequestError(f"Request id {cid} is already in flight"),
            ))
            return

        logger.debug("Dispatching %s -> %s", cid, spec.name)
        self._pool.submit(self._run, entry)

    def _run(self, entry: _Outstanding) -> None:
        if entry.cancel_event.is_set():
            return
        cid = entry.request.correlation_id
        try:
            result = self._executor.execute(
                entry.spec,
                entry.request.arguments,
                timeout=entry.timeout,
                cancel_event=entry.cancel_event,
                correlation_id=cid,
            )
        except Exception as exc:
            logger.exception("Executor crashed on %s", cid)
            result = InvocationResult(
                correlation_id=cid,
                tool_name=entry.spec.name,
                status=ResultStatus.EXECUTION_ERROR,
                error=f"internal error: {exc}",
            )
        self.on_result(cid, result)

    def on_result(self, correlation_id: str, result: InvocationResult) -> bool:
        """Deliver ``result`` if the request is still outstanding. Returns False if dropped."""
        with self._lock:
            entry = self._outstanding.pop(correlation_id, None)
            if entry is None:
                return False
            entry.state = (
                RequestState.TIMED_OUT
                if result.status is ResultStatus.TIMEOUT
                else RequestState.COMPLETED
            )
            self._remember(correlation_id, entry.state)

        self._deliver(self._adapter.result_response(result))
        return True

    # ── Timeouts & cancellation ───────────────────────────────────────────

    def sweep(self) -> List[str]:
        """Time out every request past its deadline. Returns their ids."""
        now = self._clock()
        with self._lock:
            expired = [e for e in self._outstanding.values() if e.deadline <= now]
            for entry in expired:
                cid = entry.request.correlation_id
                del self._outstanding[cid]
                entry.state = RequestState.TIMED_OUT
                entry.cancel_event.set()
                self._remember(cid, entry.state)

        for entry in expired:
            logger.warning("Request %s (%s) swept after deadline", entry.request.correlation_id, entry.spec.name)
            self._deliver(self._adapter.result_response(InvocationResult(
                correlation_id=entry.request.correlation_id,
                tool_name=entry.spec.name,
                status=ResultStatus.TIMEOUT,
                error=f"timed out after {entry.timeout:g}s",
                duration_ms=int((now - entry.dispatched_at) * 1000),
            )))
        return [e.request.correlation_id for e in expired]

    def cancel(self, correlation_id: str, notify: bool = True) -> bool:
        """
        Cancel one request. Idempotent: unknown or finished ids return False.

        With ``notify`` the caller gets a ``cancelled`` result.
        """
        with self._lock:
            entry = self._outstanding.pop(correlation_id, None)
            if entry is None:
                return False
            entry.state = RequestState.CANCELLED
            entry.cancel_event.set()
            self._remember(correlation_id, entry.state)

        if notify:
            self._deliver(self._adapter.result_response(InvocationResult(
                correlation_id=correlation_id,
                tool_name=entry.spec.name,
                status=ResultStatus.CANCELLED,
                error="cancelled",
            )))
        return True

    def cancel_all(self) -> List[str]:
        """Cancel every in-flight request without replying (the channel is gone)."""
        with self._lock:
            entries = list(self._outstanding.values())
            self._outstanding.clear()
            for entry in entries:
                entry.state = RequestState.CANCELLED
                entry.cancel_event.set()
                self._remember(entry.request.correlation_id, entry.state)
        if entries:
            logger.warning("Cancelled %d in-flight request(s)", len(entries))
        return [e.request.correlation_id for e in entries]

    # ── Internals ─────────────────────────────────────────────────────────

    def _effective_timeout(self, spec: ToolSpec, requested: Optional[float]) -> float:
        if requested is not None:
            return min(requested, self.max_timeout)
        if spec.timeout is not None:
            return spec.timeout
        return self._executor.default_timeout

    def _remember(self, correlation_id: str, state: RequestState) -> None:
        self._history[correlation_id] = state
        self._history.move_to_end(correlation_id)
        while len(self._history) > self._history_size:
            self._history.popitem(last=False)

    def _deliver(self, message: Dict[str, Any]) -> None:
        try:
            self._send(message)
        except RelayTransportError as exc:
            logger.warning("Reply for %s dropped, relay unavailable: %s", message.get("id"), exc)

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Sweep failed")
