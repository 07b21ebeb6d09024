"""Relay connection - keeps the channel to the relay alive and pumps inbound messages."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from gantz.errors import CircuitOpenError, RelayTransportError
from gantz.relay.protocol import ProtocolAdapter
from gantz.relay.resilience import CircuitBreaker, ExponentialBackoff
from gantz.relay.session import Session, SessionManager, SessionState
from gantz.relay.transport import RelayChannel

logger = logging.getLogger(__name__)


class RelayConnection:
    """
    Owns one long-lived channel to the relay for one session.

    A background thread connects, reads inbound messages and hands them to
    ``on_message``, sends heartbeats, and reconnects with backoff when the
    channel drops or goes silent for ``heartbeat_timeout`` seconds. While the
    session's grace period lasts, reconnects rebind the same endpoint id;
    after it, the session is renewed under a new id and ``on_rebind`` fires.
    """

    def __init__(
        self,
        channel: RelayChannel,
        sessions: SessionManager,
        endpoint_id: str,
        on_message: Callable[[Dict[str, Any]], None],
        on_disconnect: Optional[Callable[[], None]] = None,
        on_rebind: Optional[Callable[[Session], None]] = None,
        heartbeat_interval: float = 15.0,
        heartbeat_timeout: float = 45.0,
        backoff: Optional[ExponentialBackoff] = None,
        breaker: Optional[CircuitBreaker] = None,
        adapter: Optional[ProtocolAdapter] = None,
        receive_timeout: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session = sessions.get(endpoint_id)
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.receive_timeout = receive_timeout
        self.reconnects = 0
        self._channel = channel
        self._sessions = sessions
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._on_rebind = on_rebind
        self._backoff = backoff or ExponentialBackoff()
        self._breaker = breaker or CircuitBreaker()
        self._adapter = adapter or ProtocolAdapter()
        self._clock = clock
        self._send_lock = threading.Lock()
        self._stop = threading.Event()
        self._connected = threading.Event()
        self._evicted_by_relay = False
        self._last_heartbeat = 0.0
        self._thread: Optional[threading.Thread] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @property
    def session(self) -> Session:
        return self._session

    @property
    def endpoint_id(self) -> str:
        return self._session.endpoint_id

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="gantz-relay", daemon=True)
        self._thread.start()

    def wait_connected(self, timeout: Optional[float] = None) -> bool:
        return self._connected.wait(timeout)

    def stop(self) -> None:
        """Close the channel for good and evict the session."""
        self._stop.set()
        self._connected.clear()
        self._channel.close()
        if self._thread is not None:
            self._thread.join(timeout=self.receive_timeout * 4 + 1)
            self._thread = None
        if self._on_disconnect is not None:
            self._on_disconnect()
        self._sessions.evict(self.endpoint_id)

    # ── Outbound ──────────────────────────────────────────────────────────

    def send(self, message: Dict[str, Any]) -> None:
        """Send one message. Raises ``RelayTransportError`` while disconnected."""
        with self._send_lock:
            if not self._connected.is_set():
                raise RelayTransportError("relay connection is down")
            self._channel.send(message)

    # ── Loop ──────────────────────────────────────────────────────────────

    def _run(self) -> None:
        while not self._stop.is_set():
            if not self._connected.is_set() and not self._establish():
                continue
            try:
                self._pump()
            except RelayTransportError as exc:
                if self._stop.is_set():
                    break
                logger.warning("Relay connection lost: %s", exc)
                self._handle_lost()

    def _establish(self) -> bool:
        if not self._sessions.can_rebind(self.endpoint_id):
            self._renew()

        requires_auth = self.session.requires_auth
        try:
            binding = self._breaker.call(
                lambda: self._channel.connect(self.endpoint_id, requires_auth=requires_auth)
            )
        except CircuitOpenError:
            self._stop.wait(max(self._breaker.retry_after(), self.receive_timeout))
            return False
        except RelayTransportError as exc:
            delay = self._backoff.next_delay()
            logger.warning("Relay connect failed (%s); retrying in %.1fs", exc, delay)
            self._stop.wait(delay)
            return False

        if self._stop.is_set():
            return False
        self._sessions.mark_active(self.endpoint_id, public_url=binding.public_url)
        self._backoff.reset()
        self._last_heartbeat = self._clock()
        self._connected.set()
        return True

    def _pump(self) -> None:
        now = self._clock()
        if now - self._last_heartbeat >= self.heartbeat_interval:
            self._last_heartbeat = now
            self.send(self._adapter.heartbeat())

        idle = self._sessions.idle_for(self.endpoint_id)
        if idle > self.heartbeat_timeout:
            raise RelayTransportError(f"no traffic from relay for {idle:.0f}s")

        message = self._channel.receive(timeout=min(self.receive_timeout, self.heartbeat_interval))
        if message is None:
            return
        self._sessions.touch(self.endpoint_id)

        kind = message.get("type") if isinstance(message, dict) else None
        if kind == "heartbeat":
            self.send({"type": "heartbeat_ack", "ts": message.get("ts")})
            return
        if kind == "heartbeat_ack":
            return
        if kind == "evicted":
            self._evicted_by_relay = True
            raise RelayTransportError(f"relay evicted endpoint: {message.get('reason') or 'no reason given'}")

        try:
            self._on_message(message)
        except Exception:
            logger.exception("Unhandled error while processing a relay message")

    def _handle_lost(self) -> None:
        self._connected.clear()
        self.reconnects += 1
        if self._session.state is SessionState.ACTIVE:
            self._sessions.mark_disconnected(self.endpoint_id)
        if self._on_disconnect is not None:
            self._on_disconnect()
        if self._evicted_by_relay:
            self._evicted_by_relay = False
            self._renew()

    def _renew(self) -> None:
        self._session = self._sessions.renew(self._session)
        if self._on_rebind is not None:
            self._on_rebind(self._session)
