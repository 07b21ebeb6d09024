"""
In-process relay.

Behaves like the public relay from the tunnel's point of view: it binds
endpoint ids, stores inbound messages until the tunnel reads them (also
across reconnects), acks heartbeats and collects outbound messages. Used by
``gantz call`` to run a tool through the full request path locally, and by
the tests to simulate drops and outages.
"""

import queue
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from gantz.errors import RelayTransportError
from gantz.relay.transport import RelayBinding, RelayChannel

_WAKE = object()


class LoopbackRelay:
    """
    Example:
        >>> relay = LoopbackRelay()
        >>> tunnel = Tunnel(source, config, channel=relay.channel())
        >>> tunnel.start()
        >>> relay.request(tunnel.endpoint_id, {"type": "discover", "id": "d1"})
        {'type': 'tools', 'id': 'd1', ...}
    """

    def __init__(self, auto_ack: bool = True, public_base: str = "loopback://"):
        self.auto_ack = auto_ack
        self.public_base = public_base
        self.refuse_connections = False
        self.connects: List[str] = []
        self._cond = threading.Condition()
        self._inboxes: Dict[str, "queue.Queue[Any]"] = {}
        self._outboxes: Dict[str, List[Dict[str, Any]]] = {}
        self._channels: Dict[str, "LoopbackChannel"] = {}

    def channel(self) -> "LoopbackChannel":
        return LoopbackChannel(self)

    # ── Relay side ────────────────────────────────────────────────────────

    def deliver(self, endpoint_id: str, message: Dict[str, Any]) -> None:
        """Queue a message from the remote caller for ``endpoint_id``."""
        self._inbox(endpoint_id).put(message)

    def drop(self, endpoint_id: str) -> None:
        """Sever the current connection of ``endpoint_id`` (queued messages are kept)."""
        with self._cond:
            channel = self._channels.pop(endpoint_id, None)
        if channel is not None:
            channel._lost = True
            self._inbox(endpoint_id).put(_WAKE)

    def sent(self, endpoint_id: str) -> List[Dict[str, Any]]:
        """Everything the tunnel sent on ``endpoint_id``, in order."""
        with self._cond:
            return list(self._outboxes.get(endpoint_id, []))

    def wait_for(
        self,
        endpoint_id: str,
        predicate: Callable[[Dict[str, Any]], bool],
        timeout: float = 5.0,
    ) -> Optional[Dict[str, Any]]:
        """Block until an outbound message matching ``predicate`` shows up."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                for message in self._outboxes.get(endpoint_id, []):
                    if predicate(message):
                        return message
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def request(
        self,
        endpoint_id: str,
        message: Dict[str, Any],
        timeout: float = 60.0,
    ) -> Optional[Dict[str, Any]]:
        """Deliver ``message`` and wait for the reply carrying the same id."""
        request_id = message.get("id")
        self.deliver(endpoint_id, message)
        return self.wait_for(
            endpoint_id,
            lambda m: m.get("id") == request_id and m.get("type") != "heartbeat",
            timeout=timeout,
        )

    # ── Channel side ──────────────────────────────────────────────────────

    def _inbox(self, endpoint_id: str) -> "queue.Queue[Any]":
        with self._cond:
            inbox = self._inboxes.get(endpoint_id)
            if inbox is None:
                inbox = self._inboxes[endpoint_id] = queue.Queue()
            return inbox

    def _bind(self, channel: "LoopbackChannel", endpoint_id: str) -> RelayBinding:
        with self._cond:
            if self.refuse_connections:
                raise RelayTransportError("loopback relay refused the connection")
            self._channels[endpoint_id] = channel
            self.connects.append(endpoint_id)
        self._inbox(endpoint_id)
        return RelayBinding(endpoint_id=endpoint_id, public_url=f"{self.public_base}{endpoint_id}")

    def _accept(self, endpoint_id: str, message: Dict[str, Any]) -> None:
        if self.auto_ack and message.get("type") == "heartbeat":
            self.deliver(endpoint_id, {"type": "heartbeat_ack", "ts": message.get("ts")})
            return
        with self._cond:
            self._outboxes.setdefault(endpoint_id, []).append(message)
            self._cond.notify_all()


class LoopbackChannel(RelayChannel):
    """A ``RelayChannel`` wired to a ``LoopbackRelay`` in the same process."""

    def __init__(self, relay: LoopbackRelay):
        self._relay = relay
        self._endpoint_id: Optional[str] = None
        self._lost = True

    def connect(self, endpoint_id: str, requires_auth: bool = False) -> RelayBinding:
        binding = self._relay._bind(self, endpoint_id)
        self._endpoint_id = endpoint_id
        self._lost = False
        return binding

    def receive(self, timeout: float) -> Optional[Dict[str, Any]]:
        if self._lost or self._endpoint_id is None:
            raise RelayTransportError("loopback channel lost")
        try:
            item = self._relay._inbox(self._endpoint_id).get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _WAKE:
            if self._lost:
                raise RelayTransportError("loopback channel lost")
            return None
        return item

    def send(self, message: Dict[str, Any]) -> None:
        if self._lost or self._endpoint_id is None:
            raise RelayTransportError("loopback channel lost")
        self._relay._accept(self._endpoint_id, message)

    def close(self) -> None:
        if self._endpoint_id is not None and not self._lost:
            self._relay.drop(self._endpoint_id)
        self._lost = True

    @property
    def is_connected(self) -> bool:
        return not self._lost
