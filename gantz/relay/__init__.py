"""
Gantz relay: everything between the public relay and the tool executor.

    relay <-> RelayChannel <-> RelayConnection -> ProtocolAdapter -> RequestRouter
"""

from gantz.relay.connection import RelayConnection
from gantz.relay.loopback import LoopbackChannel, LoopbackRelay
from gantz.relay.protocol import ProtocolAdapter
from gantz.relay.resilience import CircuitBreaker, CircuitState, ExponentialBackoff
from gantz.relay.router import RequestRouter, RequestState
from gantz.relay.session import Session, SessionManager, SessionState
from gantz.relay.transport import HttpRelayChannel, RelayBinding, RelayChannel

__all__ = [
    "RelayConnection",
    "LoopbackChannel",
    "LoopbackRelay",
    "ProtocolAdapter",
    "CircuitBreaker",
    "CircuitState",
    "ExponentialBackoff",
    "RequestRouter",
    "RequestState",
    "Session",
    "SessionManager",
    "SessionState",
    "HttpRelayChannel",
    "RelayBinding",
    "RelayChannel",
]
