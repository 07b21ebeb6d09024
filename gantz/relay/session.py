"""
Gantz Sessions - Public endpoint bindings and bearer-token auth.

A session is the live binding between this process and one relay-assigned
endpoint. Its lifecycle:

    connecting -> active -> disconnected -> evicted
                    ^            |
                    +------------+   (rebind within the grace period)
"""

import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from gantz.errors import SessionStateError
from gantz.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Liveness of a session."""

    CONNECTING = "connecting"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    EVICTED = "evicted"


_TRANSITIONS = {
    SessionState.CONNECTING: {SessionState.ACTIVE, SessionState.DISCONNECTED, SessionState.EVICTED},
    SessionState.ACTIVE: {SessionState.DISCONNECTED, SessionState.EVICTED},
    SessionState.DISCONNECTED: {SessionState.ACTIVE, SessionState.EVICTED},
    SessionState.EVICTED: set(),
}


@dataclass
class Session:
    """One local-process-to-relay binding."""

    endpoint_id: str
    token: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: SessionState = SessionState.CONNECTING
    public_url: Optional[str] = None
    last_seen: float = 0.0
    disconnected_at: Optional[float] = None
    registry: Optional[ToolRegistry] = field(default=None, repr=False, compare=False)

    @property
    def requires_auth(self) -> bool:
        return self.token is not None

    def authenticate(self, token: Optional[str]) -> bool:
        """Constant-time token check. A session without a token is open."""
        if self.token is None:
            return True
        if not isinstance(token, str):
            return False
        return hmac.compare_digest(token.encode("utf-8"), self.token.encode("utf-8"))

    def transition(self, new_state: SessionState, now: float) -> None:
        if new_state is self.state:
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise SessionStateError(
                f"session {self.endpoint_id}: cannot go from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        if new_state is SessionState.DISCONNECTED:
            self.disconnected_at = now
        elif new_state is SessionState.ACTIVE:
            self.disconnected_at = None
            self.last_seen = now

    def to_dict(self) -> Dict[str, object]:
        """Serializable view. The token itself is never included."""
        return {
            "endpoint_id": self.endpoint_id,
            "state": self.state.value,
            "public_url": self.public_url,
            "requires_auth": self.requires_auth,
            "created_at": self.created_at.isoformat(),
        }


class SessionManager:
    """
    Issues sessions and maps endpoint ids to the registry they serve.

    Disconnected sessions keep their endpoint id for ``grace_period``
    seconds so a reconnect can rebind to the same public endpoint.

    Example:
        >>> manager = SessionManager(grace_period=120)
        >>> endpoint_id, token = manager.create_session(registry, auth=True)
        >>> manager.authenticate(endpoint_id, token)
        True
    """

    def __init__(self, grace_period: float = 120.0, clock: Callable[[], float] = time.monotonic):
        self.grace_period = grace_period
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    # ── Creation ──────────────────────────────────────────────────────────

    def create_session(
        self,
        registry: ToolRegistry,
        auth: bool = False,
        token: Optional[str] = None,
    ) -> Tuple[str, Optional[str]]:
        """
        Allocate a new endpoint id, optionally with a bearer token.

        Args:
            registry: Registry the endpoint serves.
            auth: Require a token. One is generated unless ``token`` is given.
            token: Explicit token; implies ``auth``.

        Returns:
            ``(endpoint_id, token)``; ``token`` is None for an open session.
        """
        if token is None and auth:
            token = secrets.token_urlsafe(32)

        with self._lock:
            endpoint_id = secrets.token_hex(8)
            while endpoint_id in self._sessions:
                endpoint_id = secrets.token_hex(8)
            self._sessions[endpoint_id] = Session(
                endpoint_id=endpoint_id,
                token=token,
                last_seen=self._clock(),
                registry=registry,
            )

        if token is None:
            logger.warning(
                "Session %s has no token: anyone who knows the endpoint can call its tools",
                endpoint_id,
            )
        return endpoint_id, token

    def renew(self, old: Session) -> Session:
        """
        Replace ``old`` with a fresh session keeping its token and registry.

        ``old`` is evicted if that has not happened already.
        """
        self.evict(old.endpoint_id)
        new_id, _ = self.create_session(old.registry, token=old.token)
        logger.warning("Endpoint %s expired; new endpoint is %s", old.endpoint_id, new_id)
        return self.get(new_id)

    # ── Lookup ────────────────────────────────────────────────────────────

    def get(self, endpoint_id: str) -> Session:
        session = self._sessions.get(endpoint_id)
        if session is None:
            raise SessionStateError(f"unknown or evicted endpoint: {endpoint_id}")
        return session

    def sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def registry_for(self, endpoint_id: str) -> ToolRegistry:
        return self.get(endpoint_id).registry

    def bind_registry(self, endpoint_id: str, registry: ToolRegistry) -> None:
        """Point an endpoint at a freshly reloaded registry."""
        with self._lock:
            session = self._sessions.get(endpoint_id)
            if session is not None:
                session.registry = registry

    # ── Auth ──────────────────────────────────────────────────────────────

    def authenticate(self, endpoint_id: str, token: Optional[str]) -> bool:
        session = self._sessions.get(endpoint_id)
        if session is None or session.state is SessionState.EVICTED:
            return False
        return session.authenticate(token)

    # ── Liveness ──────────────────────────────────────────────────────────

    def mark_active(self, endpoint_id: str, public_url: Optional[str] = None) -> Session:
        with self._lock:
            session = self.get(endpoint_id)
            session.transition(SessionState.ACTIVE, self._clock())
            if public_url:
                session.public_url = public_url
        logger.info("Endpoint %s active", endpoint_id)
        return session

    def mark_disconnected(self, endpoint_id: str) -> Session:
        with self._lock:
            session = self.get(endpoint_id)
            session.transition(SessionState.DISCONNECTED, self._clock())
        logger.warning("Endpoint %s disconnected", endpoint_id)
        return session

    def touch(self, endpoint_id: str) -> None:
        """Record inbound traffic."""
        session = self._sessions.get(endpoint_id)
        if session is not None:
            session.last_seen = self._clock()

    def idle_for(self, endpoint_id: str) -> float:
        return self._clock() - self.get(endpoint_id).last_seen

    def can_rebind(self, endpoint_id: str) -> bool:
        """True while the endpoint id may still be reclaimed by a reconnect."""
        session = self._sessions.get(endpoint_id)
        if session is None or session.state is SessionState.EVICTED:
            return False
        if session.state is not SessionState.DISCONNECTED or session.disconnected_at is None:
            return True
        return self._clock() - session.disconnected_at <= self.grace_period

    def evict(self, endpoint_id: str) -> Optional[Session]:
        """Permanently free an endpoint id."""
        with self._lock:
            session = self._sessions.pop(endpoint_id, None)
            if session is not None:
                session.transition(SessionState.EVICTED, self._clock())
        if session is not None:
            logger.info("Endpoint %s evicted", endpoint_id)
        return session

    def expire(self) -> List[str]:
        """Evict every disconnected session whose grace period has elapsed."""
        now = self._clock()
        with self._lock:
            stale = [
                s.endpoint_id
                for s in self._sessions.values()
                if s.state is SessionState.DISCONNECTED
                and s.disconnected_at is not None
                and now - s.disconnected_at > self.grace_period
            ]
        for endpoint_id in stale:
            self.evict(endpoint_id)
        return stale
