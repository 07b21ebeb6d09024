"""
Gantz Tunnel - One running tool host.

Wires the pieces together for a single process:

    relay -> RelayConnection -> Tunnel.handle_message -> auth -> RequestRouter
          -> ToolExecutor -> result -> ProtocolAdapter -> RelayConnection -> relay
"""

import logging
import threading
from typing import Any, Dict, Optional

from gantz.errors import AuthError, MalformedRequestError, RelayTransportError
from gantz.relay.connection import RelayConnection
from gantz.relay.protocol import CallMessage, CancelMessage, DiscoverMessage, ProtocolAdapter
from gantz.relay.resilience import CircuitBreaker, ExponentialBackoff
from gantz.relay.router import RequestRouter
from gantz.relay.session import Session, SessionManager
from gantz.relay.transport import RelayChannel
from gantz.tools.executor import ToolExecutor
from gantz.tools.registry import ToolRegistry, ToolSource
from gantz.validation.config import GantzConfig

logger = logging.getLogger(__name__)


class Tunnel:
    """
    Exposes the tools of one ``ToolSource`` through one relay endpoint.

    Example:
        >>> source = ToolSource(Path("gantz.yaml"))
        >>> channel = HttpRelayChannel(config.relay.url, api_key=config.relay.api_key)
        >>> with Tunnel(source, config, channel) as tunnel:
        ...     tunnel.start(wait=10)
        ...     print(tunnel.public_url, tunnel.token)
    """

    def __init__(
        self,
        source: ToolSource,
        config: GantzConfig,
        channel: RelayChannel,
        executor: Optional[ToolExecutor] = None,
        sessions: Optional[SessionManager] = None,
        adapter: Optional[ProtocolAdapter] = None,
    ):
        self.source = source
        self.config = config
        self.adapter = adapter or ProtocolAdapter()
        self.executor = executor or ToolExecutor(
            default_timeout=config.executor.default_timeout,
            max_output_bytes=config.executor.max_output_bytes,
            kill_grace=config.executor.kill_grace,
        )
        self.sessions = sessions or SessionManager(grace_period=config.relay.grace_period)
        self.router = RequestRouter(
            registry=lambda: self.sessions.registry_for(self.endpoint_id),
            executor=self.executor,
            send=self._send,
            adapter=self.adapter,
            max_workers=config.executor.max_workers,
            sweep_interval=config.executor.sweep_interval,
            sweep_grace=config.executor.sweep_grace,
            max_timeout=config.executor.max_timeout,
        )
        self.token: Optional[str] = None
        self.connection: Optional[RelayConnection] = None
        self._channel = channel
        self._stop = threading.Event()
        self._watcher: Optional[threading.Thread] = None
        source.subscribe(self._on_reload)

    # ── Properties ────────────────────────────────────────────────────────

    @property
    def registry(self) -> ToolRegistry:
        return self.source.current

    @property
    def session(self) -> Session:
        if self.connection is None:
            raise RuntimeError("tunnel is not started")
        return self.connection.session

    @property
    def endpoint_id(self) -> str:
        return self.session.endpoint_id

    @property
    def public_url(self) -> Optional[str]:
        return self.session.public_url

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(
        self,
        auth: Optional[bool] = None,
        token: Optional[str] = None,
        wait: Optional[float] = None,
    ) -> Session:
        """
        Create the session and connect to the relay.

        Args:
            auth: Require a bearer token. Defaults to the ``auth`` config.
            token: Explicit token; one is generated when auth is on and none is set.
            wait: Seconds to block until the first connection is up.
        """
        token = token or self.config.auth.token
        if auth is None:
            auth = self.config.auth.enabled or token is not None
        if not auth:
            token = None

        endpoint_id, self.token = self.sessions.create_session(self.registry, auth=auth, token=token)

        relay = self.config.relay
        self.connection = RelayConnection(
            channel=self._channel,
            sessions=self.sessions,
            endpoint_id=endpoint_id,
            on_message=self.handle_message,
            on_disconnect=self.router.cancel_all,
            on_rebind=self._on_rebind,
            heartbeat_interval=relay.heartbeat_interval,
            heartbeat_timeout=relay.heartbeat_timeout,
            backoff=ExponentialBackoff(initial=relay.backoff_initial, maximum=relay.backoff_max),
            breaker=CircuitBreaker(
                failure_threshold=relay.breaker_failure_threshold,
                reset_timeout=relay.breaker_reset_timeout,
            ),
            adapter=self.adapter,
        )

        self.router.start()
        self.connection.start()
        if self.config.tools.watch:
            self._stop.clear()
            self._watcher = threading.Thread(target=self._watch, name="gantz-watch", daemon=True)
            self._watcher.start()

        logger.info("Serving %d tool(s) on endpoint %s", len(self.registry), endpoint_id)
        if wait is not None and not self.connection.wait_connected(wait):
            logger.warning("Relay not reachable after %.0fs; still retrying in the background", wait)
        return self.connection.session

    def stop(self) -> None:
        self._stop.set()
        if self._watcher is not None:
            self._watcher.join(timeout=self.config.tools.watch_interval * 2)
            self._watcher = None
        if self.connection is not None:
            self.connection.stop()
        self.router.stop()
        logger.info("Tunnel stopped")

    def __enter__(self) -> "Tunnel":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    # ── Inbound ───────────────────────────────────────────────────────────

    def handle_message(self, raw: Any) -> None:
        """
        Route one inbound relay message.

        Auth is checked before anything looks at the tool name, so a
        rejected caller learns nothing about which tools exist.
        """
        try:
            message = self.adapter.parse(raw)
        except MalformedRequestError as exc:
            logger.info("Malformed relay message: %s", exc)
            self._reply(self.adapter.error_response(self.adapter.request_id(raw), exc))
            return

        if not isinstance(message, (DiscoverMessage, CallMessage, CancelMessage)):
            return

        if not self.sessions.authenticate(self.endpoint_id, message.token):
            logger.warning("Rejected %s %s: missing or invalid token", message.type, message.id)
            self._reply(self.adapter.error_response(message.id, AuthError()))
            return

        if isinstance(message, DiscoverMessage):
            registry = self.sessions.registry_for(self.endpoint_id)
            self._reply(self.adapter.discovery_response(message.id, registry))
        elif isinstance(message, CallMessage):
            self.router.dispatch(self.adapter.to_request(message))
        else:
            self.router.cancel(message.id)

    # ── Internals ─────────────────────────────────────────────────────────

    def _send(self, message: Dict[str, Any]) -> None:
        if self.connection is None:
            raise RelayTransportError("tunnel is not started")
        self.connection.send(message)

    def _reply(self, message: Dict[str, Any]) -> None:
        try:
            self._send(message)
        except RelayTransportError as exc:
            logger.warning("Reply for %s dropped, relay unavailable: %s", message.get("id"), exc)

    def _on_reload(self, registry: ToolRegistry) -> None:
        if self.connection is not None:
            self.sessions.bind_registry(self.endpoint_id, registry)

    def _on_rebind(self, session: Session) -> None:
        session.registry = self.registry
        logger.warning("Now serving on new endpoint %s", session.endpoint_id)

    def _watch(self) -> None:
        while not self._stop.wait(self.config.tools.watch_interval):
            self.source.reload_if_changed()
