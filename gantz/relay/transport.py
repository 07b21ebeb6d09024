"""Relay channels - the wire between this process and the public relay."""

from __future__ import annotations

import json
import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from gantz.errors import RelayTransportError

logger = logging.getLogger(__name__)

_STREAM_CLOSED = object()


@dataclass
class RelayBinding:
    """What the relay answered when an endpoint was (re)bound."""

    endpoint_id: str
    public_url: Optional[str] = None


class RelayChannel(ABC):
    """
    One long-lived, bidirectional, message-oriented channel to the relay.

    Messages are JSON objects. ``receive`` blocks for at most ``timeout``
    seconds and returns None when nothing arrived; a lost channel raises
    ``RelayTransportError`` from any method.
    """

    @abstractmethod
    def connect(self, endpoint_id: str, requires_auth: bool = False) -> RelayBinding:
        """Bind ``endpoint_id`` at the relay and open the inbound stream."""
        pass

    @abstractmethod
    def receive(self, timeout: float) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def send(self, message: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass


class HttpRelayChannel(RelayChannel):
    """
    Relay channel over plain HTTP(S) using httpx.

    - ``POST {url}/v1/tunnels`` binds the endpoint id and returns its public URL.
    - ``GET {url}/v1/tunnels/{id}/events`` is a long-lived stream of
      newline-delimited JSON messages, read by a background thread.
    - ``POST {url}/v1/tunnels/{id}/messages`` delivers one outbound message.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        connect_timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._owns_client = client is None
        self.connect_timeout = connect_timeout
        self._client = client or httpx.Client(timeout=httpx.Timeout(connect_timeout))
        self._lock = threading.Lock()
        self._endpoint_id: Optional[str] = None
        self._response: Optional[httpx.Response] = None
        self._reader: Optional[threading.Thread] = None
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._connected = False

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def connect(self, endpoint_id: str, requires_auth: bool = False) -> RelayBinding:
        self._close_stream()

        try:
            response = self._client.post(
                f"{self.base_url}/v1/tunnels",
                json={"endpoint_id": endpoint_id, "requires_auth": requires_auth},
                headers=self._headers(),
                timeout=self.connect_timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RelayTransportError(f"relay registration failed: {exc}")

        request = self._client.build_request(
            "GET",
            f"{self.base_url}/v1/tunnels/{endpoint_id}/events",
            headers={**self._headers(), "Accept": "application/x-ndjson"},
            timeout=httpx.Timeout(self.connect_timeout, read=None),
        )
        try:
            stream = self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise RelayTransportError(f"relay stream failed: {exc}")
        if stream.status_code >= 400:
            stream.close()
            raise RelayTransportError(f"relay stream refused: HTTP {stream.status_code}")

        inbox: "queue.Queue[Any]" = queue.Queue()
        reader = threading.Thread(
            target=self._read_stream,
            args=(stream, inbox),
            name=f"gantz-relay-reader-{endpoint_id}",
            daemon=True,
        )
        with self._lock:
            self._endpoint_id = endpoint_id
            self._response = stream
            self._inbox = inbox
            self._reader = reader
            self._connected = True
        reader.start()

        return RelayBinding(
            endpoint_id=data.get("endpoint_id", endpoint_id),
            public_url=data.get("public_url"),
        )

    def close(self) -> None:
        self._close_stream()
        if self._owns_client:
            self._client.close()

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ── Messaging ─────────────────────────────────────────────────────────

    def receive(self, timeout: float) -> Optional[Dict[str, Any]]:
        if not self._connected:
            raise RelayTransportError("relay channel is not connected")
        try:
            item = self._inbox.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _STREAM_CLOSED:
            self._connected = False
            raise RelayTransportError("relay closed the event stream")
        return item

    def send(self, message: Dict[str, Any]) -> None:
        if not self._connected or self._endpoint_id is None:
            raise RelayTransportError("relay channel is not connected")
        try:
            response = self._client.post(
                f"{self.base_url}/v1/tunnels/{self._endpoint_id}/messages",
                json=message,
                headers=self._headers(),
                timeout=self.connect_timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RelayTransportError(f"relay send failed: {exc}")

    # ── Internals ─────────────────────────────────────────────────────────

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _read_stream(self, response: httpx.Response, inbox: "queue.Queue[Any]") -> None:
        try:
            for line in response.iter_lines():
                if not line.strip():
                    continue
                try:
                    message = json.loads(line)
                except ValueError:
                    logger.warning("Dropping undecodable relay frame (%d bytes)", len(line))
                    continue
                inbox.put(message)
        except (httpx.HTTPError, httpx.StreamError) as exc:
            logger.debug("Relay stream ended: %s", exc)
        finally:
            inbox.put(_STREAM_CLOSED)

    def _close_stream(self) -> None:
        with self._lock:
            response, self._response = self._response, None
            self._connected = False
        if response is not None:
            response.close()
