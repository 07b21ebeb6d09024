"""
Protocol adapter - relay wire messages <-> registry, requests and results.

Inbound (relay -> tunnel):

    {"type": "discover", "id": "d1", "token": "..."}
    {"type": "call", "id": "c1", "tool": "echo_back", "arguments": {...}, "token": "...", "timeout": 5}
    {"type": "cancel", "id": "c1", "token": "..."}
    {"type": "heartbeat"} | {"type": "heartbeat_ack"} | {"type": "evicted"}

Outbound (tunnel -> relay):

    {"type": "tools", "id": "d1", "name": ..., "description": ..., "tools": [...]}
    {"type": "result", "id": "c1", "outcome": "ok" | "tool_error" | "protocol_error", ...}
    {"type": "heartbeat", "ts": 1700000000.0}
"""

from __future__ import annotations

import json
import time
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from gantz.errors import GantzError, MalformedRequestError
from gantz.tools.registry import ToolRegistry
from gantz.tools.schema import InvocationRequest, InvocationResult, ResultStatus

OUTCOME_OK = "ok"
OUTCOME_TOOL_ERROR = "tool_error"
OUTCOME_PROTOCOL_ERROR = "protocol_error"

MAX_ID_LENGTH = 128


class _Inbound(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class DiscoverMessage(_Inbound):
    type: Literal["discover"]
    id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    token: Optional[str] = None


class CallMessage(_Inbound):
    type: Literal["call"]
    id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    tool: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    arguments: Dict[str, Any] = Field(default_factory=dict)
    token: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0)


class CancelMessage(_Inbound):
    type: Literal["cancel"]
    id: str = Field(min_length=1, max_length=MAX_ID_LENGTH)
    token: Optional[str] = None


class HeartbeatMessage(_Inbound):
    type: Literal["heartbeat"]
    ts: Optional[float] = None


class HeartbeatAckMessage(_Inbound):
    type: Literal["heartbeat_ack"]
    ts: Optional[float] = None


class EvictedMessage(_Inbound):
    type: Literal["evicted"]
    reason: Optional[str] = None


InboundMessage = Annotated[
    Union[
        DiscoverMessage,
        CallMessage,
        CancelMessage,
        HeartbeatMessage,
        HeartbeatAckMessage,
        EvictedMessage,
    ],
    Field(discriminator="type"),
]

_INBOUND = TypeAdapter(InboundMessage)


class ProtocolAdapter:
    """
    Translates between relay messages and Gantz objects.

    Stateless; one instance is shared by the connection and router threads.
    """

    # ── Inbound ───────────────────────────────────────────────────────────

    def parse(self, raw: Union[str, bytes, Dict[str, Any]]) -> InboundMessage:
        """Validate the envelope. Raises ``MalformedRequestError``."""
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError:
                raise MalformedRequestError("message is not valid JSON")
        if not isinstance(raw, dict):
            raise MalformedRequestError("message must be a JSON object")
        try:
            return _INBOUND.validate_python(raw)
        except PydanticValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'message'}: {err['msg']}"
                for err in exc.errors()
            )
            raise MalformedRequestError(f"malformed {raw.get('type', 'message')!s}: {problems}")

    @staticmethod
    def request_id(raw: Any) -> Optional[str]:
        """Best-effort id of a message that failed to parse, for the error reply."""
        if isinstance(raw, dict) and isinstance(raw.get("id"), str):
            return raw["id"][:MAX_ID_LENGTH]
        return None

    def to_request(self, call: CallMessage) -> InvocationRequest:
        return InvocationRequest(
            correlation_id=call.id,
            tool_name=call.tool,
            arguments=dict(call.arguments),
            timeout=call.timeout,
        )

    # ── Outbound ──────────────────────────────────────────────────────────

    def discovery_response(self, request_id: str, registry: ToolRegistry) -> Dict[str, Any]:
        return {
            "type": "tools",
            "id": request_id,
            "name": registry.name,
            "description": registry.description,
            "tools": [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "inputSchema": tool.input_schema(),
                }
                for tool in registry.describe()
            ],
        }

    def result_response(self, result: InvocationResult) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "type": "result",
            "id": result.correlation_id,
            "duration_ms": result.duration_ms,
        }
        payload = {
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exit_code": result.exit_code,
            "truncated": result.stdout_truncated or result.stderr_truncated,
        }
        tool = result.tool_name
        status = result.status

        if status is ResultStatus.SUCCESS:
            message.update(outcome=OUTCOME_OK, payload=payload)
        elif status is ResultStatus.VALIDATION_ERROR:
            message.update(outcome=OUTCOME_PROTOCOL_ERROR, error=_error(
                "invalid_arguments",
                f"Invalid arguments for tool '{tool}': {result.error}",
                retryable=False,
            ))
        elif status is ResultStatus.TIMEOUT:
            message.update(outcome=OUTCOME_TOOL_ERROR, payload=payload, error=_error(
                "timeout",
                f"Tool '{tool}' {result.error or 'timed out'} and was stopped",
                retryable=True,
            ))
        elif status is ResultStatus.CANCELLED:
            message.update(outcome=OUTCOME_TOOL_ERROR, payload=payload, error=_error(
                "cancelled",
                f"Call to tool '{tool}' was cancelled before it finished",
                retryable=True,
            ))
        else:
            message.update(outcome=OUTCOME_TOOL_ERROR, payload=payload, error=_error(
                "execution_failed",
                f"Tool '{tool}' failed: {result.error or 'unknown error'}",
                retryable=False,
            ))
        return message

    def error_response(self, request_id: Optional[str], exc: GantzError) -> Dict[str, Any]:
        return {
            "type": "result",
            "id": request_id,
            "outcome": OUTCOME_PROTOCOL_ERROR,
            "error": _error(exc.code, exc.message, retryable=False),
        }

    def heartbeat(self) -> Dict[str, Any]:
        return {"type": "heartbeat", "ts": time.time()}


def _error(code: str, message: str, retryable: bool) -> Dict[str, Any]:
    return {"code": code, "message": message, "retryable": retryable}
