"""
Gantz Errors - Exception taxonomy shared by every layer.

Only ``ParseError`` at startup is allowed to stop the process. Everything
else is scoped to a single invocation or to the relay session.
"""

from typing import Optional


class GantzError(Exception):
    """Base class for all Gantz errors."""

    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ConfigError(GantzError):
    """Raised when there's a configuration error."""

    code = "config_error"


class ParseError(GantzError):
    """Raised when a tool-definition document cannot be loaded."""

    code = "parse_error"

    def __init__(self, message: str, tool_name: Optional[str] = None):
        self.tool_name = tool_name
        if tool_name:
            message = f"tool '{tool_name}': {message}"
        super().__init__(message)


class ValidationError(GantzError):
    """Arguments do not match a known tool's parameters."""

    code = "invalid_arguments"


class ProtocolError(GantzError):
    """A request was rejected before reaching the executor."""

    code = "protocol_error"


class MalformedRequestError(ProtocolError):
    code = "malformed_request"


class UnknownToolError(ProtocolError):
    code = "unknown_tool"

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class AuthError(ProtocolError):
    """Missing or wrong bearer token. The message never names tools."""

    code = "unauthorized"

    def __init__(self, message: str = "Missing or invalid token"):
        super().__init__(message)


class DuplicateRequestError(ProtocolError):
    code = "duplicate_request"


class RelayTransportError(GantzError):
    """Raised when the relay channel is lost or refuses a message."""

    code = "transport_error"


class CircuitOpenError(RelayTransportError):
    """Raised when the relay circuit breaker rejects a connection attempt."""

    code = "circuit_open"


class SessionStateError(GantzError):
    """Raised on an illegal session state transition."""

    code = "session_state"
