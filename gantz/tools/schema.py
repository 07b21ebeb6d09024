"""Data models for tool definitions, invocation requests and results."""

from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

_TRUE_WORDS = {"true", "1", "yes", "on"}
_FALSE_WORDS = {"false", "0", "no", "off"}


def find_placeholders(template: str) -> List[str]:
    """Return placeholder names in order of appearance."""
    return PLACEHOLDER_RE.findall(template)


class ParamType(str, Enum):
    """Semantic type of a tool parameter."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class ParamValue:
    """An argument value tagged with the type it was coerced to."""

    type: ParamType
    value: Union[str, int, float, bool]

    def render(self) -> str:
        """Text placed into the argv element."""
        if self.type is ParamType.BOOLEAN:
            return "true" if self.value else "false"
        if self.type is ParamType.NUMBER:
            return repr(float(self.value))
        return str(self.value)

    @classmethod
    def coerce(cls, param_type: ParamType, raw: Any) -> "ParamValue":
        """
        Coerce a raw JSON value into ``param_type``.

        Raises ``ValueError`` when the value cannot be represented.
        """
        if param_type is ParamType.STRING:
            if isinstance(raw, str):
                return cls(param_type, raw)
            if isinstance(raw, (int, float)) and not isinstance(raw, bool):
                return cls(param_type, str(raw))
            raise ValueError(f"expected string, got {type(raw).__name__}")

        if param_type is ParamType.BOOLEAN:
            if isinstance(raw, bool):
                return cls(param_type, raw)
            if isinstance(raw, str) and raw.strip().lower() in _TRUE_WORDS:
                return cls(param_type, True)
            if isinstance(raw, str) and raw.strip().lower() in _FALSE_WORDS:
                return cls(param_type, False)
            raise ValueError(f"expected boolean, got {raw!r}")

        if isinstance(raw, bool):
            raise ValueError(f"expected {param_type.value}, got boolean")

        if param_type is ParamType.INTEGER:
            if isinstance(raw, int):
                return cls(param_type, raw)
            if isinstance(raw, float) and raw.is_integer():
                return cls(param_type, int(raw))
            if isinstance(raw, str):
                try:
                    return cls(param_type, int(raw.strip()))
                except ValueError:
                    pass
            raise ValueError(f"expected integer, got {raw!r}")

        # NUMBER
        if isinstance(raw, (int, float)):
            value = float(raw)
        elif isinstance(raw, str):
            try:
                value = float(raw.strip())
            except ValueError:
                raise ValueError(f"expected number, got {raw!r}")
        else:
            raise ValueError(f"expected number, got {type(raw).__name__}")
        if not math.isfinite(value):
            raise ValueError(f"expected finite number, got {raw!r}")
        return cls(param_type, value)


class ToolParam(BaseModel):
    """A single parameter for a tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ParamType = ParamType.STRING
    description: str = ""
    required: bool = False
    default: Any = None

    def json_schema(self) -> Dict[str, Any]:
        schema: Dict[str, Any] = {"type": self.type.value}
        if self.description:
            schema["description"] = self.description
        if self.default is not None:
            schema["default"] = self.default
        return schema


class ToolDescription(BaseModel):
    """What a remote caller is allowed to see about a tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: Tuple[ToolParam, ...] = ()

    def input_schema(self) -> Dict[str, Any]:
        """JSON schema object describing the tool's arguments."""
        return {
            "type": "object",
            "properties": {p.name: p.json_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
            "additionalProperties": False,
        }


class ToolSpec(BaseModel):
    """A loaded tool: public metadata plus the private invocation recipe."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: Tuple[ToolParam, ...] = ()
    command: Tuple[str, ...]
    timeout: Optional[float] = None
    working_dir: Optional[str] = None
    env: Tuple[Tuple[str, str], ...] = ()

    def param(self, name: str) -> Optional[ToolParam]:
        for p in self.parameters:
            if p.name == name:
                return p
        return None

    def describe(self) -> ToolDescription:
        return ToolDescription(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


class ResultStatus(str, Enum):
    """Outcome of one invocation."""

    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    EXECUTION_ERROR = "execution_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class InvocationRequest(BaseModel):
    """A call delivered by the relay, keyed by its correlation id."""

    correlation_id: str
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    received_at: float = Field(default_factory=time.time)
    timeout: Optional[float] = None


class InvocationResult(BaseModel):
    """Result from a tool execution, delivered back through the relay."""

    correlation_id: str = ""
    tool_name: str = ""
    status: ResultStatus = ResultStatus.SUCCESS
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    error: Optional[str] = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.SUCCESS
