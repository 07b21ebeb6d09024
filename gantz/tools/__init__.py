"""
Gantz tools: the tool-definition document, the registry built from it and
the executor that runs a tool's command locally.

    gantz.yaml --> ToolRegistry --> ToolSpec --> ToolExecutor --> child process
"""

from gantz.tools.schema import (
    InvocationRequest,
    InvocationResult,
    ParamType,
    ParamValue,
    ResultStatus,
    ToolDescription,
    ToolParam,
    ToolSpec,
)
from gantz.tools.registry import ToolRegistry, ToolSource
from gantz.tools.executor import ToolExecutor

__all__ = [
    "InvocationRequest",
    "InvocationResult",
    "ParamType",
    "ParamValue",
    "ResultStatus",
    "ToolDescription",
    "ToolParam",
    "ToolSpec",
    "ToolRegistry",
    "ToolSource",
    "ToolExecutor",
]
