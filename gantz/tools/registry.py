"""Tool registry - parses tool-definition documents and serves tool lookups."""

from __future__ import annotations

import logging
import re
import shlex
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import yaml

from gantz.errors import ParseError, UnknownToolError
from gantz.tools.schema import (
    PLACEHOLDER_RE,
    ParamType,
    ParamValue,
    ToolDescription,
    ToolParam,
    ToolSpec,
    find_placeholders,
)

logger = logging.getLogger(__name__)

TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
PARAM_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ToolRegistry:
    """
    Immutable, ordered mapping of tool name to ``ToolSpec``.

    Built in one go by ``load()``; a reload builds a new registry rather
    than mutating this one, so concurrent readers never need a lock.

    Example:
        >>> registry = ToolRegistry.load_file(Path("gantz.yaml"))
        >>> [t.name for t in registry.describe()]
        ['echo_back']
    """

    def __init__(self, specs: Iterable[ToolSpec], name: str = "", description: str = ""):
        self.name = name
        self.description = description
        self._tools: "OrderedDict[str, ToolSpec]" = OrderedDict()
        for spec in specs:
            if spec.name in self._tools:
                raise ParseError("duplicate tool name", tool_name=spec.name)
            self._tools[spec.name] = spec

    # ── Loading ───────────────────────────────────────────────────────────

    @classmethod
    def load(cls, document: Union[str, bytes, Dict[str, Any]]) -> "ToolRegistry":
        """
        Parse a tool-definition document (YAML text or an already-parsed mapping).

        Loading is all-or-nothing: the first bad entry raises ``ParseError``
        and no registry is returned.
        """
        if isinstance(document, (str, bytes)):
            try:
                document = yaml.safe_load(document)
            except yaml.YAMLError as exc:
                raise ParseError(f"invalid YAML: {exc}")

        if not isinstance(document, dict):
            raise ParseError("tool-definition document must be a mapping")

        tools_raw = document.get("tools")
        if not isinstance(tools_raw, list):
            raise ParseError("'tools' must be a list of tool entries")

        specs: List[ToolSpec] = []
        seen = set()
        for index, raw in enumerate(tools_raw):
            spec = _parse_tool(raw, index)
            if spec.name in seen:
                raise ParseError("duplicate tool name", tool_name=spec.name)
            seen.add(spec.name)
            specs.append(spec)

        return cls(
            specs,
            name=str(document.get("name") or ""),
            description=str(document.get("description") or ""),
        )

    @classmethod
    def load_file(cls, path: Path) -> "ToolRegistry":
        """Read and parse a tool-definition file."""
        path = Path(path)
        try:
            with open(path) as f:
                text = f.read()
        except OSError as exc:
            raise ParseError(f"cannot read {path}: {exc}")
        return cls.load(text)

    # ── Lookup ────────────────────────────────────────────────────────────

    def resolve(self, name: str) -> ToolSpec:
        """Exact lookup. Raises ``UnknownToolError``."""
        spec = self._tools.get(name)
        if spec is None:
            raise UnknownToolError(name)
        return spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def describe(self) -> List[ToolDescription]:
        """Public metadata for discovery, in document order. No recipes."""
        return [spec.describe() for spec in self._tools.values()]

    def names(self) -> List[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._tools.values())


class ToolSource:
    """
    Owns the tool-definition file and the registry currently being served.

    ``reload()`` swaps in a freshly built registry; if the new document is
    bad the previous registry keeps serving.
    """

    def __init__(self, path: Path, registry: Optional[ToolRegistry] = None):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._listeners: List[Callable[[ToolRegistry], None]] = []
        self._mtime = self._stat_mtime()
        self._registry = registry if registry is not None else ToolRegistry.load_file(self.path)

    @property
    def current(self) -> ToolRegistry:
        return self._registry

    def subscribe(self, callback: Callable[[ToolRegistry], None]) -> None:
        """Call ``callback(new_registry)`` after every successful reload."""
        self._listeners.append(callback)

    def reload(self) -> ToolRegistry:
        """Rebuild the registry from disk. Raises ``ParseError`` and keeps the old one."""
        with self._lock:
            self._mtime = self._stat_mtime()
            registry = ToolRegistry.load_file(self.path)
            self._registry = registry
        logger.info("Reloaded %d tools from %s", len(registry), self.path)
        for callback in self._listeners:
            callback(registry)
        return registry

    def reload_if_changed(self) -> bool:
        """Reload when the file's mtime moved. Returns True if a new registry is live."""
        if self._stat_mtime() == self._mtime:
            return False
        try:
            self.reload()
        except ParseError as exc:
            logger.error("Keeping previous tools; reload of %s failed: %s", self.path, exc)
            return False
        return True

    def _stat_mtime(self) -> Optional[float]:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None


# ── Document parsing ──────────────────────────────────────────────────────


def _parse_tool(raw: Any, index: int) -> ToolSpec:
    if not isinstance(raw, dict):
        raise ParseError(f"tool entry #{index} must be a mapping")

    name = raw.get("name")
    if not isinstance(name, str) or not TOOL_NAME_RE.match(name):
        raise ParseError(
            f"tool entry #{index} needs a name of 1-64 letters, digits, '_' or '-'",
            tool_name=name if isinstance(name, str) and name else None,
        )

    description = raw.get("description") or ""
    if not isinstance(description, str):
        raise ParseError("description must be a string", tool_name=name)

    params = _parse_params(raw.get("parameters"), name)
    command = _parse_command(raw, name)

    declared = {p.name for p in params}
    for position, token in enumerate(command):
        if "{{" in PLACEHOLDER_RE.sub("", token):
            raise ParseError(f"malformed placeholder in command element {token!r}", tool_name=name)
        for placeholder in find_placeholders(token):
            if placeholder not in declared:
                raise ParseError(
                    f"command references undeclared parameter '{placeholder}'",
                    tool_name=name,
                )
            if position == 0:
                raise ParseError("the program name cannot contain placeholders", tool_name=name)

    return ToolSpec(
        name=name,
        description=description,
        parameters=tuple(params),
        command=command,
        timeout=_parse_timeout(raw, name),
        working_dir=_parse_working_dir(raw, name),
        env=_parse_env(raw.get("env"), name),
    )


def _parse_params(raw: Any, tool_name: str) -> List[ToolParam]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ParseError("parameters must be a list", tool_name=tool_name)

    params: List[ToolParam] = []
    seen = set()
    for entry in raw:
        if not isinstance(entry, dict):
            raise ParseError("each parameter must be a mapping", tool_name=tool_name)

        pname = entry.get("name")
        if not isinstance(pname, str) or not PARAM_NAME_RE.match(pname):
            raise ParseError(f"invalid parameter name {pname!r}", tool_name=tool_name)
        if pname in seen:
            raise ParseError(f"duplicate parameter '{pname}'", tool_name=tool_name)
        seen.add(pname)

        required = entry.get("required", False)
        if not isinstance(required, bool):
            raise ParseError(f"parameter '{pname}': required must be true or false", tool_name=tool_name)

        raw_type = entry.get("type")
        if raw_type is None:
            if required:
                raise ParseError(f"required parameter '{pname}' has no type", tool_name=tool_name)
            ptype = ParamType.STRING
        else:
            try:
                ptype = ParamType(str(raw_type).lower())
            except ValueError:
                raise ParseError(
                    f"parameter '{pname}' has unknown type {raw_type!r}",
                    tool_name=tool_name,
                )

        default = entry.get("default")
        if default is not None:
            try:
                default = ParamValue.coerce(ptype, default).value
            except ValueError as exc:
                raise ParseError(f"parameter '{pname}' default: {exc}", tool_name=tool_name)

        params.append(ToolParam(
            name=pname,
            type=ptype,
            description=str(entry.get("description") or ""),
            required=required,
            default=default,
        ))
    return params


def _parse_command(raw: Dict[str, Any], tool_name: str) -> Tuple[str, ...]:
    command = raw.get("command")
    script = raw.get("script")
    if command is None and isinstance(script, dict):
        command = script.get("command", script.get("shell"))

    if isinstance(command, str):
        try:
            tokens = shlex.split(command)
        except ValueError as exc:
            raise ParseError(f"cannot tokenise command: {exc}", tool_name=tool_name)
    elif isinstance(command, list):
        tokens = []
        for token in command:
            if isinstance(token, bool) or not isinstance(token, (str, int, float)):
                raise ParseError("command elements must be strings", tool_name=tool_name)
            tokens.append(str(token))
    else:
        raise ParseError("missing command (string or list)", tool_name=tool_name)

    if not tokens or not tokens[0]:
        raise ParseError("command is empty", tool_name=tool_name)
    return tuple(tokens)


def _parse_timeout(raw: Dict[str, Any], tool_name: str) -> Optional[float]:
    timeout = raw.get("timeout")
    if timeout is None and isinstance(raw.get("script"), dict):
        timeout = raw["script"].get("timeout")
    if timeout is None:
        return None
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ParseError("timeout must be a positive number of seconds", tool_name=tool_name)
    return float(timeout)


def _parse_working_dir(raw: Dict[str, Any], tool_name: str) -> Optional[str]:
    working_dir = raw.get("working_dir")
    if working_dir is None:
        return None
    if not isinstance(working_dir, str):
        raise ParseError("working_dir must be a string", tool_name=tool_name)
    return working_dir


def _parse_env(raw: Any, tool_name: str) -> Tuple[Tuple[str, str], ...]:
    if raw is None:
        return ()
    if not isinstance(raw, dict):
        raise ParseError("env must be a mapping", tool_name=tool_name)
    return tuple((str(k), str(v)) for k, v in raw.items())
