"""Tool executor - runs a tool's command as a child process with bounded blast radius."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from gantz.errors import ValidationError
from gantz.tools.schema import (
    PLACEHOLDER_RE,
    InvocationResult,
    ParamValue,
    ResultStatus,
    ToolSpec,
    find_placeholders,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024

_POSIX = os.name == "posix"
_READ_CHUNK = 64 * 1024
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


def bind_arguments(spec: ToolSpec, arguments: Optional[Mapping[str, Any]]) -> Dict[str, ParamValue]:
    """
    Check ``arguments`` against ``spec.parameters`` and coerce them.

    Defaults fill omitted optional parameters. Raises ``ValidationError``
    for unknown names, missing required parameters or uncoercible values.
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, Mapping):
        raise ValidationError("arguments must be an object")

    declared = {p.name for p in spec.parameters}
    unknown = sorted(str(k) for k in arguments if k not in declared)
    if unknown:
        raise ValidationError(f"unknown parameter(s): {', '.join(unknown)}")

    values: Dict[str, ParamValue] = {}
    missing: List[str] = []
    for param in spec.parameters:
        raw = arguments.get(param.name)
        if raw is None:
            if param.default is not None:
                values[param.name] = ParamValue.coerce(param.type, param.default)
            elif param.required:
                missing.append(param.name)
            continue
        try:
            value = ParamValue.coerce(param.type, raw)
        except ValueError as exc:
            raise ValidationError(f"parameter '{param.name}': {exc}")
        if "\x00" in value.render():
            raise ValidationError(f"parameter '{param.name}': NUL bytes are not allowed")
        values[param.name] = value

    if missing:
        raise ValidationError(f"missing required parameter(s): {', '.join(missing)}")
    return values


def render_argv(command: Tuple[str, ...], values: Mapping[str, ParamValue]) -> List[str]:
    """
    Substitute placeholders element by element.

    A value always lands inside the argv element that held its placeholder,
    so it can never add arguments or reach a shell. An element that is only
    the placeholder of an omitted optional parameter is dropped.
    """
    argv: List[str] = []
    for token in command:
        if not find_placeholders(token):
            argv.append(token)
            continue
        whole = PLACEHOLDER_RE.fullmatch(token)
        if whole and whole.group(1) not in values:
            continue
        argv.append(PLACEHOLDER_RE.sub(
            lambda m: values[m.group(1)].render() if m.group(1) in values else "",
            token,
        ))
    return argv


class _BoundedBuffer:
    """Collects at most ``limit`` bytes and remembers whether anything was dropped."""

    def __init__(self, limit: int):
        self.limit = limit
        self.truncated = False
        self._chunks: List[bytes] = []
        self._size = 0

    def feed(self, data: bytes) -> None:
        room = self.limit - self._size
        if room > 0:
            kept = data[:room]
            self._chunks.append(kept)
            self._size += len(kept)
        if len(data) > max(room, 0):
            self.truncated = True

    def text(self) -> str:
        out = b"".join(self._chunks).decode("utf-8", errors="replace")
        if self.truncated:
            out += f"\n... [output truncated at {self.limit} bytes]"
        return out


def _drain(stream, buffer: _BoundedBuffer) -> None:
    fd = stream.fileno()
    try:
        while True:
            chunk = os.read(fd, _READ_CHUNK)
            if not chunk:
                break
            buffer.feed(chunk)
    except OSError:
        pass
    finally:
        stream.close()


class ToolExecutor:
    """
    Runs ``ToolSpec`` recipes as child processes.

    Every call gets its own process group, pipes and buffers, so any number
    of ``execute()`` calls may run at once from different threads.

    Example:
        >>> executor = ToolExecutor(default_timeout=10)
        >>> result = executor.execute(registry.resolve("echo_back"), {"text": "hi"})
        >>> result.stdout
        'hi\\n'
    """

    def __init__(
        self,
        default_timeout: float = DEFAULT_TIMEOUT,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        kill_grace: float = 2.0,
        poll_interval: float = 0.05,
    ):
        self.default_timeout = default_timeout
        self.max_output_bytes = max_output_bytes
        self.kill_grace = kill_grace
        self.poll_interval = poll_interval

    # ── Execution ─────────────────────────────────────────────────────────

    def execute(
        self,
        spec: ToolSpec,
        arguments: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        correlation_id: str = "",
    ) -> InvocationResult:
        """
        Validate ``arguments``, run the tool and capture its output.

        Never raises for per-call problems: validation failures, spawn
        failures, non-zero exits, timeouts and cancellations all come back
        as an ``InvocationResult`` with the matching status.
        """
        t0 = time.monotonic()

        def finish(status: ResultStatus, **fields) -> InvocationResult:
            return InvocationResult(
                correlation_id=correlation_id,
                tool_name=spec.name,
                status=status,
                duration_ms=int((time.monotonic() - t0) * 1000),
                **fields,
            )

        try:
            values = bind_arguments(spec, arguments)
        except ValidationError as exc:
            return finish(ResultStatus.VALIDATION_ERROR, error=exc.message)

        argv = render_argv(spec.command, values)
        budget = self._budget(spec, timeout)

        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=os.path.expanduser(spec.working_dir) if spec.working_dir else None,
                env={**os.environ, **dict(spec.env)} if spec.env else None,
                start_new_session=_POSIX,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
            return finish(
                ResultStatus.EXECUTION_ERROR,
                error=f"cannot start '{argv[0]}': {exc.strerror or exc}",
            )
        except OSError as exc:
            return finish(ResultStatus.EXECUTION_ERROR, error=f"cannot start '{argv[0]}': {exc}")

        logger.debug("Started tool %s (pid %d, timeout %.1fs)", spec.name, proc.pid, budget)

        out_buf = _BoundedBuffer(self.max_output_bytes)
        err_buf = _BoundedBuffer(self.max_output_bytes)
        readers = [
            threading.Thread(target=_drain, args=(proc.stdout, out_buf), daemon=True),
            threading.Thread(target=_drain, args=(proc.stderr, err_buf), daemon=True),
        ]
        for reader in readers:
            reader.start()

        status = self._wait(proc, t0 + budget, cancel_event)
        if status is not None:
            self._terminate(proc)
        self._join_readers(proc, readers)

        captured = dict(
            stdout=out_buf.text(),
            stderr=err_buf.text(),
            stdout_truncated=out_buf.truncated,
            stderr_truncated=err_buf.truncated,
        )

        if status is ResultStatus.TIMEOUT:
            logger.warning("Tool %s timed out after %.1fs", spec.name, budget)
            return finish(status, error=f"timed out after {budget:g}s", **captured)
        if status is ResultStatus.CANCELLED:
            logger.info("Tool %s cancelled", spec.name)
            return finish(status, error="cancelled", **captured)

        exit_code = proc.returncode
        if exit_code != 0:
            return finish(
                ResultStatus.EXECUTION_ERROR,
                exit_code=exit_code,
                error=f"exited with status {exit_code}",
                **captured,
            )
        return finish(ResultStatus.SUCCESS, exit_code=0, **captured)

    # ── Process control ───────────────────────────────────────────────────

    def _budget(self, spec: ToolSpec, timeout: Optional[float]) -> float:
        if timeout is not None and timeout > 0:
            return float(timeout)
        if spec.timeout is not None:
            return spec.timeout
        return self.default_timeout

    def _wait(
        self,
        proc: subprocess.Popen,
        deadline: float,
        cancel_event: Optional[threading.Event],
    ) -> Optional[ResultStatus]:
        """Block until exit (None), the deadline (TIMEOUT) or a cancel (CANCELLED)."""
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return ResultStatus.TIMEOUT
            try:
                proc.wait(timeout=min(self.poll_interval, remaining))
                return None
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                return ResultStatus.CANCELLED

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the whole process group, SIGKILL whatever is left after the grace."""
        self._signal_group(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            self._signal_group(proc, _SIGKILL)
            proc.wait()
        # children that ignored SIGTERM
        self._signal_group(proc, _SIGKILL)

    def _join_readers(self, proc: subprocess.Popen, readers: List[threading.Thread]) -> None:
        for reader in readers:
            reader.join(timeout=self.kill_grace)
        if any(reader.is_alive() for reader in readers):
            # a background child still holds the pipes
            self._signal_group(proc, _SIGKILL)
            for reader in readers:
                reader.join(timeout=self.kill_grace)

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: int) -> None:
        try:
            if _POSIX:
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass
