"""Tests for argument binding and the subprocess executor."""

import os
import shutil
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from gantz.errors import ValidationError
from gantz.tools.executor import ToolExecutor, bind_arguments, render_argv
from gantz.tools.registry import ToolRegistry
from gantz.tools.schema import ParamType, ResultStatus, ToolParam, ToolSpec

from conftest import TOOLS_YAML, wait_until

pytestmark = pytest.mark.skipif(os.name != "posix", reason="needs POSIX process groups")

NASTY = "a; rm -rf / $(whoami) `id` | cat && echo pwned > /tmp/gantz-pwned 'q' \"dq\" *"


def _spec(command, *params, **kwargs):
    return ToolSpec(name=kwargs.pop("name", "t"), command=tuple(command), parameters=params, **kwargs)


@pytest.fixture
def registry():
    return ToolRegistry.load(TOOLS_YAML)


@pytest.fixture
def executor():
    return ToolExecutor(default_timeout=10, kill_grace=0.5)


class TestBindArguments:
    """Tests for bind_arguments and render_argv."""

    def test_unknown_parameter(self, registry):
        with pytest.raises(ValidationError, match="unknown parameter"):
            bind_arguments(registry.resolve("echo_back"), {"text": "x", "extra": 1})

    def test_missing_required(self, registry):
        with pytest.raises(ValidationError, match="missing required parameter"):
            bind_arguments(registry.resolve("echo_back"), {})

    def test_bad_type(self, registry):
        with pytest.raises(ValidationError, match="parameter 'seconds'"):
            bind_arguments(registry.resolve("nap"), {"seconds": "soon"})

    def test_nul_byte_rejected(self, registry):
        with pytest.raises(ValidationError, match="NUL"):
            bind_arguments(registry.resolve("echo_back"), {"text": "a\x00b"})

    def test_defaults_fill_optional(self, registry):
        values = bind_arguments(registry.resolve("greet"), {})
        assert values["who"].value == "world"
        assert "shout" not in values

    def test_render_drops_omitted_optional_token(self, registry):
        spec = registry.resolve("greet")
        argv = render_argv(spec.command, bind_arguments(spec, {}))
        assert argv == ["printf", "hello %s %s", "world"]

    def test_render_keeps_value_in_one_element(self, registry):
        spec = registry.resolve("echo_back")
        argv = render_argv(spec.command, bind_arguments(spec, {"text": NASTY}))
        assert argv == ["printf", "%s", NASTY]

    def test_render_embedded_placeholder(self):
        spec = _spec(
            ["curl", "--header=X-Id: {{rid}}", "{{url}}"],
            ToolParam(name="rid", type=ParamType.INTEGER),
            ToolParam(name="url", required=True),
        )
        argv = render_argv(spec.command, bind_arguments(spec, {"url": "http://x", "rid": "7"}))
        assert argv == ["curl", "--header=X-Id: 7", "http://x"]

        argv = render_argv(spec.command, bind_arguments(spec, {"url": "http://x"}))
        assert argv == ["curl", "--header=X-Id: ", "http://x"]


class TestToolExecutor:
    """Tests for ToolExecutor.execute."""

    def test_echo_round_trip_with_metacharacters(self, executor, registry):
        result = executor.execute(registry.resolve("echo_back"), {"text": NASTY}, correlation_id="c1")

        assert result.status is ResultStatus.SUCCESS
        assert result.ok
        assert result.stdout == NASTY
        assert result.exit_code == 0
        assert result.correlation_id == "c1"
        assert result.tool_name == "echo_back"
        assert not os.path.exists("/tmp/gantz-pwned")

    def test_validation_failure_spawns_nothing(self, executor, registry):
        with patch("gantz.tools.executor.subprocess.Popen") as popen:
            result = executor.execute(registry.resolve("echo_back"), {})

        assert result.status is ResultStatus.VALIDATION_ERROR
        assert "missing required parameter(s): text" in result.error
        popen.assert_not_called()

    def test_optional_parameters(self, executor, registry):
        greet = registry.resolve("greet")

        assert executor.execute(greet, {}).stdout == "hello world "
        assert executor.execute(greet, {"who": "bob", "shout": "yes"}).stdout == "hello bob true"

    def test_non_zero_exit(self, executor):
        spec = _spec(["sh", "-c", "echo oops >&2; exit 3"])
        result = executor.execute(spec)

        assert result.status is ResultStatus.EXECUTION_ERROR
        assert result.exit_code == 3
        assert result.stderr == "oops\n"
        assert result.error == "exited with status 3"

    def test_missing_program(self, executor):
        result = executor.execute(_spec(["/nonexistent/gantz-tool"]))

        assert result.status is ResultStatus.EXECUTION_ERROR
        assert result.error.startswith("cannot start '/nonexistent/gantz-tool'")

    def test_timeout_kills_process(self, executor):
        t0 = time.monotonic()
        result = executor.execute(_spec(["sleep", "5"]), timeout=1)
        elapsed = time.monotonic() - t0

        assert result.status is ResultStatus.TIMEOUT
        assert result.error == "timed out after 1s"
        assert elapsed < 4

    def test_tool_timeout_used_when_call_sets_none(self, executor, registry):
        result = executor.execute(registry.resolve("nap"), {"seconds": 5})

        assert result.status is ResultStatus.TIMEOUT
        assert result.error == "timed out after 1s"

    def test_timeout_reaches_grandchildren(self, executor):
        # the background sleep keeps the pipes open unless the whole group dies
        spec = _spec(["sh", "-c", "sleep 30 & sleep 30"])
        t0 = time.monotonic()
        result = executor.execute(spec, timeout=0.5)

        assert result.status is ResultStatus.TIMEOUT
        assert time.monotonic() - t0 < 5

    @pytest.mark.skipif(shutil.which("ps") is None, reason="needs ps")
    def test_timeout_leaves_no_processes_behind(self, executor):
        marker = str(40000 + os.getpid() % 10000)
        spec = _spec(["sh", "-c", f"sleep {marker} & sleep {marker}"])

        result = executor.execute(spec, timeout=0.5)

        def survivors():
            ps = subprocess.run(["ps", "-eo", "args"], capture_output=True, text=True, check=True)
            return [line for line in ps.stdout.splitlines() if f"sleep {marker}" in line]

        assert result.status is ResultStatus.TIMEOUT
        assert wait_until(lambda: survivors() == [], timeout=2), survivors()

    def test_cancel(self, executor):
        cancel = threading.Event()
        threading.Timer(0.3, cancel.set).start()

        result = executor.execute(_spec(["sleep", "5"]), cancel_event=cancel)

        assert result.status is ResultStatus.CANCELLED
        assert result.duration_ms < 4000

    def test_output_is_truncated(self):
        executor = ToolExecutor(max_output_bytes=100)
        result = executor.execute(_spec(["sh", "-c", "printf 'x%.0s' $(seq 1 500)"]))

        assert result.status is ResultStatus.SUCCESS
        assert result.stdout_truncated is True
        assert result.stderr_truncated is False
        assert result.stdout.startswith("x" * 100)
        assert result.stdout.endswith("[output truncated at 100 bytes]")

    def test_env_and_working_dir(self, executor, tmp_path):
        spec = _spec(
            ["sh", "-c", 'printf "%s:" "$GREETING"; pwd -P'],
            env=(("GREETING", "hi"),),
            working_dir=str(tmp_path),
        )
        result = executor.execute(spec)

        assert result.stdout == f"hi:{os.path.realpath(tmp_path)}\n"

    def test_concurrent_calls_run_in_parallel(self, executor):
        spec = _spec(["sleep", "1"])
        t0 = time.monotonic()
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: executor.execute(spec), range(4)))

        assert all(r.status is ResultStatus.SUCCESS for r in results)
        assert time.monotonic() - t0 < 3
