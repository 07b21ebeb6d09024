"""Shared fixtures."""

import time
from pathlib import Path

import pytest

TOOLS_YAML = """\
name: test-tools
description: Tools used by the test suite
tools:
  - name: echo_back
    description: Print the text back
    parameters:
      - name: text
        type: string
        required: true
        description: Text to print
    command: ["printf", "%s", "{{text}}"]

  - name: nap
    description: Sleep for a while
    parameters:
      - name: seconds
        type: number
        required: true
    command: ["sleep", "{{seconds}}"]
    timeout: 1

  - name: greet
    description: Greet someone, politely by default
    parameters:
      - name: who
        type: string
        default: world
      - name: shout
        type: boolean
    command: "printf 'hello %s %s' {{who}} {{shout}}"
"""


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it returns truthy or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tools_file(tmp_path) -> Path:
    path = tmp_path / "gantz.yaml"
    path.write_text(TOOLS_YAML)
    return path
