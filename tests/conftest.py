from __future__ import annotations
import threading
import time

import pytest
from PySide6 import QtCore

from shapedesk.commands import CommandOutput
from shapedesk.errors import ExecutionFailure


class FakeRunner:
    """Stands in for commands.run, answering from canned outputs."""

    def __init__(self, outputs=None, fail=None):
        self.outputs = outputs or {}
        self.fail = fail or set()
        self.calls = []

    def __call__(self, command):
        self.calls.append(command)
        if command in self.fail:
            raise ExecutionFailure(command, "program not found", tool_missing=True)
        out = self.outputs[command]
        if isinstance(out, str):
            out = out.encode("utf-8")
        return CommandOutput(command, 0, out, b"")


@pytest.fixture
def fake_runner():
    return FakeRunner


@pytest.fixture(scope="session")
def qapp():
    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])
    yield app


class SlowRunner(FakeRunner):
    """A FakeRunner that takes its time and records how many calls overlap."""

    def __init__(self, outputs=None, delay=0.2):
        super().__init__(outputs)
        self.delay = delay
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def __call__(self, command):
        with self._lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            time.sleep(self.delay)
            with self._lock:
                return super().__call__(command)
        finally:
            with self._lock:
                self.running -= 1


@pytest.fixture
def slow_runner():
    return SlowRunner
