from __future__ import annotations
import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from .errors import ExecutionFailure, ToolMissing

log = logging.getLogger(__name__)

REQUIRED_TOOLS = ("tc", "ss", "ifstat", "ip")


@dataclass(frozen=True)
class CommandOutput:
    command: str
    returncode: int
    stdout: bytes
    stderr: bytes

    def text(self) -> str:
        """stdout as UTF-8. Undecodable output fails the whole command."""
        try:
            return self.stdout.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ExecutionFailure(self.command, f"output is not valid UTF-8: {e}") from e


Runner = Callable[[str], CommandOutput]


def run(command: str, timeout: Optional[float] = None) -> CommandOutput:
    """
    Run `command` (program plus whitespace-separated args) and capture its output.

    stderr is advisory: it gets logged, and the output is returned anyway.
    Raises ExecutionFailure if the program cannot be started or its output
    cannot be captured.
    """
    argv = command.split()
    if not argv:
        raise ValueError("tried to run an empty command")

    try:
        proc = subprocess.run(argv, capture_output=True, timeout=timeout)
    except FileNotFoundError as e:
        raise ExecutionFailure(command, f"program not found: {argv[0]}", tool_missing=True) from e
    except subprocess.TimeoutExpired as e:
        raise ExecutionFailure(command, f"timed out after {timeout}s") from e
    except OSError as e:
        raise ExecutionFailure(command, str(e)) from e

    if proc.stderr:
        log.warning("[Command] error while running %r\nerr: %s",
                    command, proc.stderr.decode("utf-8", errors="replace"))

    return CommandOutput(command, proc.returncode, proc.stdout, proc.stderr)


def check_required_tools(tools: Iterable[str] = REQUIRED_TOOLS) -> None:
    """Fail fast, naming the first required tool that is not on PATH."""
    for tool in tools:
        if shutil.which(tool) is None:
            raise ToolMissing(tool)
