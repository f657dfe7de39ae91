from __future__ import annotations
from typing import Optional


class ShapedeskError(Exception):
    """Base class for everything this package raises on purpose."""


class ToolMissing(ShapedeskError):
    def __init__(self, tool: str, hint: str = "Is iproute2 installed?"):
        self.tool = tool
        super().__init__(f"Missing program: {tool}\n{hint}")


class ExecutionFailure(ShapedeskError):
    """An external command could not be run, or its output could not be read."""

    def __init__(self, command: str, reason: str, tool_missing: bool = False):
        self.command = command
        self.reason = reason
        self.tool_missing = tool_missing
        super().__init__(f"{command!r}: {reason}")


class ProtocolError(ShapedeskError):
    """A control line does not match any known message shape."""


class ProtocolWriteFailure(ShapedeskError):
    """
    Writing a limit intent to the backend failed. The backend's shaping state
    can no longer be trusted to match what the user configured.
    """

    def __init__(self, intent: object, cause: Optional[BaseException] = None):
        self.intent = intent
        self.cause = cause
        super().__init__(f"could not send {intent!r} to shaping backend: {cause}")
