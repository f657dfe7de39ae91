from __future__ import annotations
import io
import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import IO, Dict, Iterable, List, Optional, Union

from . import protocol
from .collectors import selectable_interfaces
from .errors import ProtocolWriteFailure
from .models import (
    GlobalLimit, Interface, InterfaceSelection, LimitIntent, ProgramLimit, Unit,
)

log = logging.getLogger(__name__)


class ShapingCoordinator:
    """
    Sole writer of the shaping backend's stdin.

    Every intent becomes exactly one line, written and flushed under a lock so
    lines from different callers never interleave. A failed write is fatal for
    the session: it is logged, raised, and every later send fails as well,
    since the backend may now be shaping something other than what the UI shows.
    """

    def __init__(self, stream: IO):
        self._stream = stream
        self._lock = threading.Lock()
        self._text = isinstance(stream, io.TextIOBase)
        self._broken: Optional[BaseException] = None
        self.sent = 0

    @property
    def broken(self) -> bool:
        return self._broken is not None

    def send(self, intent: LimitIntent) -> None:
        line = protocol.encode(intent) + "\n"
        data = line if self._text else line.encode("utf-8")
        with self._lock:
            if self._broken is not None:
                raise ProtocolWriteFailure(intent, self._broken)
            try:
                self._stream.write(data)
                self._stream.flush()
            except (OSError, ValueError) as e:
                # ValueError: write to a closed file
                self._broken = e
                log.critical("[Coordinator] lost connection to shaping backend while sending %r: %s",
                             intent, e)
                raise ProtocolWriteFailure(intent, e) from e
            self.sent += 1
        log.debug("[Coordinator] sent %s", line.rstrip())

    # ── convenience ───────────────────────────
    def set_global(self, down: Optional[str], up: Optional[str]) -> None:
        self.send(GlobalLimit(down, up))

    def clear_global(self) -> None:
        self.send(GlobalLimit(None, None))

    def set_program(self, name: str, down: Optional[str] = None, up: Optional[str] = None,
                    down_min: Optional[str] = None, up_min: Optional[str] = None) -> None:
        self.send(ProgramLimit(name, down, up, down_min, up_min))

    def clear_program(self, name: str) -> None:
        self.send(ProgramLimit(name))

    def select_interface(self, name: str) -> None:
        self.send(InterfaceSelection(name))

    def close(self) -> None:
        with self._lock:
            try:
                self._stream.close()
            except OSError as e:
                log.warning("[Coordinator] error closing backend stream: %s", e)

    def __enter__(self) -> "ShapingCoordinator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ──────────────────────────────────────────────
# Limit rows – one per program plus the global one
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class RateField:
    value: float
    unit: Unit = Unit.KBPS

    def spec(self) -> str:
        return protocol.format_rate(self.value, self.unit)


class RowState(str, Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"


RATE_FIELDS = ("down", "up", "down_min", "up_min")


def default_fields(unit: Union[Unit, str] = Unit.KBPS) -> Dict[str, RateField]:
    # limits default to something that still lets traffic through
    unit = Unit(unit)
    return {
        "down": RateField(100, unit),
        "up": RateField(100, unit),
        "down_min": RateField(1, unit),
        "up_min": RateField(1, unit),
    }


class LimitRow:
    """
    Limit toggle for one program, or for all traffic when `name` is None.

    Turning the row on sends the rates as they are at that moment. Turning it
    off sends an explicit "no limit" message. Editing a rate or unit while the
    row is on switches it off, so a stale limit never stays applied.
    """

    def __init__(self, coordinator: ShapingCoordinator, name: Optional[str] = None,
                 advanced: bool = False, fields: Optional[Dict[str, RateField]] = None):
        self.coordinator = coordinator
        self.name = name
        self.advanced = advanced
        self.fields: Dict[str, RateField] = dict(fields or default_fields())
        self.state = RowState.DISABLED

    @property
    def is_global(self) -> bool:
        return self.name is None

    @property
    def enabled(self) -> bool:
        return self.state == RowState.ENABLED

    def intent(self, active: bool) -> LimitIntent:
        if self.is_global:
            if not active:
                return GlobalLimit(None, None)
            return GlobalLimit(self.fields["down"].spec(), self.fields["up"].spec())

        if not active:
            return ProgramLimit(self.name)
        down_min = self.fields["down_min"].spec() if self.advanced else None
        up_min = self.fields["up_min"].spec() if self.advanced else None
        return ProgramLimit(self.name, self.fields["down"].spec(), self.fields["up"].spec(),
                            down_min, up_min)

    def toggle(self, active: bool) -> None:
        target = RowState.ENABLED if active else RowState.DISABLED
        if target == self.state:
            return
        self.coordinator.send(self.intent(active))
        self.state = target

    def set_field(self, field: str, value: Optional[float] = None,
                  unit: Optional[Union[Unit, str]] = None) -> None:
        if field not in RATE_FIELDS:
            raise KeyError(field)
        cur = self.fields[field]
        new = cur
        if value is not None:
            protocol.format_rate(value, cur.unit)
            new = replace(new, value=value)
        if unit is not None:
            new = replace(new, unit=Unit(unit))
        if new == cur:
            return
        self.fields[field] = new
        if self.enabled:
            log.info("[Limits] %s edited while active, disabling", self.name or "global")
            self.toggle(False)


class InterfaceChooser:
    """Keeps the backend's shaped interface in step with the selection."""

    def __init__(self, coordinator: ShapingCoordinator, ignored_prefixes: Iterable[str] = ("ifb",)):
        self.coordinator = coordinator
        self.ignored_prefixes = tuple(ignored_prefixes)
        self.options: List[str] = []
        self.selected: Optional[str] = None

    def refresh(self, ifaces: Iterable[Interface]) -> List[str]:
        self.options = [i.name for i in selectable_interfaces(ifaces, self.ignored_prefixes)]
        return self.options

    def select(self, name: str) -> None:
        if self.options and name not in self.options:
            raise ValueError(f"unknown interface {name!r}, choose one of {self.options}")
        if name == self.selected:
            return
        self.coordinator.select_interface(name)
        self.selected = name
