from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union


class InterfaceStatus(str, Enum):
    UP = "up"
    DOWN = "down"


class Unit(str, Enum):
    BPS = "Bps"
    KBPS = "Kbps"
    MBPS = "Mbps"


@dataclass(frozen=True)
class Interface:
    name: str
    # ifstat cannot tell whether a link is up, so parsed interfaces are always DOWN
    status: InterfaceStatus = InterfaceStatus.DOWN

    @property
    def is_up(self) -> bool:
        return self.status == InterfaceStatus.UP


@dataclass(frozen=True)
class Connection:
    local_address: str
    local_port: str
    remote_address: str
    remote_port: str

    @property
    def local(self) -> str:
        return f"{self.local_address}:{self.local_port}"

    @property
    def remote(self) -> str:
        return f"{self.remote_address}:{self.remote_port}"


# process name -> connections in the order ss listed them
SocketTable = Dict[str, List[Connection]]


def local_ports(table: SocketTable, name: str) -> List[str]:
    """Local ports owned by one program, in discovery order, without repeats."""
    seen: List[str] = []
    for c in table.get(name, []):
        if c.local_port not in seen:
            seen.append(c.local_port)
    return seen


# ── limit intents ─────────────────────────────
# A rate is "<number><unit>" or None; None means no limit and is not the same as "0Kbps".

@dataclass(frozen=True)
class GlobalLimit:
    down: Optional[str] = None
    up: Optional[str] = None


@dataclass(frozen=True)
class ProgramLimit:
    name: str
    down: Optional[str] = None
    up: Optional[str] = None
    down_min: Optional[str] = None
    up_min: Optional[str] = None


@dataclass(frozen=True)
class InterfaceSelection:
    name: str


LimitIntent = Union[GlobalLimit, ProgramLimit, InterfaceSelection]
