from __future__ import annotations
import logging
from typing import Dict, Iterable, List, Optional, Tuple

import psutil

from .commands import Runner, run
from .models import Connection, Interface, InterfaceStatus, SocketTable

log = logging.getLogger(__name__)

SS_COMMAND = "ss -n -t -p state established"
IFSTAT_COMMAND = "ifstat"

# ifstat prints a 3 line banner, then a data line and a units line per interface
IFSTAT_BANNER_LINES = 3


# ──────────────────────────────────────────────
# Sockets – ss
# ──────────────────────────────────────────────

def _split_endpoint(token: str) -> Optional[Tuple[str, str]]:
    addr, sep, port = token.partition(":")
    if not sep:
        return None
    return addr, port


def _process_name(descriptor: str) -> Optional[str]:
    # users:(("firefox",pid=1234,fd=56)) -> firefox
    # needs both quotes; an empty name is skipped too, since no limit can target it
    parts = descriptor.split('"')
    if len(parts) < 3 or not parts[1]:
        return None
    return parts[1]


def _parse_socket_row(row: str) -> Optional[Tuple[str, Connection]]:
    cols = row.split()
    if len(cols) < 5:
        return None
    local = _split_endpoint(cols[2])
    remote = _split_endpoint(cols[3])
    name = _process_name(cols[4])
    if local is None or remote is None or name is None:
        return None
    return name, Connection(local[0], local[1], remote[0], remote[1])


def parse_socket_table(text: str) -> SocketTable:
    """
    Group the rows of `ss -n -t -p` output by owning process.

    The header line is dropped. A row that does not have the expected shape is
    skipped on its own; it never aborts the rest of the batch.
    """
    table: SocketTable = {}
    for row in text.splitlines()[1:]:
        parsed = _parse_socket_row(row)
        if parsed is None:
            log.debug("[Sockets] skipping row %r", row)
            continue
        name, conn = parsed
        table.setdefault(name, []).append(conn)
    return table


def socket_table(runner: Runner = run) -> SocketTable:
    out = runner(SS_COMMAND)
    return parse_socket_table(out.text())


# ──────────────────────────────────────────────
# Interfaces – ifstat
# ──────────────────────────────────────────────

def parse_interfaces(text: str) -> List[Interface]:
    names = []
    for line in text.splitlines()[IFSTAT_BANNER_LINES::2]:
        tokens = line.split()
        if tokens:
            names.append(tokens[0])
    return [Interface(name=n, status=InterfaceStatus.DOWN) for n in names]


def interfaces(runner: Runner = run) -> List[Interface]:
    out = runner(IFSTAT_COMMAND)
    return parse_interfaces(out.text())


def selectable_interfaces(ifaces: Iterable[Interface],
                          ignored_prefixes: Iterable[str] = ("ifb",)) -> List[Interface]:
    """Drop the intermediate devices the shaping backend creates for itself."""
    prefixes = tuple(ignored_prefixes)
    return [i for i in ifaces if not (prefixes and i.name.startswith(prefixes))]


def with_live_status(ifaces: Iterable[Interface]) -> List[Interface]:
    """
    Replace the always-DOWN ifstat status with the kernel link state.

    This changes what "status" means for callers, so it is only applied when
    AppConfig.live_interface_status is set.
    """
    try:
        stats: Dict[str, object] = psutil.net_if_stats()
    except OSError as e:
        log.warning("[Interfaces] could not read link state: %s", e)
        return list(ifaces)

    out: List[Interface] = []
    for i in ifaces:
        st = stats.get(i.name)
        status = InterfaceStatus.UP if st is not None and st.isup else InterfaceStatus.DOWN
        out.append(Interface(name=i.name, status=status))
    return out
