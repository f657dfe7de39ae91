from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping


@dataclass(frozen=True)
class SpeedSample:
    """Throughput in KB/sec as reported by the shaping backend."""
    up: float = 0.0
    down: float = 0.0


IDLE = SpeedSample()


def format_speed(s: SpeedSample) -> str:
    return f"Down: {s.down:.2f} KB/sec Up: {s.up:.2f} KB/sec"


def match_program_speeds(names: Iterable[str],
                         reported: Mapping[str, SpeedSample]) -> Dict[str, str]:
    """
    Speed label for every displayed program.

    The backend only reports programs that moved data in the last period, so a
    program missing from `reported` is shown as idle.
    """
    return {n: format_speed(reported.get(n, IDLE)) for n in names}


def global_label(s: SpeedSample) -> str:
    return format_speed(s)
