"""
Control messages exchanged with the shaping backend over its stdin and stdout.

One JSON object per line, tagged by message kind. Sent to the backend:

    {"Global": [down, up]}
    {"Program": [name, [down, up, down_min, up_min]]}
    {"Interface": name}

Read back from the backend stdout, throughput in KB/sec:

    {"ProgramSpeeds": {name: [up, down], ...}}
    {"GlobalSpeed": [up, down]}

Rates are "<number><unit>" strings with unit in Bps/Kbps/Mbps, or null for
"no limit". "0Kbps" is a real (zero) limit and is never written as null.
"""
from __future__ import annotations
import json
import math
import re
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from .errors import ProtocolError
from .models import GlobalLimit, InterfaceSelection, LimitIntent, ProgramLimit, Unit
from .speeds import SpeedSample

_RATE_RE = re.compile(r"^(\d+(?:\.\d+)?)(Bps|Kbps|Mbps)$")


def format_rate(value: Union[int, float, str], unit: Union[Unit, str]) -> str:
    try:
        unit = Unit(unit)
    except ValueError:
        raise ValueError(f"unknown rate unit: {unit!r}") from None
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"rate is not a number: {value!r}") from None
    if math.isnan(num) or math.isinf(num) or num < 0:
        raise ValueError(f"rate must be a finite, non-negative number: {value!r}")
    # repr keeps every significant digit; "f" spells out exponents like 4e-07
    text = str(int(num)) if num.is_integer() else format(Decimal(repr(num)), "f")
    return f"{text}{unit.value}"


def parse_rate(text: str) -> Tuple[float, Unit]:
    m = _RATE_RE.match(text)
    if m is None:
        raise ValueError(f"not a rate spec: {text!r}")
    return float(m.group(1)), Unit(m.group(2))


def _check_rate(rate: Optional[str]) -> Optional[str]:
    if rate is None:
        return None
    if not isinstance(rate, str):
        raise ValueError(f"rate must be a string or None: {rate!r}")
    parse_rate(rate)
    return rate


def _to_wire(intent: LimitIntent) -> Any:
    if isinstance(intent, GlobalLimit):
        return {"Global": [_check_rate(intent.down), _check_rate(intent.up)]}
    if isinstance(intent, ProgramLimit):
        rates = [intent.down, intent.up, intent.down_min, intent.up_min]
        return {"Program": [intent.name, [_check_rate(r) for r in rates]]}
    if isinstance(intent, InterfaceSelection):
        return {"Interface": intent.name}
    raise TypeError(f"not a limit intent: {intent!r}")


def encode(intent: LimitIntent) -> str:
    """Serialize one intent to a single line, without the trailing newline."""
    return json.dumps(_to_wire(intent), separators=(",", ":"), ensure_ascii=False)


def _wire_rate(v: Any) -> Optional[str]:
    if v is None:
        return None
    if not isinstance(v, str):
        raise ProtocolError(f"bad rate field: {v!r}")
    try:
        parse_rate(v)
    except ValueError as e:
        raise ProtocolError(str(e)) from None
    return v


def decode(line: str) -> LimitIntent:
    """Parse a line written by encode(). This is what the backend reads."""
    try:
        msg = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"not JSON: {line!r}") from e
    if not isinstance(msg, dict) or len(msg) != 1:
        raise ProtocolError(f"expected a single tagged message: {line!r}")

    (tag, body), = msg.items()
    if tag == "Global":
        if not isinstance(body, list) or len(body) != 2:
            raise ProtocolError(f"Global takes [down, up]: {line!r}")
        return GlobalLimit(_wire_rate(body[0]), _wire_rate(body[1]))
    if tag == "Program":
        if (not isinstance(body, list) or len(body) != 2 or not isinstance(body[0], str)
                or not isinstance(body[1], list) or len(body[1]) != 4):
            raise ProtocolError(f"Program takes [name, [down, up, down_min, up_min]]: {line!r}")
        down, up, down_min, up_min = (_wire_rate(r) for r in body[1])
        return ProgramLimit(body[0], down, up, down_min, up_min)
    if tag == "Interface":
        if not isinstance(body, str):
            raise ProtocolError(f"Interface takes a name: {line!r}")
        return InterfaceSelection(body)
    raise ProtocolError(f"unknown message tag {tag!r}")


# ──────────────────────────────────────────────
# Throughput reports – backend stdout
# ──────────────────────────────────────────────

SpeedReport = Union[Dict[str, SpeedSample], SpeedSample]


def _wire_speed(v: Any, line: str) -> SpeedSample:
    if (not isinstance(v, list) or len(v) != 2
            or not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in v)):
        raise ProtocolError(f"speed takes [up, down]: {line!r}")
    return SpeedSample(up=float(v[0]), down=float(v[1]))


def decode_report(line: str) -> SpeedReport:
    """
    Parse one backend throughput line: a dict of per-program samples for
    ProgramSpeeds, a single sample for GlobalSpeed.
    """
    try:
        msg = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"not JSON: {line!r}") from e
    if not isinstance(msg, dict) or len(msg) != 1:
        raise ProtocolError(f"expected a single tagged report: {line!r}")

    (tag, body), = msg.items()
    if tag == "ProgramSpeeds":
        if not isinstance(body, dict):
            raise ProtocolError(f"ProgramSpeeds takes {{name: [up, down]}}: {line!r}")
        return {str(name): _wire_speed(v, line) for name, v in body.items()}
    if tag == "GlobalSpeed":
        return _wire_speed(body, line)
    raise ProtocolError(f"unknown report tag {tag!r}")
