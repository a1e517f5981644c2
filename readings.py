"""
Reading validation for the gamma monitor.

Inbound payloads come from a weakly typed feed, so every numeric field is
checked here and anything that is not a finite, non-negative number becomes 0.
Nothing in this module raises on bad input.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Tuple

# Wire field name -> Reading attribute
FIELDS: Tuple[Tuple[str, str], ...] = (
    ("CPS", "cps"),
    ("CPM", "cpm"),
    ("Dose_uSv", "dose_usv"),
    ("Activity_Ci", "activity_ci"),
    ("Activity_Bq", "activity_bq"),
)

# Lower-case keys emitted by the serial/socket bridge
BRIDGE_ALIASES: Dict[str, str] = {
    "cps": "CPS",
    "cpm": "CPM",
    "uSvph": "Dose_uSv",
}


@dataclass(frozen=True)
class Reading:
    """One sensor observation. All fields are finite and >= 0."""

    cps: float = 0.0
    cpm: float = 0.0
    dose_usv: float = 0.0
    activity_ci: float = 0.0
    activity_bq: float = 0.0

    def to_payload(self) -> Dict[str, float]:
        return {wire: getattr(self, attr) for wire, attr in FIELDS}


@dataclass(frozen=True)
class Sample:
    """One point of the dose-rate chart."""

    value: float
    timestamp: datetime
    label: str


# ----------------------------- Validation ----------------------------- #

def _coerce(value: Any) -> float:
    # bool is an int subclass but never a count
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    try:
        number = float(value)
    except (OverflowError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def validate(payload: Any) -> Reading:
    """Normalize an arbitrary inbound payload into a Reading."""
    if not isinstance(payload, Mapping):
        return Reading()
    return Reading(**{attr: _coerce(payload.get(wire)) for wire, attr in FIELDS})


def make_sample(reading: Reading, now: datetime) -> Sample:
    return Sample(value=reading.dose_usv, timestamp=now, label=now.strftime("%X"))


def _parse_number(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return value
    return value


def normalize_bridge_payload(payload: Any) -> Any:
    """Map a bridge frame ({"cps", "cpm", "uSvph"}) onto wire field names.

    The bridge formats decimals with toFixed, so numeric strings are parsed
    here; the validator itself stays strict about types. Keys already in
    wire form take precedence over their aliases.
    """
    if not isinstance(payload, Mapping):
        return payload
    out: Dict[str, Any] = {}
    for key, value in payload.items():
        wire = BRIDGE_ALIASES.get(key)
        if wire is None:
            out[key] = value
        elif wire not in payload:
            out[wire] = _parse_number(value)
    return out
