from __future__ import annotations

import re

_PART_PATTERN = re.compile(r"(?P<num>\d+(?:\.\d+)?)(?P<unit>ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration_seconds(raw: str | int | float) -> float:
    """
    Parse a duration and return seconds.

    Accepted examples: 30, "30", "90s", "5m", "1h30m", "250ms", "1.5h".
    Bare numbers are seconds. Raises ValueError for empty, malformed or
    non-positive inputs.
    """
    if isinstance(raw, bool):
        raise ValueError(f"Invalid duration: {raw!r}")
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = (raw or "").strip().replace(" ", "")
        if not text:
            raise ValueError("Empty duration")
        try:
            value = float(text)
        except ValueError:
            value = _parse_units(text)
    if value <= 0:
        raise ValueError(f"Duration must be positive: {raw!r}")
    return value


def _parse_units(text: str) -> float:
    pos = 0
    total = 0.0
    while pos < len(text):
        match = _PART_PATTERN.match(text, pos)
        if not match:
            raise ValueError(f"Invalid duration: {text!r}")
        total += float(match.group("num")) * _UNIT_SECONDS[match.group("unit")]
        pos = match.end()
    return total
