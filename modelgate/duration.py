"""
Duration helpers for modelgate.

Parses compact duration strings such as ``17ms``, ``1s``, ``6m0s`` or
``1h30m`` used by rate-limit reset headers.
"""

import math
import re
import time
from typing import Optional


_DURATION_PART = re.compile(r"(\d+)(ms|s|m|h)")

_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
}


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def parse_ms(raw) -> Optional[int]:
    """
    Parse a compact duration string into milliseconds.

    The whole string must be made of ``<int><unit>`` groups, otherwise
    the value is rejected.

    Args:
        raw: Duration string, e.g. "6m0s".

    Returns:
        Total milliseconds, or None if the value is not a valid duration.
    """
    if not isinstance(raw, str) or not raw.strip():
        return None

    value = raw.strip()
    total = 0
    consumed = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != consumed:
            return None
        total += int(match.group(1)) * _UNIT_MS[match.group(2)]
        consumed = match.end()

    if consumed != len(value):
        return None
    return total


def is_finite_number(value) -> bool:
    """True for int/float values that are finite (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def max_defined(a, b):
    """Return the larger of two finite numbers, or whichever one is defined."""
    has_a = is_finite_number(a)
    has_b = is_finite_number(b)
    if not has_a and not has_b:
        return None
    if not has_a:
        return b
    if not has_b:
        return a
    return max(a, b)
