"""123.128 fixed-point codec for values that leave the pipeline.

A value ``v`` maps to the integer ``round(|v| * 2**128)`` (the low 128 bits
hold the fraction, the next 123 the integer part).  Negative values set
bit 251 as a sign flag.  Packed values travel as ``0x``-prefixed
lowercase hex, the portable form used in the composed public output.
"""

from __future__ import annotations

import math

from reserve_engine.errors import InvalidInput, ToleranceExceeded
from reserve_engine.framework.tolerance import percentage_difference

FRACTION_BITS = 128
INTEGER_BITS = 123
SIGN_BIT = FRACTION_BITS + INTEGER_BITS  # 251

_SCALE = float(2**FRACTION_BITS)
_FRACTION_MASK = (1 << FRACTION_BITS) - 1
_MAGNITUDE_LIMIT = 1 << SIGN_BIT


def encode(value: float) -> int:
    """Pack a float; the float-to-int step is exact (power-of-two scale)."""
    if not math.isfinite(value):
        raise InvalidInput(f"cannot encode non-finite value {value!r}")
    magnitude = int(round(abs(value) * _SCALE))
    if magnitude >= _MAGNITUDE_LIMIT:
        raise InvalidInput(f"value {value!r} exceeds {INTEGER_BITS} integer bits")
    if value < 0 and magnitude:
        return magnitude | _MAGNITUDE_LIMIT
    return magnitude


def decode(packed: int) -> float:
    """Inverse of :func:`encode`: ``high + low / 2**128``."""
    negative = bool(packed & _MAGNITUDE_LIMIT)
    magnitude = packed & (_MAGNITUDE_LIMIT - 1)
    high = magnitude >> FRACTION_BITS
    low = magnitude & _FRACTION_MASK
    value = float(high) + float(low) / _SCALE
    return -value if negative else value


def to_hex(value: float) -> str:
    return hex(encode(value))


def from_hex(text: str) -> float:
    return decode(int(text, 16))


def ensure_representable(value: float, tolerance: float, label: str = "value") -> str:
    """Encode ``value`` and check the round trip stays within ``tolerance`` percent."""
    packed = to_hex(value)
    restored = from_hex(packed)
    diff = percentage_difference(value, restored)
    if diff > tolerance:
        raise ToleranceExceeded(label, expected=value, actual=restored, tolerance=tolerance)
    return packed
