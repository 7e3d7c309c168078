"""Impermanent loss math for constant-product pools.

IL is reported as a non-negative magnitude: the fraction of value lost by
holding pool shares instead of the two assets unpaired.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext
from typing import Union

from .errors import InvalidRatio

Number = Union[Decimal, int, float, str]

BPS_PER_UNIT = Decimal("10000")

# Base working precision. calculate_il adds one digit per decade of the
# ratio so that 2*sqrt(r)/(1+r) - 1 stays distinguishable from -1.
_PRECISION = 50


def _to_decimal(value: Number, name: str) -> Decimal:
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRatio(f"{name} is not a number: {value!r}") from exc
    if not result.is_finite():
        raise InvalidRatio(f"{name} must be finite, got {value!r}")
    return result


def reserve_ratio(reserve_a: Number, reserve_b: Number) -> Decimal:
    """Return reserve_a / reserve_b, the pool's relative price proxy."""
    a = _to_decimal(reserve_a, "reserve_a")
    b = _to_decimal(reserve_b, "reserve_b")
    if a < 0 or b < 0:
        raise InvalidRatio(f"Reserves must be non-negative (a={a}, b={b})")
    if b == 0:
        raise InvalidRatio("Reserve ratio undefined: reserve_b is zero")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return a / b


def calculate_il(entry_ratio: Number, current_ratio: Number) -> Decimal:
    """Compute IL magnitude from the entry and current reserve ratios.

    IL = |2 * sqrt(r) / (1 + r) - 1| with r = current_ratio / entry_ratio.

    Raises:
        InvalidRatio: if either ratio is <= 0, or the result falls outside
            [0, 1), which only happens when upstream data is corrupt.
    """
    r0 = _to_decimal(entry_ratio, "entry_ratio")
    r1 = _to_decimal(current_ratio, "current_ratio")
    if r0 <= 0 or r1 <= 0:
        raise InvalidRatio(f"Ratios must be positive (entry={r0}, current={r1})")

    with localcontext() as ctx:
        ctx.prec = _PRECISION + abs(r1.adjusted() - r0.adjusted())
        ratio = r1 / r0
        il = 2 * ratio.sqrt() / (1 + ratio) - 1
        magnitude = abs(il)

    if not Decimal(0) <= magnitude < Decimal(1):
        raise InvalidRatio(
            f"IL magnitude {magnitude} out of range for entry={r0}, current={r1}"
        )
    return magnitude


def il_to_bps(il: Decimal) -> int:
    """Convert an IL fraction to whole basis points (half-up)."""
    return int((il * BPS_PER_UNIT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
