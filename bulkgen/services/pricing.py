"""Credit pricing for rendered video.

Credits are a deterministic function of rendered duration:
``ceil(minutes * credits_per_minute)``. With the default 7.5 credits per
minute one 8-second unit costs exactly one credit. Decimal arithmetic keeps
the rounding stable (8s * 7.5 / 60 is exactly 1, never 1.0000000001).
"""

import math
from collections.abc import Iterable
from decimal import Decimal

from bulkgen.config import DEFAULT_CREDITS_PER_MINUTE, DEFAULT_UNIT_SECONDS

SECONDS_PER_MINUTE = Decimal(60)


def credits_for_seconds(
    seconds: float | int | Decimal,
    credits_per_minute: Decimal = DEFAULT_CREDITS_PER_MINUTE,
) -> int:
    """Convert a rendered duration into whole credits, rounding up.

    Args:
        seconds: Total rendered duration in seconds (negative treated as 0)
        credits_per_minute: Price of one rendered minute

    Returns:
        Non-negative integer credit cost.

    Example:
        >>> credits_for_seconds(24)
        3
        >>> credits_for_seconds(9)
        2
    """
    seconds_dec = Decimal(str(seconds)) if not isinstance(seconds, Decimal) else seconds
    if seconds_dec <= 0:
        return 0
    return math.ceil(seconds_dec / SECONDS_PER_MINUTE * credits_per_minute)


def estimate_row_seconds(
    unit_durations: Iterable[int | None],
    default_unit_seconds: int = DEFAULT_UNIT_SECONDS,
) -> int:
    """Sum the estimated duration of a row's units (None → default)."""
    return sum(d if d is not None else default_unit_seconds for d in unit_durations)


def estimate_row_credits(
    unit_durations: Iterable[int | None],
    default_unit_seconds: int = DEFAULT_UNIT_SECONDS,
    credits_per_minute: Decimal = DEFAULT_CREDITS_PER_MINUTE,
) -> int:
    """Credits to reserve before a row starts rendering."""
    return credits_for_seconds(
        estimate_row_seconds(unit_durations, default_unit_seconds),
        credits_per_minute,
    )


def actual_row_credits(
    units: Iterable[tuple[int | None, float | None]],
    default_unit_seconds: int = DEFAULT_UNIT_SECONDS,
    credits_per_minute: Decimal = DEFAULT_CREDITS_PER_MINUTE,
) -> int:
    """Credits to charge once every unit of a row rendered.

    Args:
        units: (estimated_seconds, rendered_seconds) per unit; the rendered
            duration wins when the provider reported one.
    """
    total = Decimal(0)
    for estimated, rendered in units:
        if rendered is not None:
            total += Decimal(str(rendered))
        else:
            total += Decimal(estimated if estimated is not None else default_unit_seconds)
    return credits_for_seconds(total, credits_per_minute)
