"""
Currency to points conversion.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING


def to_points(cost: Decimal, exchange_rate: Decimal) -> int:
    """Convert a cost to ledger points, rounding half up.

    Args:
        cost: Cost in the billing currency
        exchange_rate: Points per currency unit

    Returns:
        Points, never negative
    """
    if exchange_rate <= 0:
        raise ValueError("exchange_rate must be > 0")
    points = (Decimal(cost) * Decimal(exchange_rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(int(points), 0)


def points_to_cost(points: int, exchange_rate: Decimal) -> Decimal:
    """Convert points back to the billing currency."""
    if exchange_rate <= 0:
        raise ValueError("exchange_rate must be > 0")
    return Decimal(points) / Decimal(exchange_rate)


def cost_to_points_ceiling(cost: Decimal, exchange_rate: Decimal) -> int:
    """Points needed to cover ``cost`` in full, rounding up.

    Used for top-ups priced in currency, where a partial point is never given
    away.
    """
    if exchange_rate <= 0:
        raise ValueError("exchange_rate must be > 0")
    points = (Decimal(cost) * Decimal(exchange_rate)).to_integral_value(rounding=ROUND_CEILING)
    return max(int(points), 0)
