"""
Order book walking for hedge pricing. Finds the worst price we must accept on the
taker to fill a target size, after discounting the volume that recently traded
(it may already have eaten the top of the book we are looking at).
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from market.models import PriceLevel, Side, Transaction

logger = logging.getLogger(__name__)


class InsufficientDepth(ValueError):
    """Raised when the visible book cannot fill the requested target."""
    pass


def quantity_to_skip(staleness_window: float, transactions: Sequence[Transaction]) -> float:
    """
    Volume traded within staleness_window seconds of the most recent transaction.
    Returns 0.0 for an empty history.
    """
    if not transactions:
        logger.debug("No recent transactions, order book freshness unverified")
        return 0.0

    latest = max(t.timestamp for t in transactions)
    threshold = latest - staleness_window
    return sum(t.quantity for t in transactions if t.timestamp > threshold)


def sorted_levels(levels: Iterable[PriceLevel], side: Side) -> list[PriceLevel]:
    """
    Levels in execution priority for the given action.
    For BUY: asks ascending. For SELL: bids descending.
    """
    return sorted(levels, key=lambda level: level.price, reverse=side is Side.SELL)


def best_price(
    staleness_window: float,
    transactions: Sequence[Transaction],
    levels: Iterable[PriceLevel],
    side: Side,
    quantity_target: float | None = None,
    amount_target: float | None = None,
    fx_rate: float = 1.0,
) -> float:
    """
    Price of the last level needed to reach the target, walking the book from its best level.

    quantity_target: crypto quantity to fill.
    amount_target: notional to fill, in the currency reached by multiplying
        book notional (price x quantity) by fx_rate.

    Raises InsufficientDepth if the book runs out before the target is met.
    """
    if (quantity_target is None) == (amount_target is None):
        raise ValueError("Exactly one of quantity_target or amount_target is required")

    target = quantity_target if quantity_target is not None else amount_target
    to_skip = quantity_to_skip(staleness_window, transactions)
    seen = 0.0

    for level in sorted_levels(levels, side):
        quantity = level.quantity
        if quantity <= 0:
            continue

        if to_skip > 0:
            if to_skip >= quantity:
                to_skip -= quantity
                continue
            quantity -= to_skip
            logger.debug("Skipped %.8f at %.8f as recently traded", to_skip, level.price)
            to_skip = 0.0

        if quantity_target is not None:
            volume = quantity
        else:
            volume = level.price * quantity * fx_rate

        if volume >= target - seen:
            logger.debug(
                "Best price to %s %.8f is %.8f",
                side.value, target, level.price,
            )
            return level.price
        seen += volume

    raise InsufficientDepth(
        f"Insufficient depth to {side.value}: need {target:.8f}, have {seen:.8f}"
    )
