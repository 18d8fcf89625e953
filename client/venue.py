"""
Venue client protocol. The trading workflows only talk to venues through this interface.

Any exchange client that satisfies it can run as maker or taker; the in-memory
PaperVenue in client/paper.py is the reference implementation.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from market.models import (
    BalanceSummary,
    Order,
    OrderBook,
    Side,
    Transaction,
    UserTransaction,
)


@runtime_checkable
class VenueClient(Protocol):
    """
    Minimal interface for one trading venue on one currency pair.

    Implementations raise client.errors.VenueError subclasses on failure.
    """

    @property
    def name(self) -> str:
        """Short identifier used in logs and notifications."""
        ...

    @property
    def pair(self) -> str:
        """Pair code in base_quote form, e.g. 'btc_usd'."""
        ...

    @property
    def base(self) -> str:
        ...

    @property
    def quote(self) -> str:
        ...

    def balance(self) -> BalanceSummary:
        ...

    def order_book(self) -> OrderBook:
        ...

    def transactions(self) -> list[Transaction]:
        """Recent public trades, newest first."""
        ...

    def trades(self) -> list[UserTransaction]:
        """Recent fills of our own orders."""
        ...

    def orders(self) -> list[Order]:
        """Orders still open on the venue."""
        ...

    def find_order(self, order_id: str) -> Order:
        """Current state of any order we placed. Raises OrderNotFound."""
        ...

    def place_order(self, side: Side, price: float, quantity: float) -> Order:
        ...

    def cancel_order(self, order_id: str) -> None:
        """Request cancellation. Must be safe to call on an already closed order."""
        ...

    def enough_order_size(self, quantity: float, price: float, side: Side) -> bool:
        """Whether an order of this size clears the venue minimum."""
        ...

    def amount_and_quantity(self, order_id: str) -> tuple[float, float]:
        """Filled (fiat amount, crypto quantity) for an order, from our trades."""
        ...
