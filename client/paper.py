"""
In-memory paper venue. Satisfies the VenueClient protocol without any network.

Used for paper trading from run.py and as the substitute venue in tests: the
book, public transactions and balances are set directly, and fills are
produced either explicitly via fill() or, with auto_fill, by crossing the book
at placement time.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import replace
from typing import Callable, Iterable

from client.errors import OrderArgumentError, OrderNotFound
from market.models import (
    Balance,
    BalanceSummary,
    Order,
    OrderBook,
    OrderStatus,
    PriceLevel,
    Side,
    Transaction,
    UserTransaction,
)

logger = logging.getLogger(__name__)


class PaperVenue:
    """Single-pair simulated venue. Not thread-safe; the robot is single-threaded."""

    def __init__(
        self,
        name: str = "paper",
        pair: str = "btc_usd",
        fee: float = 0.0,
        min_order_value: float = 0.0,
        crypto: float = 0.0,
        fiat: float = 0.0,
        auto_fill: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._name = name
        self._pair = pair
        self._fee = fee
        self._min_order_value = min_order_value
        self._auto_fill = auto_fill
        self._clock = clock
        self._crypto = crypto
        self._fiat = fiat
        self._book = OrderBook(timestamp=clock(), bids=(), asks=())
        self._transactions: list[Transaction] = []
        self._trades: list[UserTransaction] = []
        self._orders: dict[str, Order] = {}
        self._remaining: dict[str, float] = {}
        self._ids = itertools.count(1)

    # -- VenueClient ---------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def pair(self) -> str:
        return self._pair

    @property
    def base(self) -> str:
        return self._pair.split("_")[0]

    @property
    def quote(self) -> str:
        return self._pair.split("_")[-1]

    def balance(self) -> BalanceSummary:
        reserved_crypto = 0.0
        reserved_fiat = 0.0
        for order in self.orders():
            remaining = self._remaining[order.id]
            if order.side == Side.BUY:
                reserved_fiat += remaining * order.price
            else:
                reserved_crypto += remaining

        return BalanceSummary(
            crypto=Balance(self._crypto, reserved_crypto, self._crypto - reserved_crypto),
            fiat=Balance(self._fiat, reserved_fiat, self._fiat - reserved_fiat),
            fee=self._fee,
        )

    def order_book(self) -> OrderBook:
        return self._book

    def transactions(self) -> list[Transaction]:
        return sorted(self._transactions, key=lambda t: t.timestamp, reverse=True)

    def trades(self) -> list[UserTransaction]:
        return sorted(self._trades, key=lambda t: t.timestamp, reverse=True)

    def orders(self) -> list[Order]:
        return [o for o in self._orders.values() if o.status == OrderStatus.EXECUTING]

    def find_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found on {self._name}")
        return order

    def place_order(self, side: Side, price: float, quantity: float) -> Order:
        if price <= 0 or quantity <= 0:
            raise OrderArgumentError(
                f"Invalid order on {self._name}: {side.value} {quantity} @ {price}"
            )

        order = Order(
            id=str(next(self._ids)),
            side=side,
            price=price,
            quantity=quantity,
            timestamp=self._clock(),
        )
        self._orders[order.id] = order
        self._remaining[order.id] = quantity
        logger.debug(
            "[PAPER] %s order %s placed: %s %.8f @ %.8f",
            self._name, order.id, side.value, quantity, price,
        )

        if self._auto_fill:
            self._cross_book(order)
        return self._orders[order.id]

    def cancel_order(self, order_id: str) -> None:
        order = self.find_order(order_id)
        if order.is_terminal:
            return
        self._orders[order_id] = replace(order, status=OrderStatus.CANCELLED)
        logger.debug("[PAPER] %s order %s cancelled", self._name, order_id)

    def enough_order_size(self, quantity: float, price: float, side: Side) -> bool:
        return quantity > 0 and quantity * price >= self._min_order_value

    def amount_and_quantity(self, order_id: str) -> tuple[float, float]:
        fills = [t for t in self._trades if t.order_id == order_id]
        amount = abs(sum(t.amount for t in fills))
        quantity = abs(sum(t.quantity for t in fills))
        return amount, quantity

    # -- Simulation controls -------------------------------------------------

    def set_balance(self, crypto: float | None = None, fiat: float | None = None) -> None:
        if crypto is not None:
            self._crypto = crypto
        if fiat is not None:
            self._fiat = fiat

    def set_order_book(
        self,
        bids: Iterable[tuple[float, float]] = (),
        asks: Iterable[tuple[float, float]] = (),
    ) -> None:
        self._book = OrderBook(
            timestamp=self._clock(),
            bids=tuple(PriceLevel(p, q) for p, q in bids),
            asks=tuple(PriceLevel(p, q) for p, q in asks),
        )

    def add_transaction(self, price: float, quantity: float, timestamp: float | None = None) -> Transaction:
        transaction = Transaction(
            id=str(next(self._ids)),
            price=price,
            quantity=quantity,
            timestamp=self._clock() if timestamp is None else timestamp,
        )
        self._transactions.append(transaction)
        return transaction

    def fill(
        self,
        order_id: str,
        quantity: float | None = None,
        price: float | None = None,
        timestamp: float | None = None,
    ) -> UserTransaction:
        """
        Execute (part of) an order. Defaults to the full remaining quantity at the order price.
        Completes the order when nothing remains. Fills of cancelled orders are allowed:
        a real venue can match an order while our cancel request is in flight.
        """
        order = self.find_order(order_id)
        remaining = self._remaining[order_id]
        quantity = remaining if quantity is None else min(quantity, remaining)
        price = order.price if price is None else price
        if quantity <= 0:
            raise OrderArgumentError(f"Order {order_id} has nothing left to fill")

        amount = quantity * price
        fee = amount * self._fee / 100
        if order.side == Side.BUY:
            self._crypto += quantity
            self._fiat -= amount + fee
        else:
            self._crypto -= quantity
            self._fiat += amount - fee

        trade = UserTransaction(
            id=str(next(self._ids)),
            order_id=order_id,
            amount=amount,
            quantity=quantity,
            price=price,
            fee=fee,
            side=order.side,
            timestamp=self._clock() if timestamp is None else timestamp,
            pair=self._pair,
        )
        self._trades.append(trade)

        self._remaining[order_id] = remaining - quantity
        if self._remaining[order_id] <= 1e-12 and order.status == OrderStatus.EXECUTING:
            self._orders[order_id] = replace(order, status=OrderStatus.COMPLETED)
        logger.debug(
            "[PAPER] %s order %s filled %.8f @ %.8f",
            self._name, order_id, quantity, price,
        )
        return trade

    def _cross_book(self, order: Order) -> None:
        """Fill a marketable order against the resting book at its limit price."""
        if order.side == Side.BUY:
            crossing = [level for level in self._book.asks if level.price <= order.price]
        else:
            crossing = [level for level in self._book.bids if level.price >= order.price]

        available = sum(level.quantity for level in crossing)
        if available <= 0:
            return
        self.fill(order.id, quantity=min(available, order.quantity), price=order.price)
