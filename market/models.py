"""
Market data records shared by venue clients and the trading workflows. Pure data, no behavior.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Side(Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> Side:
        return Side.SELL if self is Side.BUY else Side.BUY


class OrderStatus(Enum):
    EXECUTING = "executing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PriceLevel:
    price: float
    quantity: float


@dataclass(frozen=True)
class OrderBook:
    timestamp: float
    bids: tuple[PriceLevel, ...]
    asks: tuple[PriceLevel, ...]

    @property
    def best_bid(self) -> PriceLevel | None:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> PriceLevel | None:
        return self.asks[0] if self.asks else None


@dataclass(frozen=True)
class Transaction:
    """A public trade printed on a venue."""
    id: str
    price: float
    quantity: float
    timestamp: float


@dataclass(frozen=True)
class UserTransaction:
    """A fill of one of our own orders."""
    id: str
    order_id: str
    amount: float  # fiat
    quantity: float  # crypto
    price: float
    fee: float
    side: Side
    timestamp: float
    pair: str = ""


@dataclass(frozen=True)
class Order:
    id: str
    side: Side
    price: float
    quantity: float
    timestamp: float
    status: OrderStatus = OrderStatus.EXECUTING

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


@dataclass(frozen=True)
class Balance:
    total: float
    reserved: float
    available: float


@dataclass(frozen=True)
class BalanceSummary:
    crypto: Balance
    fiat: Balance
    fee: float  # percent, 0.5 means 0.5%
