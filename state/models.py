"""
Persisted trading records: workflows, positions and the operator store.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum

from market.models import Side


class FlowStatus(str, Enum):
    """
    Opening workflow lifecycle.

    - EXECUTING: maker order placed, its id stored as order_id
    - SETTLING: cancellation of the maker order requested, waiting for the venue
    - FINALISED: maker order cancelled or completed, nothing left to track
    """
    EXECUTING = "executing"
    SETTLING = "settling"
    FINALISED = "finalised"


@dataclass(frozen=True)
class OpeningFlowRecord:
    id: int | None
    side: Side
    price: float
    value_to_use: float
    suggested_closing_price: float
    status: FlowStatus
    order_id: str
    created_at: float

    @property
    def active(self) -> bool:
        return self.status != FlowStatus.FINALISED


@dataclass(frozen=True)
class Position:
    """A maker fill waiting for (or undergoing) its hedge."""
    id: int | None
    side: Side
    trade_id: str
    price: float
    amount: float
    quantity: float
    opening_flow_id: int
    closing_flow_id: int | None
    created_at: float


@dataclass(frozen=True)
class ClosingFlowRecord:
    id: int | None
    side: Side
    desired_price: float
    quantity: float
    amount: float
    created_at: float
    crypto_profit: float | None = None
    fiat_profit: float | None = None
    fx_rate: float | None = None
    done: bool = False


@dataclass(frozen=True)
class ClosePosition:
    """One taker order placed by a closing workflow. amount/quantity stay None until synced."""
    id: int | None
    closing_flow_id: int
    order_id: str
    created_at: float
    amount: float | None = None
    quantity: float | None = None


@dataclass
class TradingStore:
    """
    Operator-tunable parameters and last known balances. Tunables left as None
    fall back to the configured defaults.
    """
    buying_amount_to_spend_per_order: float | None = None
    selling_quantity_to_sell_per_order: float | None = None
    buying_profit: float | None = None
    selling_profit: float | None = None
    buying_fx_rate: float | None = None
    selling_fx_rate: float | None = None
    crypto_warning: float | None = None
    fiat_warning: float | None = None
    crypto_stop: float | None = None
    fiat_stop: float | None = None
    hold: bool = False
    maker_crypto: float = 0.0
    maker_fiat: float = 0.0
    taker_crypto: float = 0.0
    taker_fiat: float = 0.0
    last_warning: float | None = None

    @classmethod
    def field_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    def sync(self, maker_crypto: float, maker_fiat: float, taker_crypto: float, taker_fiat: float) -> None:
        self.maker_crypto = maker_crypto
        self.maker_fiat = maker_fiat
        self.taker_crypto = taker_crypto
        self.taker_fiat = taker_fiat
