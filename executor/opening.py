"""
Opening flows: the first stage of every arbitrage.

An opening flow places one order on the maker venue, priced so that each fill can
be hedged on the taker at a profit, and mirrors every maker fill of that order
locally as a Position. Positions are later hedged by closing flows
(executor/closing.py).

BuyOpeningFlow bids on the maker and hedges by selling on the taker's bids.
SellOpeningFlow asks on the maker and hedges by buying on the taker's asks.
"""

from __future__ import annotations

import logging
from typing import Sequence

from executor.context import TradingContext
from executor.status import is_terminal_status, transition_to
from market.depth import best_price
from market.models import PriceLevel, Side, Transaction, UserTransaction
from state.models import FlowStatus, OpeningFlowRecord, Position, TradingStore

logger = logging.getLogger(__name__)


class CannotCreateFlow(Exception):
    """Raised when a workflow cannot be started. Always carries an operator-readable reason."""
    pass


def enough_funds(funds: float, amount: float) -> bool:
    return funds >= amount


class OpeningFlow:
    """
    Shared opening-flow behavior. Subclasses supply the side-specific pricing hooks:
    value_to_use, value_per_order, fx_rate, profit, safest_price,
    remote_value_to_use, maker_price and order_quantity.
    """

    side: Side

    def __init__(self, ctx: TradingContext) -> None:
        self.ctx = ctx

    # -- Queries -------------------------------------------------------------

    def active(self) -> list[OpeningFlowRecord]:
        return self.ctx.repo.active_opening_flows(self.side)

    def old_active(self, threshold: float) -> list[OpeningFlowRecord]:
        return self.ctx.repo.old_active_opening_flows(self.side, threshold)

    def recents(self, threshold: float) -> list[OpeningFlowRecord]:
        return self.ctx.repo.recent_opening_flows(self.side, threshold)

    # -- Open ----------------------------------------------------------------

    def open_market(
        self,
        taker_balance: float,
        maker_balance: float,
        taker_orders: Sequence[PriceLevel],
        taker_transactions: Sequence[Transaction],
        maker_fee: float,
        taker_fee: float,
    ) -> OpeningFlowRecord:
        """
        Place a maker order sized by the store and persist an executing flow for it.

        Raises CannotCreateFlow when either venue lacks funds, and wraps any other
        failure the same way. Nothing is persisted on failure.
        """
        try:
            store = self.ctx.store()
            value_per_order = self.value_per_order(store)
            if not enough_funds(maker_balance, value_per_order):
                raise CannotCreateFlow(
                    f"Needed {self.maker_specie_to_spend()} {value_per_order:.8f} on {self.ctx.maker.name} "
                    f"maker to place this {self.side.value} but you only have "
                    f"{self.maker_specie_to_spend()} {maker_balance:.8f}."
                )

            taker_amount, safest_price = self.calc_taker_amount(
                store, taker_balance, maker_fee, taker_fee, taker_orders, taker_transactions
            )
            price = self.maker_price(store, taker_amount)
            quantity = self.order_quantity(store, price)
            order = self.ctx.call(self.ctx.maker.place_order, self.side, price, quantity)

            flow = self.ctx.repo.add_opening_flow(
                OpeningFlowRecord(
                    id=None,
                    side=self.side,
                    price=price,
                    value_to_use=self.value_to_use(store),
                    suggested_closing_price=safest_price,
                    status=FlowStatus.EXECUTING,
                    order_id=order.id,
                    created_at=self.ctx.now(),
                )
            )
        except CannotCreateFlow:
            raise
        except Exception as e:
            raise CannotCreateFlow(f"{type(e).__name__}: {e}") from e

        logger.info(
            "Opening %s #%d: order %s, %.8f @ %.8f, closing suggested @ %.8f",
            self.side.value, flow.id, flow.order_id, quantity, price, safest_price,
        )
        return flow

    def calc_taker_amount(
        self,
        store: TradingStore,
        taker_balance: float,
        maker_fee: float,
        taker_fee: float,
        taker_orders: Sequence[PriceLevel],
        taker_transactions: Sequence[Transaction],
    ) -> tuple[float, float]:
        """
        Size of the hedge on the taker and the safest price to get it at, after both fees.
        Returns (taker_amount, safest_price).
        """
        value_per_order = self.value_per_order(store)
        value_needed = (value_per_order + value_per_order * maker_fee / 100) / (1 - taker_fee / 100)
        price = self.safest_price(store, taker_transactions, taker_orders, value_needed)
        amount = self.remote_value_to_use(store, value_needed, price)

        logger.info(
            "Opening %s: need %s %.8f on %s taker, has %.8f",
            self.side.value, self.taker_specie_to_spend(), amount, self.ctx.taker.name, taker_balance,
        )
        if not enough_funds(taker_balance, amount):
            raise CannotCreateFlow(
                f"Needed {self.taker_specie_to_spend()} {amount:.8f} but you only have "
                f"{self.taker_specie_to_spend()} {taker_balance:.8f} on your taker market."
            )
        return amount, price

    # -- Sync ----------------------------------------------------------------

    def sync_positions(self) -> list[Position]:
        """
        Mirror maker fills of our orders as Positions. Safe to run any number of times
        over the same trade history.
        """
        latest = self.ctx.repo.latest_position(self.side)
        threshold = latest.created_at if latest else None
        trades = self.ctx.call(self.ctx.maker.trades)

        created = []
        for trade in trades:
            if not self.sought_transaction(trade, threshold):
                continue

            flow = self.ctx.repo.find_opening_flow_by_order(self.side, trade.order_id)
            if flow is None:
                logger.debug("Trade %s belongs to no %s opening flow", trade.id, self.side.value)
                continue

            position = self.ctx.repo.add_position(
                Position(
                    id=None,
                    side=self.side,
                    trade_id=trade.id,
                    price=trade.price,
                    amount=trade.amount,
                    quantity=trade.quantity,
                    opening_flow_id=flow.id,
                    closing_flow_id=None,
                    created_at=self.ctx.now(),
                )
            )
            logger.info(
                "Open %s position #%d from trade %s: %.8f @ %.8f (flow #%d)",
                self.side.value, position.id, trade.id, trade.quantity, trade.price, flow.id,
            )
            created.append(position)
        return created

    def sought_transaction(self, trade: UserTransaction, threshold: float | None) -> bool:
        return (
            self.expected_kind_trade(trade)
            and not self.stale_trade(trade, threshold)
            and not self.ctx.repo.position_exists(trade.id)
            and self.expected_pair(trade)
        )

    def expected_kind_trade(self, trade: UserTransaction) -> bool:
        return trade.side == self.side

    def stale_trade(self, trade: UserTransaction, threshold: float | None) -> bool:
        """Older than the latest position minus the grace window. Such trades are dropped for good."""
        if threshold is None:
            return False
        stale = trade.timestamp < threshold - self.ctx.config.position_grace_sec
        if stale:
            logger.debug("Skipping trade %s, older than the position grace window", trade.id)
        return stale

    def expected_pair(self, trade: UserTransaction) -> bool:
        return trade.pair == self.ctx.maker.pair

    # -- Finalise ------------------------------------------------------------

    def finalise(self, flow: OpeningFlowRecord) -> OpeningFlowRecord:
        """
        Retire a flow. Finalised right away if its maker order is already closed,
        otherwise cancellation is requested and the flow waits in settling until a
        later cycle sees the order closed.
        """
        if is_terminal_status(flow.status):
            return flow

        order = self.ctx.call(self.ctx.maker.find_order, flow.order_id)
        if order.is_terminal:
            flow = self.ctx.repo.set_opening_status(flow, transition_to(flow.status, FlowStatus.FINALISED))
            logger.info("Opening %s #%d finalised (order %s)", self.side.value, flow.id, order.status.value)
            return flow

        self.ctx.call(self.ctx.maker.cancel_order, flow.order_id)
        if flow.status == FlowStatus.SETTLING:
            return flow
        flow = self.ctx.repo.set_opening_status(flow, transition_to(flow.status, FlowStatus.SETTLING))
        logger.info("Opening %s #%d settling, cancel requested for order %s", self.side.value, flow.id, flow.order_id)
        return flow

    # -- Hooks ---------------------------------------------------------------

    def value_to_use(self, store: TradingStore) -> float:
        raise NotImplementedError

    def value_per_order(self, store: TradingStore) -> float:
        raise NotImplementedError

    def fx_rate(self, store: TradingStore) -> float:
        raise NotImplementedError

    def profit(self, store: TradingStore) -> float:
        raise NotImplementedError

    def safest_price(
        self,
        store: TradingStore,
        transactions: Sequence[Transaction],
        orders: Sequence[PriceLevel],
        value_needed: float,
    ) -> float:
        raise NotImplementedError

    def remote_value_to_use(self, store: TradingStore, value_needed: float, safest_price: float) -> float:
        raise NotImplementedError

    def maker_price(self, store: TradingStore, taker_amount: float) -> float:
        raise NotImplementedError

    def order_quantity(self, store: TradingStore, price: float) -> float:
        raise NotImplementedError

    def maker_specie_to_spend(self) -> str:
        raise NotImplementedError

    def taker_specie_to_spend(self) -> str:
        raise NotImplementedError


class BuyOpeningFlow(OpeningFlow):
    """Bid on the maker with fiat; each fill is hedged by selling the crypto on the taker."""

    side = Side.BUY

    def value_to_use(self, store: TradingStore) -> float:
        if store.buying_amount_to_spend_per_order is not None:
            return store.buying_amount_to_spend_per_order
        return self.ctx.config.buying_amount_to_spend_per_order

    def value_per_order(self, store: TradingStore) -> float:
        return self.value_to_use(store) * self.fx_rate(store)

    def fx_rate(self, store: TradingStore) -> float:
        if store.buying_fx_rate is not None:
            return store.buying_fx_rate
        return self.ctx.config.buying_fx_rate

    def profit(self, store: TradingStore) -> float:
        if store.buying_profit is not None:
            return store.buying_profit
        return self.ctx.config.buying_profit

    def safest_price(self, store, transactions, orders, value_needed):
        # value_needed is maker fiat; bids are quoted in taker fiat.
        return best_price(
            self.ctx.config.time_to_live_sec,
            transactions,
            orders,
            Side.SELL,
            amount_target=value_needed,
            fx_rate=self.fx_rate(store),
        )

    def remote_value_to_use(self, store, value_needed, safest_price):
        # Crypto we must sell on the taker.
        return value_needed / (safest_price * self.fx_rate(store))

    def maker_price(self, store, taker_amount):
        return self.value_per_order(store) / taker_amount * (1 - self.profit(store) / 100)

    def order_quantity(self, store, price):
        return self.value_per_order(store) / price

    def maker_specie_to_spend(self) -> str:
        return self.ctx.maker.quote.upper()

    def taker_specie_to_spend(self) -> str:
        return self.ctx.taker.base.upper()


class SellOpeningFlow(OpeningFlow):
    """Ask on the maker with crypto; each fill is hedged by buying the crypto back on the taker."""

    side = Side.SELL

    def value_to_use(self, store: TradingStore) -> float:
        if store.selling_quantity_to_sell_per_order is not None:
            return store.selling_quantity_to_sell_per_order
        return self.ctx.config.selling_quantity_to_sell_per_order

    def value_per_order(self, store: TradingStore) -> float:
        return self.value_to_use(store)

    def fx_rate(self, store: TradingStore) -> float:
        if store.selling_fx_rate is not None:
            return store.selling_fx_rate
        return self.ctx.config.selling_fx_rate

    def profit(self, store: TradingStore) -> float:
        if store.selling_profit is not None:
            return store.selling_profit
        return self.ctx.config.selling_profit

    def safest_price(self, store, transactions, orders, value_needed):
        return best_price(
            self.ctx.config.time_to_live_sec,
            transactions,
            orders,
            Side.BUY,
            quantity_target=value_needed,
        )

    def remote_value_to_use(self, store, value_needed, safest_price):
        # Taker fiat we must spend.
        return value_needed * safest_price

    def maker_price(self, store, taker_amount):
        return taker_amount * self.fx_rate(store) / self.value_to_use(store) * (1 + self.profit(store) / 100)

    def order_quantity(self, store, price):
        return self.value_to_use(store)

    def maker_specie_to_spend(self) -> str:
        return self.ctx.maker.base.upper()

    def taker_specie_to_spend(self) -> str:
        return self.ctx.taker.quote.upper()
