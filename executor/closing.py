"""
Closing flows: hedge maker fills on the taker.

A closing flow claims every unclaimed Position of one side, places a single taker
order for their total quantity at their volume-weighted suggested price, and keeps
re-placing whatever is left unfilled, walking the price further into the book on
each attempt, until the remainder is too small to trade. Then it books profit.

BuyClosingFlow closes open buys by selling on the taker.
SellClosingFlow closes open sells by buying on the taker.
"""

from __future__ import annotations

import logging

from executor.context import TradingContext
from executor.opening import CannotCreateFlow
from market.models import Side
from state.models import ClosePosition, ClosingFlowRecord, Position, TradingStore

logger = logging.getLogger(__name__)


class ClosingFlow:
    """
    Shared closing-flow behavior. Subclasses set side (the side of the positions
    being closed) and supply fx_rate, next_price, estimate_fiat_profit and
    estimate_crypto_profit.
    """

    side: Side

    def __init__(self, ctx: TradingContext) -> None:
        self.ctx = ctx

    @property
    def trade_type(self) -> Side:
        """Side of the taker orders: the opposite of what the maker filled."""
        return self.side.opposite

    def active(self) -> list[ClosingFlowRecord]:
        return self.ctx.repo.active_closing_flows(self.side)

    # -- Close ---------------------------------------------------------------

    def close_market(self) -> ClosingFlowRecord | None:
        """
        Start a closing flow for all unclaimed positions of this side.
        Returns None if there is nothing to close or the total is below the taker minimum.
        """
        positions = self.ctx.repo.unclaimed_positions(self.side)
        if not positions:
            return None

        try:
            quantity = sum(p.quantity for p in positions)
            price = self.suggested_amount(positions) / quantity
            if not self.ctx.taker.enough_order_size(quantity, price, self.trade_type):
                logger.info(
                    "Closing %s: %.8f @ %.8f is below the taker minimum, waiting for more positions",
                    self.side.value, quantity, price,
                )
                return None

            store = self.ctx.store()
            order = self.ctx.call(self.ctx.taker.place_order, self.trade_type, price, quantity)
            amount = sum(p.amount for p in positions) / self.fx_rate(store)

            flow, close_position = self.ctx.repo.create_closing_flow(
                ClosingFlowRecord(
                    id=None,
                    side=self.side,
                    desired_price=price,
                    quantity=quantity,
                    amount=amount,
                    created_at=self.ctx.now(),
                ),
                positions,
                order.id,
            )
        except Exception as e:
            raise CannotCreateFlow(f"{type(e).__name__}: {e}") from e

        logger.info(
            "Closing %s #%d: claimed %d position(s), order %s %s %.8f @ %.8f",
            self.side.value, flow.id, len(positions), close_position.order_id,
            self.trade_type.value, quantity, price,
        )
        return flow

    def suggested_amount(self, positions: list[Position]) -> float:
        total = 0.0
        for position in positions:
            opening = self.ctx.repo.get_opening_flow(position.opening_flow_id)
            total += position.quantity * opening.suggested_closing_price
        return total

    # -- Sync ----------------------------------------------------------------

    def sync_positions(self) -> None:
        """
        Advance every active flow by one step: cancel an expired taker order, or
        record a finished one and either re-place the remainder or finalise.
        """
        flows = self.active()
        if not flows:
            return

        open_ids = {o.id for o in self.ctx.call(self.ctx.taker.orders)}
        for flow in flows:
            latest = self.ctx.repo.latest_close_position(flow.id)
            if latest is None:
                logger.warning("Closing %s #%d has no taker order, finalising", self.side.value, flow.id)
                self.finalise(flow)
                continue

            executed = latest.order_id not in open_ids
            if not executed:
                if self.cancellable(latest):
                    logger.info(
                        "Closing %s #%d: cancelling expired taker order %s",
                        self.side.value, flow.id, latest.order_id,
                    )
                    self.ctx.call(self.ctx.taker.cancel_order, latest.order_id)
                continue

            self.sync_close_position(latest)

            quantity, price = self.next_quantity_and_price(flow)
            if not self.ctx.taker.enough_order_size(quantity, price, self.trade_type):
                self.finalise(flow)
                continue

            order = self.ctx.call(self.ctx.taker.place_order, self.trade_type, price, quantity)
            self.ctx.repo.add_close_position(
                ClosePosition(
                    id=None,
                    closing_flow_id=flow.id,
                    order_id=order.id,
                    created_at=self.ctx.now(),
                )
            )
            logger.info(
                "Closing %s #%d: re-placed %.8f @ %.8f as order %s",
                self.side.value, flow.id, quantity, price, order.id,
            )

    def cancellable(self, close_position: ClosePosition) -> bool:
        """Still open and strictly past the close time-to-live."""
        age = self.ctx.now() - close_position.created_at
        return age > self.ctx.config.close_time_to_live_sec

    def sync_close_position(self, close_position: ClosePosition) -> ClosePosition:
        amount, quantity = self.ctx.call(self.ctx.taker.amount_and_quantity, close_position.order_id)
        close_position = self.ctx.repo.update_close_position_fill(close_position, amount, quantity)
        logger.info(
            "Close position #%d (order %s) filled %.8f for %.8f",
            close_position.id, close_position.order_id, quantity, amount,
        )
        return close_position

    def next_quantity_and_price(self, flow: ClosingFlowRecord) -> tuple[float, float]:
        closes = self.ctx.repo.close_positions(flow.id)
        filled = sum(c.quantity or 0.0 for c in closes)
        return flow.quantity - filled, self.next_price(flow, self.price_variation(len(closes)))

    def price_variation(self, attempts: int) -> float:
        """Progressive offset used to make each retry more likely to hit the book."""
        return attempts ** 2 * self.ctx.config.close_price_step

    # -- Finalise ------------------------------------------------------------

    def finalise(self, flow: ClosingFlowRecord) -> ClosingFlowRecord:
        if flow.done:
            return flow

        store = self.ctx.store()
        fx_rate = self.fx_rate(store)
        positions = self.ctx.repo.positions_for_closing(flow.id)
        closes = self.ctx.repo.close_positions(flow.id)
        flow = self.ctx.repo.finish_closing_flow(
            flow,
            crypto_profit=self.estimate_crypto_profit(positions, closes),
            fiat_profit=self.estimate_fiat_profit(positions, closes, fx_rate),
            fx_rate=fx_rate,
        )
        logger.info(
            "Closing %s #%d done: crypto profit %.8f, fiat profit %.8f (fx %.4f)",
            self.side.value, flow.id, flow.crypto_profit, flow.fiat_profit, fx_rate,
        )
        return flow

    @staticmethod
    def positions_balance_amount(closes: list[ClosePosition], fx_rate: float) -> float:
        return sum(c.amount or 0.0 for c in closes) * fx_rate

    # -- Hooks ---------------------------------------------------------------

    def fx_rate(self, store: TradingStore) -> float:
        raise NotImplementedError

    def next_price(self, flow: ClosingFlowRecord, variation: float) -> float:
        raise NotImplementedError

    def estimate_fiat_profit(self, positions: list[Position], closes: list[ClosePosition], fx_rate: float) -> float:
        raise NotImplementedError

    def estimate_crypto_profit(self, positions: list[Position], closes: list[ClosePosition]) -> float:
        raise NotImplementedError


class BuyClosingFlow(ClosingFlow):
    side = Side.BUY

    def fx_rate(self, store: TradingStore) -> float:
        if store.buying_fx_rate is not None:
            return store.buying_fx_rate
        return self.ctx.config.buying_fx_rate

    def next_price(self, flow, variation):
        # Selling: walk down the bids.
        return flow.desired_price - variation

    def estimate_fiat_profit(self, positions, closes, fx_rate):
        return self.positions_balance_amount(closes, fx_rate) - sum(p.amount for p in positions)

    def estimate_crypto_profit(self, positions, closes):
        return sum(p.quantity for p in positions) - sum(c.quantity or 0.0 for c in closes)


class SellClosingFlow(ClosingFlow):
    side = Side.SELL

    def fx_rate(self, store: TradingStore) -> float:
        if store.selling_fx_rate is not None:
            return store.selling_fx_rate
        return self.ctx.config.selling_fx_rate

    def next_price(self, flow, variation):
        # Buying: walk up the asks.
        return flow.desired_price + variation

    def estimate_fiat_profit(self, positions, closes, fx_rate):
        return sum(p.amount for p in positions) - self.positions_balance_amount(closes, fx_rate)

    def estimate_crypto_profit(self, positions, closes):
        return sum(c.quantity or 0.0 for c in closes) - sum(p.quantity for p in positions)
