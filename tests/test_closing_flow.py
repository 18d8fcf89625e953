"""
Unit tests for executor/closing.py -- hedging maker fills on the taker.
"""

from dataclasses import replace
from unittest.mock import patch

import pytest

from client.errors import VenueTimeout
from client.paper import PaperVenue
from executor.closing import BuyClosingFlow, SellClosingFlow
from executor.opening import CannotCreateFlow
from market.models import OrderStatus, Side
from state.models import FlowStatus, OpeningFlowRecord, Position


def _positions(repo, side, quantities, price=300.0, suggested=300.0, created_at=0.0):
    """One opening flow with a position per quantity."""
    flow = repo.add_opening_flow(
        OpeningFlowRecord(
            id=None,
            side=side,
            price=price,
            value_to_use=0.0,
            suggested_closing_price=suggested,
            status=FlowStatus.FINALISED,
            order_id=f"maker-{side.value}",
            created_at=created_at,
        )
    )
    return [
        repo.add_position(
            Position(
                id=None,
                side=side,
                trade_id=f"{side.value}-{flow.id}-{i}",
                price=price,
                amount=price * quantity,
                quantity=quantity,
                opening_flow_id=flow.id,
                closing_flow_id=None,
                created_at=created_at,
            )
        )
        for i, quantity in enumerate(quantities)
    ]


@pytest.fixture
def strict_taker(clock):
    return PaperVenue(name="taker", crypto=10.0, fiat=10_000.0, min_order_value=200.0, clock=clock)


@pytest.fixture
def strict_ctx(ctx, strict_taker):
    return replace(ctx, taker=strict_taker)


class TestCloseMarket:
    """Claiming positions and placing the hedge order."""

    def test_claims_all_positions_with_one_order(self, ctx, taker):
        positions = _positions(ctx.repo, Side.SELL, [2.0, 0.01], price=310.0, suggested=305.0)

        flow = SellClosingFlow(ctx).close_market()

        assert flow.quantity == pytest.approx(2.01)
        assert flow.desired_price == pytest.approx(305.0)
        assert flow.amount == pytest.approx(310.0 * 2.01)
        assert ctx.repo.unclaimed_positions() == []
        assert [p.id for p in ctx.repo.positions_for_closing(flow.id)] == [p.id for p in positions]

        orders = taker.orders()
        assert len(orders) == 1
        assert orders[0].side == Side.BUY
        assert orders[0].quantity == pytest.approx(2.01)
        assert ctx.repo.latest_close_position(flow.id).order_id == orders[0].id

    def test_buy_positions_sell_on_taker(self, ctx, taker):
        _positions(ctx.repo, Side.BUY, [1.0])
        BuyClosingFlow(ctx).close_market()
        assert taker.orders()[0].side == Side.SELL

    def test_weighted_suggested_price(self, ctx, taker):
        _positions(ctx.repo, Side.BUY, [1.0], suggested=300.0)
        _positions(ctx.repo, Side.BUY, [3.0], suggested=304.0)

        flow = BuyClosingFlow(ctx).close_market()
        assert flow.desired_price == pytest.approx(303.0)

    def test_only_closes_own_side(self, ctx):
        _positions(ctx.repo, Side.SELL, [1.0])
        assert BuyClosingFlow(ctx).close_market() is None
        assert len(ctx.repo.unclaimed_positions(Side.SELL)) == 1

    def test_nothing_to_close(self, ctx, taker):
        assert SellClosingFlow(ctx).close_market() is None
        assert taker.orders() == []

    def test_below_minimum_waits(self, strict_ctx, strict_taker):
        _positions(strict_ctx.repo, Side.BUY, [0.5])

        assert BuyClosingFlow(strict_ctx).close_market() is None
        assert strict_taker.orders() == []
        assert len(strict_ctx.repo.unclaimed_positions()) == 1

    def test_amount_converted_by_fx(self, make_ctx):
        ctx = make_ctx(buying_fx_rate=2.0)
        _positions(ctx.repo, Side.BUY, [1.0], price=600.0)
        flow = BuyClosingFlow(ctx).close_market()
        assert flow.amount == pytest.approx(300.0)

    def test_venue_failure_leaves_positions_unclaimed(self, ctx, taker):
        _positions(ctx.repo, Side.BUY, [1.0])
        with patch.object(taker, "place_order", side_effect=VenueTimeout("taker timed out")):
            with pytest.raises(CannotCreateFlow, match="VenueTimeout"):
                BuyClosingFlow(ctx).close_market()
        assert len(ctx.repo.unclaimed_positions()) == 1
        assert ctx.repo.active_closing_flows() == []


class TestSyncPositions:
    """Expiry, re-placement and price walk of taker orders."""

    def test_young_open_order_left_alone(self, ctx, taker, clock):
        _positions(ctx.repo, Side.BUY, [1.0])
        closing = BuyClosingFlow(ctx)
        closing.close_market()

        clock.advance(30)
        closing.sync_positions()

        assert len(taker.orders()) == 1

    def test_expired_order_cancelled(self, ctx, taker, clock):
        _positions(ctx.repo, Side.BUY, [1.0])
        closing = BuyClosingFlow(ctx)
        flow = closing.close_market()
        order_id = ctx.repo.latest_close_position(flow.id).order_id

        clock.advance(31)
        closing.sync_positions()

        assert taker.find_order(order_id).status == OrderStatus.CANCELLED
        assert len(ctx.repo.close_positions(flow.id)) == 1

    def test_full_fill_finalises_with_profit(self, ctx, taker):
        _positions(ctx.repo, Side.BUY, [1.0], price=295.0, suggested=300.0)
        closing = BuyClosingFlow(ctx)
        flow = closing.close_market()
        taker.fill(ctx.repo.latest_close_position(flow.id).order_id)

        closing.sync_positions()

        done = ctx.repo.get_closing_flow(flow.id)
        assert done.done
        assert done.fiat_profit == pytest.approx(5.0)
        assert done.crypto_profit == pytest.approx(0.0)
        assert done.fx_rate == 1.0
        assert ctx.repo.active_closing_flows() == []

    def test_sell_profit(self, ctx, taker):
        _positions(ctx.repo, Side.SELL, [2.0], price=310.0, suggested=305.0)
        closing = SellClosingFlow(ctx)
        flow = closing.close_market()
        taker.fill(ctx.repo.latest_close_position(flow.id).order_id)

        closing.sync_positions()

        done = ctx.repo.get_closing_flow(flow.id)
        assert done.fiat_profit == pytest.approx(620.0 - 610.0)
        assert done.crypto_profit == pytest.approx(0.0)

    def test_backoff_walks_price_into_book(self, ctx, taker, clock):
        _positions(ctx.repo, Side.BUY, [1.0])
        closing = BuyClosingFlow(ctx)
        flow = closing.close_market()

        prices = []
        for _ in range(3):
            taker.fill(ctx.repo.latest_close_position(flow.id).order_id, quantity=0.1)
            clock.advance(31)
            closing.sync_positions()  # cancel
            closing.sync_positions()  # record fill, re-place remainder
            order = taker.find_order(ctx.repo.latest_close_position(flow.id).order_id)
            prices.append(order.price)
            assert order.quantity == pytest.approx(flow.quantity - 0.1 * len(prices))

        assert prices == pytest.approx([299.97, 299.88, 299.73])

    def test_sell_backoff_walks_up(self, ctx, taker, clock):
        _positions(ctx.repo, Side.SELL, [1.0])
        closing = SellClosingFlow(ctx)
        flow = closing.close_market()
        taker.fill(ctx.repo.latest_close_position(flow.id).order_id, quantity=0.5)
        clock.advance(31)
        closing.sync_positions()
        closing.sync_positions()

        order = taker.find_order(ctx.repo.latest_close_position(flow.id).order_id)
        assert order.side == Side.BUY
        assert order.price == pytest.approx(300.03)

    def test_remainder_below_minimum_finalises(self, strict_ctx, strict_taker, clock):
        _positions(strict_ctx.repo, Side.SELL, [2.0, 0.01], price=310.0, suggested=310.0)
        closing = SellClosingFlow(strict_ctx)
        flow = closing.close_market()
        strict_taker.fill(strict_ctx.repo.latest_close_position(flow.id).order_id, quantity=1.5)

        clock.advance(31)
        closing.sync_positions()
        assert not strict_ctx.repo.get_closing_flow(flow.id).done

        closing.sync_positions()

        done = strict_ctx.repo.get_closing_flow(flow.id)
        assert done.done
        assert done.crypto_profit == pytest.approx(1.5 - 2.01)
        assert done.fiat_profit == pytest.approx(310.0 * 2.01 - 310.0 * 1.5)
        assert strict_taker.orders() == []
        assert len(strict_ctx.repo.close_positions(flow.id)) == 1


class TestConservation:
    """Filled quantity stays within the flow."""

    def test_filled_quantity_never_exceeds_flow_quantity(self, ctx, taker, clock):
        _positions(ctx.repo, Side.BUY, [0.6, 0.4])
        closing = BuyClosingFlow(ctx)
        flow = closing.close_market()

        for _ in range(2):
            taker.fill(ctx.repo.latest_close_position(flow.id).order_id, quantity=0.25)
            clock.advance(31)
            closing.sync_positions()
            closing.sync_positions()
        taker.fill(ctx.repo.latest_close_position(flow.id).order_id)
        closing.sync_positions()

        closes = ctx.repo.close_positions(flow.id)
        assert sum(c.quantity for c in closes) == pytest.approx(flow.quantity)
        assert sum(p.quantity for p in ctx.repo.positions_for_closing(flow.id)) == pytest.approx(flow.quantity)
        assert ctx.repo.get_closing_flow(flow.id).done


class TestFinalise:
    """Profit booking on completion."""

    def test_done_is_final(self, ctx, taker):
        _positions(ctx.repo, Side.BUY, [1.0], price=295.0)
        closing = BuyClosingFlow(ctx)
        flow = closing.close_market()
        taker.fill(ctx.repo.latest_close_position(flow.id).order_id)
        closing.sync_positions()

        done = ctx.repo.get_closing_flow(flow.id)
        assert closing.finalise(done) == done
        closing.sync_positions()
        assert ctx.repo.get_closing_flow(flow.id) == done

    def test_price_variation_grows_quadratically(self, ctx):
        closing = BuyClosingFlow(ctx)
        assert [closing.price_variation(n) for n in (1, 2, 3)] == pytest.approx([0.03, 0.12, 0.27])
