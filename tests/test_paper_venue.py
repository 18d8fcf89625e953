"""
Unit tests for client/paper.py -- in-memory venue.
"""

import pytest

from client.errors import OrderArgumentError, OrderNotFound
from client.paper import PaperVenue
from client.venue import VenueClient
from market.models import OrderStatus, Side


@pytest.fixture
def venue(clock):
    return PaperVenue(name="paper", pair="btc_usd", fee=0.5, min_order_value=10.0, crypto=2.0, fiat=1000.0, clock=clock)


class TestProtocol:
    """VenueClient conformance."""

    def test_satisfies_venue_client(self, venue):
        assert isinstance(venue, VenueClient)

    def test_pair_parts(self, venue):
        assert venue.base == "btc"
        assert venue.quote == "usd"


class TestOrders:
    """Placing, finding and cancelling."""

    def test_place_returns_executing_order(self, venue):
        order = venue.place_order(Side.BUY, 300.0, 1.0)
        assert order.status == OrderStatus.EXECUTING
        assert venue.orders() == [order]
        assert venue.find_order(order.id) == order

    def test_place_rejects_bad_arguments(self, venue):
        with pytest.raises(OrderArgumentError):
            venue.place_order(Side.BUY, 0.0, 1.0)
        with pytest.raises(OrderArgumentError):
            venue.place_order(Side.SELL, 300.0, -1.0)

    def test_open_orders_reserve_balance(self, venue):
        venue.place_order(Side.BUY, 300.0, 1.0)
        venue.place_order(Side.SELL, 310.0, 0.5)
        balance = venue.balance()
        assert balance.fiat.reserved == pytest.approx(300.0)
        assert balance.fiat.available == pytest.approx(700.0)
        assert balance.crypto.reserved == pytest.approx(0.5)
        assert balance.crypto.available == pytest.approx(1.5)
        assert balance.fee == 0.5

    def test_cancel_is_idempotent(self, venue):
        order = venue.place_order(Side.BUY, 300.0, 1.0)
        venue.cancel_order(order.id)
        venue.cancel_order(order.id)
        assert venue.find_order(order.id).status == OrderStatus.CANCELLED
        assert venue.orders() == []

    def test_unknown_order(self, venue):
        with pytest.raises(OrderNotFound):
            venue.find_order("nope")
        with pytest.raises(OrderNotFound):
            venue.cancel_order("nope")

    def test_enough_order_size(self, venue):
        assert venue.enough_order_size(0.1, 100.0, Side.BUY)
        assert not venue.enough_order_size(0.01, 100.0, Side.BUY)
        assert not venue.enough_order_size(0.0, 100.0, Side.SELL)


class TestFills:
    """Manual fills and balances."""

    def test_partial_then_complete(self, venue):
        order = venue.place_order(Side.BUY, 300.0, 1.0)
        venue.fill(order.id, quantity=0.4)
        assert venue.find_order(order.id).status == OrderStatus.EXECUTING

        venue.fill(order.id)
        assert venue.find_order(order.id).status == OrderStatus.COMPLETED
        assert venue.amount_and_quantity(order.id) == pytest.approx((300.0, 1.0))

    def test_fill_moves_balances_with_fee(self, venue):
        order = venue.place_order(Side.SELL, 300.0, 1.0)
        trade = venue.fill(order.id)
        assert trade.fee == pytest.approx(1.5)
        assert trade.pair == "btc_usd"
        assert trade.side == Side.SELL
        balance = venue.balance()
        assert balance.crypto.total == pytest.approx(1.0)
        assert balance.fiat.total == pytest.approx(1298.5)

    def test_fill_after_cancel_keeps_cancelled(self, venue):
        order = venue.place_order(Side.BUY, 300.0, 1.0)
        venue.cancel_order(order.id)
        venue.fill(order.id, quantity=0.5)
        assert venue.find_order(order.id).status == OrderStatus.CANCELLED
        assert venue.amount_and_quantity(order.id) == pytest.approx((150.0, 0.5))

    def test_nothing_left_to_fill(self, venue):
        order = venue.place_order(Side.BUY, 300.0, 1.0)
        venue.fill(order.id)
        with pytest.raises(OrderArgumentError):
            venue.fill(order.id)

    def test_trades_newest_first(self, venue, clock):
        order = venue.place_order(Side.BUY, 300.0, 1.0)
        first = venue.fill(order.id, quantity=0.5)
        clock.advance(5)
        second = venue.fill(order.id, quantity=0.5)
        assert venue.trades() == [second, first]


class TestAutoFill:
    """Taker orders crossing the book."""

    def test_marketable_order_crosses_book(self, clock):
        venue = PaperVenue(crypto=1.0, fiat=1000.0, auto_fill=True, clock=clock)
        venue.set_order_book(bids=[(300.0, 0.5)], asks=[(305.0, 2.0)])

        order = venue.place_order(Side.SELL, 299.0, 1.0)

        assert venue.amount_and_quantity(order.id) == pytest.approx((149.5, 0.5))
        assert venue.find_order(order.id).status == OrderStatus.EXECUTING

    def test_non_marketable_order_rests(self, clock):
        venue = PaperVenue(auto_fill=True, clock=clock)
        venue.set_order_book(bids=[(300.0, 0.5)], asks=[(305.0, 2.0)])
        order = venue.place_order(Side.BUY, 304.0, 1.0)
        assert venue.amount_and_quantity(order.id) == (0.0, 0.0)
        assert venue.orders() == [order]


class TestMarketData:
    """Book and public trades."""

    def test_order_book_and_transactions(self, venue, clock):
        venue.set_order_book(bids=[(300.0, 1.0)], asks=[(305.0, 1.0)])
        old = venue.add_transaction(301.0, 0.2, timestamp=clock() - 10)
        new = venue.add_transaction(302.0, 0.3)

        book = venue.order_book()
        assert book.best_bid.price == 300.0
        assert book.best_ask.price == 305.0
        assert venue.transactions() == [new, old]
