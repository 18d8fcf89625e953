"""
Shared fixtures: a controllable clock, paper venues and an in-memory repository
wired into a TradingContext.
"""

import pytest

from client.paper import PaperVenue
from config import Config
from executor.context import TradingContext
from monitor.notifier import RecordingNotifier
from state.repository import TradingRepository

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = START):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_config(**overrides) -> Config:
    """Deterministic config: fee-free, no minimums, zero profit unless overridden."""
    values = dict(
        buying_amount_to_spend_per_order=600.0,
        buying_profit=0.0,
        selling_quantity_to_sell_per_order=2.0,
        selling_profit=0.0,
        paper_maker_fee=0.0,
        paper_taker_fee=0.0,
        paper_min_order_value=0.0,
    )
    values.update(overrides)
    return Config(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repo():
    repository = TradingRepository(":memory:")
    yield repository
    repository.close()


@pytest.fixture
def maker(clock):
    return PaperVenue(name="maker", pair="btc_usd", crypto=10.0, fiat=10_000.0, clock=clock)


@pytest.fixture
def taker(clock):
    return PaperVenue(name="taker", pair="btc_usd", crypto=10.0, fiat=10_000.0, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_ctx(clock, repo, maker, taker, notifier):
    def _make(**overrides) -> TradingContext:
        return TradingContext(
            config=make_config(**overrides),
            maker=maker,
            taker=taker,
            repo=repo,
            notifier=notifier,
            clock=clock,
            sleep=clock.sleep,
        )
    return _make


@pytest.fixture
def ctx(make_ctx):
    return make_ctx()
