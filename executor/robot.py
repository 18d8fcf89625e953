"""
The robot: top-level reconciliation loop.

Each cycle syncs opening flows, retires stale ones, starts and syncs closing
flows, and finally decides whether to open new maker orders. Cycles are spaced
by a cooldown proportional to the venue calls the previous cycle made. Failures
never escape a cycle: they are classified, reported to the operator, and turned
into a retry delay.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass
from enum import Enum

from client.errors import OrderNotFound, VenueError, VenueTimeout
from executor.closing import BuyClosingFlow, ClosingFlow, SellClosingFlow
from executor.context import TradingContext
from executor.opening import BuyOpeningFlow, CannotCreateFlow, OpeningFlow, SellOpeningFlow
from monitor.logger import set_cycle
from state.models import TradingStore

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    CANNOT_CREATE_FLOW = "cannot_create_flow"
    VENUE_TIMEOUT = "venue_timeout"
    ORDER_NOT_FOUND = "order_not_found"
    VENUE_ERROR = "venue_error"
    UNCLASSIFIED = "unclassified"


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, CannotCreateFlow):
        return ErrorKind.CANNOT_CREATE_FLOW
    if isinstance(exc, VenueTimeout):
        return ErrorKind.VENUE_TIMEOUT
    if isinstance(exc, OrderNotFound):
        return ErrorKind.ORDER_NOT_FOUND
    if isinstance(exc, VenueError):
        return ErrorKind.VENUE_ERROR
    return ErrorKind.UNCLASSIFIED


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one trade_cycle. retry_delay is extra wait imposed by a failure."""
    shutdown: bool = False
    error_kind: ErrorKind | None = None
    error: str = ""
    retry_delay: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error_kind is None


class Robot:
    """
    Single-threaded trading loop. All workflow and store mutation happens here.

    Usage:
        robot = Robot(ctx)
        robot.run()               # until graceful shutdown completes
        robot.request_shutdown()  # from a signal handler
    """

    def __init__(self, ctx: TradingContext) -> None:
        self.ctx = ctx
        self.opening_flows: tuple[OpeningFlow, OpeningFlow] = (BuyOpeningFlow(ctx), SellOpeningFlow(ctx))
        self.closing_flows: tuple[ClosingFlow, ClosingFlow] = (BuyClosingFlow(ctx), SellClosingFlow(ctx))
        self.shutdown_requested = False
        self.cooldown_until = 0.0
        self.cycles = 0

    def request_shutdown(self) -> None:
        if not self.shutdown_requested:
            logger.info("Shutting down as soon as open flows are cleaned up")
        self.shutdown_requested = True

    # -- Loop ----------------------------------------------------------------

    def run(self, max_cycles: int | None = None) -> int:
        """
        Run cycles back to back, each one held until the previous cycle's cooldown expires.
        Returns the number of cycles run once shutdown completes (or max_cycles is hit).
        """
        while max_cycles is None or self.cycles < max_cycles:
            wait = self.cooldown_until - self.ctx.now()
            if wait > 0:
                logger.debug("Cooling down %.2fs", wait)
                self.ctx.sleep(wait)

            start = self.ctx.now()
            self.ctx.reset_calls()
            set_cycle(self.cycles + 1)
            result = self.trade_cycle()
            self.cycles += 1
            self.cooldown_until = start + self.ctx.cooldown

            if result.shutdown:
                logger.info("Shutdown completed after %d cycle(s)", self.cycles)
                break
            if result.retry_delay > 0:
                logger.info(
                    "Cycle failed (%s), retrying in %.0fs", result.error_kind.value, result.retry_delay
                )
                self.ctx.sleep(result.retry_delay)
        return self.cycles

    def trade_cycle(self) -> CycleResult:
        try:
            return self._trade()
        except Exception as e:
            kind = classify_error(e)
            self.notify(f"{type(e).__name__} - {e}\n\n{traceback.format_exc()}")
            logger.error("Cycle failed with %s: %s", kind.value, e, exc_info=True)
            return CycleResult(error_kind=kind, error=str(e), retry_delay=self.retry_delay(kind))

    def retry_delay(self, kind: ErrorKind) -> float:
        cfg = self.ctx.config
        return {
            ErrorKind.CANNOT_CREATE_FLOW: cfg.cannot_create_flow_delay_sec,
            ErrorKind.VENUE_TIMEOUT: cfg.venue_timeout_delay_sec,
            ErrorKind.ORDER_NOT_FOUND: cfg.order_not_found_delay_sec,
            ErrorKind.VENUE_ERROR: cfg.venue_error_delay_sec,
            ErrorKind.UNCLASSIFIED: cfg.unclassified_delay_sec,
        }[kind]

    def _trade(self) -> CycleResult:
        if self.active_opening_flows():
            self.sync_opening_flows()
        self.finalise_some_opening_flows()
        if self.shutdownable():
            return CycleResult(shutdown=True)
        if self.open_positions():
            self.start_closing_flows()
        if self.active_closing_flows():
            self.sync_closing_flows()

        if self.ctx.store().hold:
            logger.debug("Not placing new orders, store is on hold")
        elif self.active_closing_flows():
            logger.debug("Not placing new orders, closing flows are active")
        elif self.shutdown_requested:
            logger.debug("Not placing new orders, shutting down")
        else:
            self.start_opening_flows_if_needed()
        return CycleResult()

    # -- Steps ---------------------------------------------------------------

    def active_opening_flows(self) -> bool:
        return self.ctx.repo.has_active_opening_flows()

    def active_closing_flows(self) -> bool:
        return self.ctx.repo.has_active_closing_flows()

    def open_positions(self) -> bool:
        return self.ctx.repo.has_unclaimed_positions()

    def shutdownable(self) -> bool:
        return self.shutdown_requested and not (
            self.active_opening_flows() or self.active_closing_flows() or self.open_positions()
        )

    def sync_opening_flows(self) -> None:
        for kind in self.opening_flows:
            kind.sync_positions()

    def finalise_some_opening_flows(self) -> None:
        threshold = self.ctx.now() - self.ctx.config.time_to_live_sec
        for kind in self.opening_flows:
            flows = kind.active() if self.shutdown_requested else kind.old_active(threshold)
            for flow in flows:
                kind.finalise(flow)

    def start_closing_flows(self) -> None:
        for kind in self.closing_flows:
            kind.close_market()

    def sync_closing_flows(self) -> None:
        for kind in self.closing_flows:
            kind.sync_positions()

    def recent_openings(self) -> tuple[bool, bool]:
        threshold = self.ctx.now() - self.ctx.config.time_to_live_sec / 2
        buying, selling = self.opening_flows
        return bool(buying.recents(threshold)), bool(selling.recents(threshold))

    def start_opening_flows_if_needed(self) -> None:
        recent_buying, recent_selling = self.recent_openings()
        if recent_buying and recent_selling:
            logger.debug("Not placing new orders, recent ones exist")
            return

        maker_balance = self.ctx.call(self.ctx.maker.balance)
        taker_balance = self.ctx.call(self.ctx.taker.balance)

        store = self.ctx.store()
        store.sync(
            maker_crypto=maker_balance.crypto.total,
            maker_fiat=maker_balance.fiat.total,
            taker_crypto=taker_balance.crypto.total,
            taker_fiat=taker_balance.fiat.total,
        )
        if self.expired_last_warning(store):
            self.check_balance_warning(store)
        self.ctx.repo.save_store(store)

        stop_buying = self.alert(store, "fiat", "stop")
        stop_selling = self.alert(store, "crypto", "stop")
        if stop_buying:
            logger.info("Not placing new bids, %s target not met", self.ctx.maker.quote.upper())
        if stop_selling:
            logger.info("Not placing new asks, %s target not met", self.ctx.maker.base.upper())

        open_buying = not (recent_buying or stop_buying)
        open_selling = not (recent_selling or stop_selling)
        if not (open_buying or open_selling):
            return

        taker_book = self.ctx.call(self.ctx.taker.order_book)
        taker_transactions = self.ctx.call(self.ctx.taker.transactions)
        buying, selling = self.opening_flows

        if open_buying:
            buying.open_market(
                taker_balance.crypto.available,
                maker_balance.fiat.available,
                taker_book.bids,
                taker_transactions,
                maker_balance.fee,
                taker_balance.fee,
            )
        if open_selling:
            selling.open_market(
                taker_balance.fiat.available,
                maker_balance.crypto.available,
                taker_book.asks,
                taker_transactions,
                maker_balance.fee,
                taker_balance.fee,
            )

    # -- Balance alerts ------------------------------------------------------

    def expired_last_warning(self, store: TradingStore) -> bool:
        if store.last_warning is None:
            return True
        return store.last_warning < self.ctx.now() - self.ctx.config.balance_warning_interval_sec

    def check_balance_warning(self, store: TradingStore) -> None:
        if self.alert(store, "crypto", "warning"):
            self.notify_balance_warning(store, self.ctx.maker.base, self.balance(store, "crypto"), store.crypto_warning)
        if self.alert(store, "fiat", "warning"):
            self.notify_balance_warning(store, self.ctx.maker.quote, self.balance(store, "fiat"), store.fiat_warning)

    def alert(self, store: TradingStore, currency: str, flag: str) -> bool:
        limit = getattr(store, f"{currency}_{flag}")
        if limit is None:
            return False
        return self.balance(store, currency) <= limit

    def balance(self, store: TradingStore, currency: str) -> float:
        """Combined maker + taker balance, maker fiat converted to taker currency."""
        if currency == "fiat":
            fx_rate = store.buying_fx_rate if store.buying_fx_rate is not None else self.ctx.config.buying_fx_rate
            return store.maker_fiat / fx_rate + store.taker_fiat
        return store.maker_crypto + store.taker_crypto

    def notify_balance_warning(self, store: TradingStore, currency: str, amount: float, warning_amount: float) -> None:
        self.notify(
            f"{currency.upper()} balance is too low, it's {amount:.8f}, "
            f"make it {warning_amount:.8f} to stop this warning."
        )
        store.last_warning = self.ctx.now()

    def notify(self, message: str, subject: str | None = None) -> None:
        subject = subject or self.ctx.config.notification_subject
        logger.info("Sending notification: %s", message.split("\n")[0])
        self.ctx.notifier.notify(message, subject=subject)

