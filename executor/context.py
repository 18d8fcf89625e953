"""
Explicit trading context handed to the robot and every workflow.

Holds the two venue clients, config, repository and notifier, plus the
per-cycle venue call counter that drives the cooldown between cycles.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from client.venue import VenueClient
from config import Config
from monitor.notifier import Notifier
from state.models import TradingStore
from state.repository import TradingRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class TradingContext:
    config: Config
    maker: VenueClient
    taker: VenueClient
    repo: TradingRepository
    notifier: Notifier
    clock: Callable[[], float] = time.time
    sleep: Callable[[float], None] = time.sleep
    venue_calls: int = field(default=0, init=False)

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        """Run one venue call, counting it toward this cycle's cooldown."""
        self.venue_calls += 1
        return fn(*args, **kwargs)

    def reset_calls(self) -> None:
        self.venue_calls = 0

    @property
    def cooldown(self) -> float:
        return self.venue_calls * self.config.cooldown_per_call_sec

    def now(self) -> float:
        return self.clock()

    def store(self) -> TradingStore:
        return self.repo.load_store()
