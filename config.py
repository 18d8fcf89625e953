"""
Configuration loaded from environment variables. Fail-fast on invalid values.

Trading tunables here are defaults only: any value set on the persisted store
(see state/models.py::TradingStore) takes precedence at runtime.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Venues. Only "paper" ships in this repo; live wire clients plug in via run.py.
    maker_venue: str = "paper"
    taker_venue: str = "paper"
    maker_pair: str = "btc_usd"
    taker_pair: str = "btc_usd"

    # Timing
    # Opening flows older than this are finalised; also the staleness window for taker prices.
    time_to_live_sec: float = Field(default=20.0, gt=0)
    # Taker orders of closing flows become cancellable after this.
    close_time_to_live_sec: float = Field(default=30.0, gt=0)
    # Maker trades older than (latest position - grace) are never ingested.
    position_grace_sec: float = Field(default=1800.0, ge=0)
    # Minimum spacing added per venue call before the next cycle may start.
    cooldown_per_call_sec: float = Field(default=0.1, ge=0)
    balance_warning_interval_sec: float = Field(default=1800.0, ge=0)

    # Closing flows re-price each attempt by attempts^2 * close_price_step.
    close_price_step: float = Field(default=0.03, ge=0)

    # Buying: spend this much fiat per maker bid, ask for this % profit.
    buying_amount_to_spend_per_order: float = Field(default=10.0, gt=0)
    buying_profit: float = Field(default=0.5, ge=0, lt=100)
    # Maker fiat per unit of taker fiat when the venues quote different currencies.
    buying_fx_rate: float = Field(default=1.0, gt=0)

    # Selling: sell this much crypto per maker ask, ask for this % profit.
    selling_quantity_to_sell_per_order: float = Field(default=0.1, gt=0)
    selling_profit: float = Field(default=0.5, ge=0)
    selling_fx_rate: float = Field(default=1.0, gt=0)

    # Retry delays after a failed cycle, by error kind.
    cannot_create_flow_delay_sec: float = Field(default=180.0, ge=0)
    venue_timeout_delay_sec: float = Field(default=15.0, ge=0)
    order_not_found_delay_sec: float = Field(default=0.0, ge=0)
    venue_error_delay_sec: float = Field(default=0.0, ge=0)
    unclassified_delay_sec: float = Field(default=120.0, ge=0)

    # Paper venues
    paper_maker_fee: float = Field(default=0.25, ge=0, lt=100)
    paper_taker_fee: float = Field(default=0.2, ge=0, lt=100)
    paper_min_order_value: float = Field(default=5.0, ge=0)

    # Persistence + logging
    db_path: str = "bot.db"
    log_level: str = "INFO"
    notification_subject: str = "Notice from your robot trader"


def load_config() -> Config:
    """Load and validate config from environment. Raises on invalid fields."""
    return Config()
