#!/usr/bin/env python3
"""
Maker/taker hedging bot -- process entry point.

  python run.py                       # trade until interrupted (ctrl+c once to exit gracefully)
  python run.py run --cycles 10       # bounded session
  python run.py show                  # print the operator store
  python run.py set hold=true         # tune store fields (value "none" clears a tunable)
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import Annotated

from pydantic import Field, TypeAdapter, ValidationError

from client.paper import PaperVenue
from client.venue import VenueClient
from config import Config, load_config
from executor.context import TradingContext
from executor.robot import Robot
from monitor.logger import setup_logging
from monitor.notifier import LogNotifier
from state.models import TradingStore
from state.repository import TradingRepository

logger = logging.getLogger(__name__)

# Store fields an operator may not set by hand.
_READ_ONLY_FIELDS = {"maker_crypto", "maker_fiat", "taker_crypto", "taker_fiat", "last_warning"}

# Warning and stop thresholds have no Config counterpart.
_THRESHOLD = TypeAdapter(Annotated[float, Field(ge=0)])


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Maker/taker hedging bot")
    parser.add_argument("--db", default=None, help="SQLite path (overrides DB_PATH)")
    parser.add_argument("--json-log", default=None, help="Also write ndjson logs to this file")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Trade until shutdown (default)")
    run.add_argument("--cycles", type=int, default=None, help="Stop after this many cycles")

    sub.add_parser("show", help="Print the store")

    tune = sub.add_parser("set", help="Set store fields, e.g. hold=true buying_profit=0.7")
    tune.add_argument("assignments", nargs="+", metavar="KEY=VALUE")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
        args.cycles = None
    return args


def build_venue(kind: str, pair: str, name: str, cfg: Config, taker: bool) -> VenueClient:
    """Build a venue client by kind. Live wire clients register here."""
    if kind == "paper":
        return PaperVenue(
            name=name,
            pair=pair,
            fee=cfg.paper_taker_fee if taker else cfg.paper_maker_fee,
            min_order_value=cfg.paper_min_order_value,
            auto_fill=taker,
        )
    raise ValueError(f"Unknown venue kind '{kind}' for {name}")


def parse_assignment(assignment: str) -> tuple[str, float | bool | None]:
    """'hold=true' -> ('hold', True); 'buying_profit=0.7' -> ('buying_profit', 0.7)."""
    key, sep, raw = assignment.partition("=")
    key = key.strip()
    if not sep or key not in TradingStore.field_names() or key in _READ_ONLY_FIELDS:
        raise ValueError(f"Cannot set '{assignment}'")

    raw = raw.strip().lower()
    if key == "hold":
        if raw not in ("true", "false", "1", "0", "yes", "no"):
            raise ValueError(f"hold must be true or false, got '{raw}'")
        return key, raw in ("true", "1", "yes")
    if raw in ("none", "null", ""):
        return key, None
    return key, _validate_override(key, float(raw))


def _validate_override(key: str, value: float) -> float:
    """Apply the same bounds Config enforces on the default a store field overrides."""
    field = Config.model_fields.get(key)
    adapter = (
        TypeAdapter(Annotated[(field.annotation, *field.metadata)]) if field else _THRESHOLD
    )
    try:
        return adapter.validate_python(value)
    except ValidationError as e:
        reason = e.errors()[0]["msg"]
        raise ValueError(f"Invalid value for {key}: {reason}") from None


def show_store(repo: TradingRepository) -> None:
    store = repo.load_store()
    for name in TradingStore.field_names():
        print(f"{name:<36} {getattr(store, name)}")


def set_store(repo: TradingRepository, assignments: list[str]) -> None:
    store = repo.load_store()
    for assignment in assignments:
        key, value = parse_assignment(assignment)
        setattr(store, key, value)
    repo.save_store(store)
    logger.info("Store updated: %s", ", ".join(assignments))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = load_config()
    if args.db:
        cfg = cfg.model_copy(update={"db_path": args.db})

    log_file_path = setup_logging(cfg.log_level, json_log_file=args.json_log)
    repo = TradingRepository(cfg.db_path)

    try:
        if args.command == "show":
            show_store(repo)
            return 0
        if args.command == "set":
            try:
                set_store(repo, args.assignments)
            except ValueError as e:
                logger.error("%s", e)
                return 2
            return 0

        logger.info("Robot starting, ctrl+c once to shut down gracefully, twice to abort")
        logger.info("  Log file: %s", log_file_path)
        ctx = TradingContext(
            config=cfg,
            maker=build_venue(cfg.maker_venue, cfg.maker_pair, "maker", cfg, taker=False),
            taker=build_venue(cfg.taker_venue, cfg.taker_pair, "taker", cfg, taker=True),
            repo=repo,
            notifier=LogNotifier(cfg.notification_subject),
        )
        robot = Robot(ctx)

        def handle_signal(signum, frame):
            if robot.shutdown_requested:
                print("\nSecond signal, exiting without cleanup.", file=sys.stderr)
                sys.exit(1)
            robot.request_shutdown()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        cycles = robot.run(max_cycles=args.cycles)
        logger.info("Stopped after %d cycle(s)", cycles)
        return 0
    finally:
        repo.close()


if __name__ == "__main__":
    sys.exit(main())
