"""
Robot logging.

setup_logging() installs:
  - stderr: one short line per record, colored by level, tagged with the robot
    cycle and the emitting module
  - <log_dir>/bot_YYYYMMDD_HHMMSS.log: everything at DEBUG, with line numbers
  - optional ndjson file for log shippers

Every record carries the number of the robot cycle it was emitted in (0 outside
the loop). The robot bumps it through set_cycle().
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone

DEFAULT_LOG_DIR = "logs"

_RESET = "\033[0m"
_DIM = "\033[2m"
_COLORS = {
    logging.DEBUG: "\033[2m",
    logging.INFO: "\033[36m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}
_TAGS = {
    logging.DEBUG: "DBG",
    logging.INFO: "INF",
    logging.WARNING: "WRN",
    logging.ERROR: "ERR",
    logging.CRITICAL: "CRT",
}

_current_cycle = 0


def set_cycle(cycle: int) -> None:
    global _current_cycle
    _current_cycle = cycle


class CycleFilter(logging.Filter):
    """Stamps record.cycle with the current robot cycle."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cycle = _current_cycle
        return True


def _exception_line(record: logging.LogRecord) -> str | None:
    if not (record.exc_info and record.exc_info[1]):
        return None
    exc = record.exc_info[1]
    return f"{type(exc).__name__}: {exc}"


class ConsoleFormatter(logging.Formatter):
    """HH:MM:SS TAG #cycle module message"""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self._use_color = use_color and _supports_color()

    def format(self, record: logging.LogRecord) -> str:
        ts = time.strftime("%H:%M:%S", time.localtime(record.created))
        tag = _TAGS.get(record.levelno, "???")
        module = record.name.rsplit(".", 1)[-1]
        cycle = f"#{getattr(record, 'cycle', 0)}"
        msg = record.getMessage()

        if self._use_color:
            color = _COLORS.get(record.levelno, "")
            line = f"{_DIM}{ts}{_RESET} {color}{tag}{_RESET} {_DIM}{cycle:>5} {module:<10}{_RESET} {msg}"
        else:
            line = f"{ts} {tag} {cycle:>5} {module:<10} {msg}"

        exc = _exception_line(record)
        if exc:
            line += f"\n      {exc}"
        return line


class JSONFormatter(logging.Formatter):
    """ndjson: one object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "cycle": getattr(record, "cycle", 0),
            "msg": record.getMessage(),
        }
        exc = _exception_line(record)
        if exc:
            entry["exception"] = exc
        return json.dumps(entry, separators=(",", ":"))


def setup_logging(
    level: str = "INFO",
    json_log_file: str | None = None,
    log_dir: str | None = DEFAULT_LOG_DIR,
) -> str | None:
    """
    Replace the root handlers with the robot's outputs. `level` applies to the
    console only; files get DEBUG. log_dir=None skips the verbose file.

    Returns the verbose log path, or None.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    cycle_filter = CycleFilter()
    handlers: list[logging.Handler] = []

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(ConsoleFormatter())
    handlers.append(console)

    log_path = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_path = os.path.join(log_dir, f"bot_{datetime.now(timezone.utc):%Y%m%d_%H%M%S}.log")
        verbose = logging.FileHandler(log_path, mode="a")
        verbose.setLevel(logging.DEBUG)
        verbose.setFormatter(logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)-8s c%(cycle)s %(name)s:%(lineno)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        handlers.append(verbose)

    if json_log_file:
        ndjson = logging.FileHandler(json_log_file, mode="a")
        ndjson.setFormatter(JSONFormatter())
        handlers.append(ndjson)

    for handler in handlers:
        handler.addFilter(cycle_filter)
        root.addHandler(handler)
    return log_path


def _supports_color() -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()
