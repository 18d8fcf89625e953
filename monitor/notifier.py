"""
Operator notifications. Delivery transports live outside this repo; anything with a
notify(message, subject) method can be handed to the robot.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "Notice from your robot trader"


@runtime_checkable
class Notifier(Protocol):
    def notify(self, message: str, subject: str = DEFAULT_SUBJECT) -> None:
        ...


class LogNotifier:
    """Writes notifications to the log. Default when no transport is wired."""

    def __init__(self, subject: str = DEFAULT_SUBJECT) -> None:
        self._subject = subject

    def notify(self, message: str, subject: str | None = None) -> None:
        first_line, _, rest = message.partition("\n")
        logger.warning("NOTIFY [%s] %s", subject or self._subject, first_line)
        if rest:
            logger.debug("NOTIFY detail:\n%s", rest)


class RecordingNotifier:
    """Keeps notifications in memory. Used by tests."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def notify(self, message: str, subject: str = DEFAULT_SUBJECT) -> None:
        self.sent.append((subject, message))
