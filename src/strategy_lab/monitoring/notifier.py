"""Notification backends."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field


class Notifier:
    def notify(self, event: str, message: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class LogNotifier(Notifier):
    prefix: str = "[LAB]"

    def notify(self, event: str, message: str) -> None:
        print(f"{self.prefix} {event}: {message}")


@dataclass
class LoggingNotifier(Notifier):
    logger_name: str = "strategy_lab.alerts"
    _logger: logging.Logger = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._logger = logging.getLogger(self.logger_name)

    def notify(self, event: str, message: str) -> None:
        self._logger.warning("%s: %s", event, message)
