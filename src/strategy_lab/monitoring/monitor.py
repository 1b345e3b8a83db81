"""Operator alert routing."""

from __future__ import annotations

from dataclasses import dataclass

from strategy_lab.monitoring.notifier import Notifier


@dataclass
class Monitor:
    notifier: Notifier

    def risk_halt(self, reason: str) -> None:
        self.notifier.notify("RISK_HALT", reason)

    def emergency_stop(self, reason: str) -> None:
        self.notifier.notify("EMERGENCY_STOP", reason)

    def order_failed(self, message: str) -> None:
        self.notifier.notify("ORDER_FAILED", message)

    def runner_error(self, message: str) -> None:
        self.notifier.notify("RUNNER_ERROR", message)

    def sandbox_timeout(self, message: str) -> None:
        self.notifier.notify("SANDBOX_TIMEOUT", message)
