"""Monitoring exports."""

from strategy_lab.monitoring.audit import AuditLog
from strategy_lab.monitoring.monitor import Monitor
from strategy_lab.monitoring.notifier import LoggingNotifier, LogNotifier, Notifier

__all__ = [
    "AuditLog",
    "LogNotifier",
    "LoggingNotifier",
    "Monitor",
    "Notifier",
]
