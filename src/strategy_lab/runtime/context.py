"""Run context creation and component wiring from a lab config."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from strategy_lab.config.loader import compute_config_hash
from strategy_lab.config.models import LabConfig, MonitoringConfig, StorageConfig
from strategy_lab.monitoring.audit import AuditLog
from strategy_lab.monitoring.monitor import Monitor
from strategy_lab.monitoring.notifier import LoggingNotifier, LogNotifier
from strategy_lab.storage.store import MemoryRecordStore, RecordStore, SqliteRecordStore


@dataclass(frozen=True)
class RunContext:
    run_id: str
    config_path: Path
    config_hash: str
    started_at: datetime


def create_run_context(
    config_path: str | Path,
    run_id_prefix: str,
    run_id: Optional[str] = None,
) -> RunContext:
    path = Path(config_path)
    config_hash = compute_config_hash(path)
    started_at = datetime.now(timezone.utc)
    if run_id is None:
        stamp = started_at.strftime("%Y%m%dT%H%M%SZ")
        run_id = f"{run_id_prefix}-{stamp}-{config_hash[:8]}"
    return RunContext(
        run_id=run_id,
        config_path=path,
        config_hash=config_hash,
        started_at=started_at,
    )


def build_audit_log(config: LabConfig, context: RunContext) -> AuditLog:
    return AuditLog(config.monitoring.audit_log_path, run_id=context.run_id, config_hash=context.config_hash)


def build_monitor(config: MonitoringConfig) -> Monitor:
    if config.notifier == "logging":
        return Monitor(LoggingNotifier())
    return Monitor(LogNotifier(prefix=config.notifier_prefix))


def build_store(config: StorageConfig) -> RecordStore:
    if config.kind == "memory":
        return MemoryRecordStore()
    return SqliteRecordStore(config.path)
