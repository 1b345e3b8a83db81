"""Append-only JSONL audit trail for lab decisions and lifecycle events."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class AuditLog:
    def __init__(self, path: str | Path, run_id: Optional[str] = None, config_hash: Optional[str] = None) -> None:
        self.path = Path(path)
        self.run_id = run_id
        self.config_hash = config_hash
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, event: str, payload: dict[str, Any]) -> None:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "run_id": self.run_id,
            "config_hash": self.config_hash,
            "event": event,
            "payload": payload,
        }
        line = json.dumps(record, default=str)
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.write("\n")

    def read(self, event: Optional[str] = None) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        records = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            record = json.loads(line)
            if event is None or record.get("event") == event:
                records.append(record)
        return records
