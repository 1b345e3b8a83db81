"""Record persistence for strategies, backtests and paper trading state."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

STRATEGIES = "strategies"
BACKTEST_CONFIGS = "backtest_configs"
BACKTEST_RESULTS = "backtest_results"
PAPER_STATES = "paper_states"

COLLECTIONS: tuple[str, ...] = (STRATEGIES, BACKTEST_CONFIGS, BACKTEST_RESULTS, PAPER_STATES)


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection}")


class RecordStore:
    def get(self, collection: str, key: str) -> Optional[dict[str, Any]]:  # pragma: no cover - interface
        raise NotImplementedError

    def put(self, collection: str, key: str, record: dict[str, Any]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def delete(self, collection: str, key: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def list(self, collection: str) -> list[dict[str, Any]]:  # pragma: no cover - interface
        raise NotImplementedError


class MemoryRecordStore(RecordStore):
    def __init__(self) -> None:
        self._data: dict[str, dict[str, str]] = {name: {} for name in COLLECTIONS}
        self._lock = threading.Lock()

    def get(self, collection: str, key: str) -> Optional[dict[str, Any]]:
        _check_collection(collection)
        with self._lock:
            raw = self._data[collection].get(key)
        return json.loads(raw) if raw is not None else None

    def put(self, collection: str, key: str, record: dict[str, Any]) -> None:
        _check_collection(collection)
        # same JSON round trip as SqliteRecordStore
        raw = json.dumps(record, default=str)
        with self._lock:
            self._data[collection][key] = raw

    def delete(self, collection: str, key: str) -> bool:
        _check_collection(collection)
        with self._lock:
            return self._data[collection].pop(key, None) is not None

    def list(self, collection: str) -> list[dict[str, Any]]:
        _check_collection(collection)
        with self._lock:
            raws = list(self._data[collection].values())
        return [json.loads(raw) for raw in raws]


class SqliteRecordStore(RecordStore):
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._conn()

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.path)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (collection, key)
                )
                """
            )
            conn.commit()
            self._local.conn = conn
        return conn

    def get(self, collection: str, key: str) -> Optional[dict[str, Any]]:
        _check_collection(collection)
        row = self._conn().execute(
            "SELECT payload FROM records WHERE collection = ? AND key = ?",
            (collection, key),
        ).fetchone()
        if not row:
            return None
        return json.loads(row[0])

    def put(self, collection: str, key: str, record: dict[str, Any]) -> None:
        _check_collection(collection)
        conn = self._conn()
        conn.execute(
            "INSERT INTO records (collection, key, payload, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(collection, key) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at",
            (collection, key, json.dumps(record, default=str), datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()

    def delete(self, collection: str, key: str) -> bool:
        _check_collection(collection)
        conn = self._conn()
        cursor = conn.execute("DELETE FROM records WHERE collection = ? AND key = ?", (collection, key))
        conn.commit()
        return cursor.rowcount > 0

    def list(self, collection: str) -> list[dict[str, Any]]:
        _check_collection(collection)
        rows = self._conn().execute(
            "SELECT payload FROM records WHERE collection = ? ORDER BY updated_at",
            (collection,),
        ).fetchall()
        return [json.loads(row[0]) for row in rows]

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        conn.close()
        self._local.conn = None
