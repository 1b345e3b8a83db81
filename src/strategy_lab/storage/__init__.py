from strategy_lab.storage.store import (
    BACKTEST_CONFIGS,
    BACKTEST_RESULTS,
    COLLECTIONS,
    PAPER_STATES,
    STRATEGIES,
    MemoryRecordStore,
    RecordStore,
    SqliteRecordStore,
)

__all__ = [
    "BACKTEST_CONFIGS",
    "BACKTEST_RESULTS",
    "COLLECTIONS",
    "MemoryRecordStore",
    "PAPER_STATES",
    "RecordStore",
    "STRATEGIES",
    "SqliteRecordStore",
]
