"""Historical OHLCV bars from CSV files and DataFrames."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import pandas as pd

from strategy_lab.strategy.models import Bar

PRICE_COLUMNS = ("open", "high", "low", "close")
TIME_COLUMNS = ("timestamp", "time", "date", "datetime")


def _time_column(frame: pd.DataFrame) -> str:
    for name in TIME_COLUMNS:
        if name in frame.columns:
            return name
    raise ValueError(f"Missing time column; expected one of {', '.join(TIME_COLUMNS)}")


def _to_utc(series: pd.Series) -> pd.Series:
    if pd.api.types.is_numeric_dtype(series):
        return pd.to_datetime(series, unit="ms", utc=True)
    return pd.to_datetime(series, utc=True)


def bars_from_frame(frame: pd.DataFrame) -> list[Bar]:
    frame = frame.rename(columns=str.lower)
    missing = [name for name in PRICE_COLUMNS if name not in frame.columns]
    if missing:
        raise ValueError(f"Missing price column: {missing[0]}")
    time_column = _time_column(frame)

    frame = frame.assign(bar_time=_to_utc(frame[time_column]))
    if "volume" not in frame.columns:
        frame = frame.assign(volume=0.0)
    frame = frame.dropna(subset=["bar_time", *PRICE_COLUMNS]).sort_values("bar_time")
    frame = frame.drop_duplicates(subset="bar_time", keep="last")

    return [
        Bar(
            time=row.bar_time.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume) if pd.notna(row.volume) else 0.0,
        )
        for row in frame.itertuples(index=False)
    ]


def load_bars_csv(path: str | Path) -> list[Bar]:
    frame = pd.read_csv(Path(path))
    return bars_from_frame(frame)


def bars_to_frame(bars: Iterable[Bar]) -> pd.DataFrame:
    rows = [
        {
            "timestamp": bar.time,
            "open": bar.open,
            "high": bar.high,
            "low": bar.low,
            "close": bar.close,
            "volume": bar.volume,
        }
        for bar in bars
    ]
    return pd.DataFrame(rows, columns=["timestamp", "open", "high", "low", "close", "volume"])
