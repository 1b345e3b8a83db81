from datetime import datetime, timezone

import pandas as pd
import pytest

from strategy_lab.data import bars_from_frame, bars_to_frame, load_bars_csv
from strategy_lab.strategy import Bar


def test_numeric_timestamps_are_epoch_millis() -> None:
    frame = pd.DataFrame(
        {
            "timestamp": [1722474000000, 1722470400000],
            "open": [2.0, 1.0],
            "high": [2.5, 1.5],
            "low": [1.5, 0.5],
            "close": [2.2, 1.2],
            "volume": [20, 10],
        }
    )
    bars = bars_from_frame(frame)
    assert [bar.close for bar in bars] == [1.2, 2.2]
    assert bars[0].time == datetime(2024, 8, 1, tzinfo=timezone.utc)
    assert bars[1].volume == 20.0


def test_iso_strings_sort_and_dedupe_keep_last() -> None:
    frame = pd.DataFrame(
        {
            "Date": ["2024-08-01T02:00:00Z", "2024-08-01T01:00:00Z", "2024-08-01T02:00:00Z"],
            "Open": [1, 1, 1],
            "High": [2, 2, 2],
            "Low": [0, 0, 0],
            "Close": [1.5, 1.1, 1.9],
        }
    )
    bars = bars_from_frame(frame)
    assert [bar.close for bar in bars] == [1.1, 1.9]
    assert all(bar.volume == 0.0 for bar in bars)
    assert bars[1].time == datetime(2024, 8, 1, 2, tzinfo=timezone.utc)


def test_missing_columns_raise() -> None:
    with pytest.raises(ValueError, match="Missing price column: low"):
        bars_from_frame(pd.DataFrame({"time": [0], "open": [1], "high": [1], "close": [1]}))
    with pytest.raises(ValueError, match="Missing time column"):
        bars_from_frame(pd.DataFrame({"open": [1], "high": [1], "low": [1], "close": [1]}))


def test_csv_round_trip(tmp_path) -> None:
    start = datetime(2024, 8, 1, tzinfo=timezone.utc)
    bars = [
        Bar(start, 100.0, 101.0, 99.0, 100.5, 3.0),
        Bar(start.replace(hour=1), 100.5, 102.0, 100.0, 101.5, 4.0),
    ]
    path = tmp_path / "bars.csv"
    frame = bars_to_frame(bars)
    assert list(frame.columns) == ["timestamp", "open", "high", "low", "close", "volume"]
    frame.to_csv(path, index=False)

    loaded = load_bars_csv(path)
    assert loaded == bars


def test_bar_prices_are_floats_however_built() -> None:
    start = datetime(2024, 8, 1, tzinfo=timezone.utc)
    direct = Bar(start, 10, 11, 9, 10, 3)
    assert all(isinstance(value, float) for value in (direct.open, direct.high, direct.low, direct.close, direct.volume))
    assert direct.to_dict()["close"] == 10.0
    assert Bar.from_dict({"timestamp": 1722470400000, "open": "10", "high": 11, "low": 9, "close": 10}) == Bar(
        start, 10.0, 11.0, 9.0, 10.0, 0.0
    )
