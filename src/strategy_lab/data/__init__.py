from strategy_lab.data.bars import bars_from_frame, bars_to_frame, load_bars_csv

__all__ = ["bars_from_frame", "bars_to_frame", "load_bars_csv"]
