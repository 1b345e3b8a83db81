"""Strategy sandbox, risk, paper/live execution, backtesting and live running."""

__version__ = "0.1.0"
