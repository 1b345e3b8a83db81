"""Strategy models, templates and sharing."""

from strategy_lab.strategy.models import (
    Bar,
    OrderKind,
    Signal,
    SignalType,
    Strategy,
    StrategyStatus,
    StrategyVersion,
    parse_time,
    serialize_time,
)
from strategy_lab.strategy.templates import DEFAULT_STRATEGY_TEMPLATE
from strategy_lab.strategy.sharing import (
    ImportResult,
    compute_checksum,
    decode_share_code,
    export_json,
    export_strategy,
    import_strategy,
    minify_code,
    share_code,
)

__all__ = [
    "Bar",
    "DEFAULT_STRATEGY_TEMPLATE",
    "ImportResult",
    "OrderKind",
    "Signal",
    "SignalType",
    "Strategy",
    "StrategyStatus",
    "StrategyVersion",
    "compute_checksum",
    "decode_share_code",
    "export_json",
    "export_strategy",
    "import_strategy",
    "minify_code",
    "parse_time",
    "serialize_time",
    "share_code",
]
