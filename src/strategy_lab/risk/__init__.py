from strategy_lab.risk.manager import OrderRateLimiter, RiskManager
from strategy_lab.risk.models import (
    OrderCheck,
    RiskCheckResult,
    RiskLimits,
    RiskStatus,
    RiskViolation,
    RiskViolationType,
)

__all__ = [
    "OrderCheck",
    "OrderRateLimiter",
    "RiskCheckResult",
    "RiskLimits",
    "RiskManager",
    "RiskStatus",
    "RiskViolation",
    "RiskViolationType",
]
