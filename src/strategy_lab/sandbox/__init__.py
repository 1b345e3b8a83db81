"""Sandbox policy, indicators and worker protocol.

The bridge, worker and script runtime live in ``strategy_lab.sandbox.bridge``,
``strategy_lab.sandbox.worker`` and ``strategy_lab.sandbox.runtime``.
"""

from strategy_lab.sandbox.indicators import INDICATOR_NAMES, IndicatorLibrary, calculate_indicator
from strategy_lab.sandbox.policy import (
    ALLOWED_IMPORTS,
    FORBIDDEN_PATTERNS,
    ErrorType,
    SandboxPolicy,
    ValidationIssue,
    ValidationResult,
    categorize_error,
    validate_code,
)
from strategy_lab.sandbox.protocol import RequestType, ResponseType, SandboxRequest, SandboxResponse

__all__ = [
    "ALLOWED_IMPORTS",
    "ErrorType",
    "FORBIDDEN_PATTERNS",
    "INDICATOR_NAMES",
    "IndicatorLibrary",
    "RequestType",
    "ResponseType",
    "SandboxPolicy",
    "SandboxRequest",
    "SandboxResponse",
    "ValidationIssue",
    "ValidationResult",
    "calculate_indicator",
    "categorize_error",
    "validate_code",
]
