"""Export, import and share-code encoding for strategies."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from strategy_lab.sandbox.policy import check_patterns
from strategy_lab.strategy.models import Strategy, StrategyStatus

EXPORT_VERSION = "2.0"


@dataclass(frozen=True)
class ImportResult:
    success: bool
    strategy: Optional[Strategy] = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    renamed_from: Optional[str] = None


def _strategy_block(strategy: Strategy) -> dict[str, Any]:
    return {
        "name": strategy.name,
        "description": strategy.description,
        "code": strategy.code,
        "config_values": dict(strategy.config_values),
        "tags": list(strategy.tags),
        "template_category": strategy.template_category,
    }


def compute_checksum(block: dict[str, Any]) -> str:
    canonical = json.dumps(block, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def export_strategy(
    strategy: Strategy,
    custom_indicators: Optional[list[dict[str, Any]]] = None,
    exported_at: Optional[datetime] = None,
) -> dict[str, Any]:
    block = _strategy_block(strategy)
    return {
        "version": EXPORT_VERSION,
        "exported_at": (exported_at or datetime.now(timezone.utc)).isoformat(),
        "strategy": block,
        "custom_indicators": list(custom_indicators or []),
        "checksum": compute_checksum(block),
    }


def export_json(strategy: Strategy, custom_indicators: Optional[list[dict[str, Any]]] = None) -> str:
    return json.dumps(export_strategy(strategy, custom_indicators), indent=2, ensure_ascii=False)


def share_code(strategy: Strategy) -> str:
    payload = json.dumps(export_strategy(strategy), separators=(",", ":"), ensure_ascii=False)
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_share_code(code: str) -> dict[str, Any]:
    try:
        raw = base64.urlsafe_b64decode(code.strip().encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValueError("Invalid share code") from exc
    if not isinstance(data, dict):
        raise ValueError("Invalid share code")
    return data


def _unique_name(name: str, existing: set[str]) -> str:
    if name not in existing:
        return name
    candidate = f"{name} (imported)"
    counter = 2
    while candidate in existing:
        candidate = f"{name} (imported {counter})"
        counter += 1
    return candidate


def import_strategy(data: Any, existing_names: Iterable[str] = ()) -> ImportResult:
    """Validate an export package and build a new draft strategy from it."""
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError as exc:
            return ImportResult(False, errors=[f"Invalid JSON: {exc}"])
    if not isinstance(data, dict):
        return ImportResult(False, errors=["Import data must be an object"])

    errors: list[str] = []
    warnings: list[str] = []

    version = data.get("version")
    if version is None:
        errors.append("Missing export version")
    elif str(version) != EXPORT_VERSION:
        warnings.append(f"Export version {version} differs from {EXPORT_VERSION}; import may be incomplete")

    block = data.get("strategy")
    if not isinstance(block, dict):
        errors.append("Missing strategy data")
        return ImportResult(False, errors=errors, warnings=warnings)

    name = str(block.get("name") or "").strip()
    code = block.get("code")
    if not name:
        errors.append("Strategy name is required")
    if not isinstance(code, str) or not code.strip():
        errors.append("Strategy code is required")
    else:
        errors.extend(issue.message for issue in check_patterns(code))

    checksum = data.get("checksum")
    if checksum is not None and checksum != compute_checksum(block):
        warnings.append("Checksum mismatch: the strategy may have been modified after export")

    if errors:
        return ImportResult(False, errors=errors, warnings=warnings)

    existing = set(existing_names)
    final_name = _unique_name(name, existing)
    renamed_from = name if final_name != name else None
    if renamed_from:
        warnings.append(f"Strategy renamed to '{final_name}' to avoid a name conflict")

    strategy = Strategy.create(
        name=final_name,
        code=code,
        description=str(block.get("description", "")),
        config_values=dict(block.get("config_values") or {}),
        tags=list(block.get("tags") or []),
        template_category=block.get("template_category"),
        status=StrategyStatus.DRAFT,
    )
    return ImportResult(True, strategy=strategy, warnings=warnings, renamed_from=renamed_from)


def minify_code(code: str) -> str:
    """Drop blank lines and full-line comments, keeping indentation."""
    lines = []
    for line in code.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        lines.append(line.rstrip())
    return "\n".join(lines) + ("\n" if lines else "")
