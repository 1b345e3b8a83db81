import json

import pytest

from strategy_lab.strategy import (
    DEFAULT_STRATEGY_TEMPLATE,
    Strategy,
    StrategyStatus,
    compute_checksum,
    decode_share_code,
    export_strategy,
    import_strategy,
    minify_code,
    share_code,
)


def _strategy() -> Strategy:
    return Strategy.create(
        "SMA Cross",
        DEFAULT_STRATEGY_TEMPLATE,
        description="fast/slow crossover",
        config_values={"fast_period": 5},
        tags=["trend"],
        status=StrategyStatus.BACKTESTED,
    )


def test_export_then_import_creates_new_draft():
    original = _strategy()
    package = export_strategy(original)
    assert package["version"] == "2.0"
    assert package["checksum"] == compute_checksum(package["strategy"])

    result = import_strategy(json.dumps(package))
    assert result.success
    assert result.warnings == []
    imported = result.strategy
    assert imported.id != original.id
    assert imported.name == original.name
    assert imported.code == original.code
    assert imported.config_values == {"fast_period": 5}
    assert imported.status == StrategyStatus.DRAFT


def test_import_renames_on_conflict():
    package = export_strategy(_strategy())
    result = import_strategy(package, existing_names=["SMA Cross", "SMA Cross (imported)"])
    assert result.success
    assert result.strategy.name == "SMA Cross (imported 2)"
    assert result.renamed_from == "SMA Cross"


def test_tampered_package_warns_on_checksum():
    package = export_strategy(_strategy())
    package["strategy"]["description"] = "edited"
    result = import_strategy(package)
    assert result.success
    assert any("Checksum mismatch" in warning for warning in result.warnings)


def test_import_rejects_forbidden_code():
    package = export_strategy(_strategy())
    package["strategy"]["code"] = "import os\n" + package["strategy"]["code"]
    result = import_strategy(package)
    assert result.success is False
    assert result.strategy is None
    assert any("import os" in error for error in result.errors)


def test_import_requires_version_and_strategy():
    result = import_strategy({"strategy": {"name": "x", "code": "pass"}})
    assert result.success is False
    assert "Missing export version" in result.errors

    result = import_strategy({"version": "2.0"})
    assert result.success is False
    assert "Missing strategy data" in result.errors


def test_import_invalid_json():
    result = import_strategy("{not json")
    assert result.success is False
    assert result.errors[0].startswith("Invalid JSON")


def test_share_code_round_trip():
    strategy = _strategy()
    decoded = decode_share_code(share_code(strategy))
    assert decoded["strategy"]["name"] == "SMA Cross"
    assert import_strategy(decoded).success


def test_decode_share_code_rejects_garbage():
    with pytest.raises(ValueError, match="Invalid share code"):
        decode_share_code("!!!")


def test_minify_code_drops_comments_and_blank_lines():
    code = "# header\n\nclass Strategy:\n    # note\n    def on_bar(self, bar, position, orders):\n        return []\n"
    assert minify_code(code) == "class Strategy:\n    def on_bar(self, bar, position, orders):\n        return []\n"


def test_strategy_dict_round_trip_with_history():
    strategy = _strategy().with_code("class Strategy:\n    pass\n", "1.1.0", note="rewrite")
    restored = Strategy.from_dict(json.loads(json.dumps(strategy.to_dict())))
    assert restored == strategy
    assert restored.version_history[0].version == "1.0.0"
    assert restored.status == StrategyStatus.DRAFT
