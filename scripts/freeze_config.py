from __future__ import annotations

import argparse
import json
from pathlib import Path

from strategy_lab.config import compute_config_hash, freeze_config, load_config, verify_config_lock
from strategy_lab.sandbox.policy import validate_code


def main() -> None:
    parser = argparse.ArgumentParser(description="Validate a lab config's strategy and pin both by hash")
    parser.add_argument("config", help="Path to the lab YAML config")
    parser.add_argument("--lock", default=None, help="Lock file path (defaults to <config>.lock.json)")
    args = parser.parse_args()

    path = Path(args.config)
    config = load_config(path)
    strategy_path = Path(config.strategy.path)
    if not strategy_path.exists():
        raise SystemExit(f"Strategy script not found: {strategy_path}")

    # a lock must never pin a script the sandbox would refuse to load
    result = validate_code(strategy_path.read_text(encoding="utf-8"), config.sandbox.allowed_imports)
    if not result.is_valid:
        print(json.dumps([issue.to_dict() for issue in result.errors], indent=2))
        raise SystemExit(1)

    lock_path = freeze_config(path, args.lock, strategy_path=strategy_path)
    status = "ok" if verify_config_lock(path, lock_path) else "mismatch"
    print(f"Frozen {path} -> {lock_path} ({status})")
    print(f"  config   {compute_config_hash(path)}")
    print(f"  strategy {compute_config_hash(strategy_path)}  {config.strategy.name} ({strategy_path.name})")
    for warning in result.warnings:
        print(f"  warning: {warning}")


if __name__ == "__main__":
    main()
