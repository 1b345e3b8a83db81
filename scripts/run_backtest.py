from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np

from strategy_lab.backtest import BacktestEngine
from strategy_lab.config import load_config
from strategy_lab.data import load_bars_csv
from strategy_lab.runtime.context import build_audit_log, build_store, create_run_context
from strategy_lab.sandbox.bridge import SandboxBridge
from strategy_lab.storage import BACKTEST_CONFIGS, BACKTEST_RESULTS, STRATEGIES
from strategy_lab.strategy import Bar, Strategy, StrategyStatus


def synthetic_bars(count: int, seed: int, start_price: float = 100.0) -> list[Bar]:
    rng = np.random.default_rng(seed)
    closes = start_price * np.exp(np.cumsum(rng.normal(0.0, 0.01, count)))
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    bars = []
    previous = start_price
    for index, close in enumerate(closes):
        high = max(previous, close) * (1 + abs(rng.normal(0.0, 0.002)))
        low = min(previous, close) * (1 - abs(rng.normal(0.0, 0.002)))
        bars.append(
            Bar(
                time=start + timedelta(hours=index),
                open=float(previous),
                high=float(high),
                low=float(low),
                close=float(close),
                volume=float(rng.uniform(1, 100)),
            )
        )
        previous = close
    return bars


def main() -> None:
    parser = argparse.ArgumentParser(description="Backtest the configured strategy")
    parser.add_argument("--config", required=True)
    parser.add_argument("--data", help="CSV with timestamp/open/high/low/close/volume columns")
    parser.add_argument("--synthetic", type=int, default=0, help="generate N random-walk bars instead of reading data")
    parser.add_argument("--seed", type=int, default=7)
    parser.add_argument("--output")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log = logging.getLogger("run_backtest")

    config_path = Path(args.config)
    config = load_config(config_path)
    context = create_run_context(config_path, config.run_id_prefix)
    audit = build_audit_log(config, context)
    store = build_store(config.storage)

    data_path = args.data or config.backtest.data_path
    if args.synthetic:
        bars = synthetic_bars(args.synthetic, args.seed)
    elif data_path:
        bars = load_bars_csv(data_path)
    else:
        raise SystemExit("Provide --data, --synthetic N or backtest.data_path in the config")

    code = Path(config.strategy.path).read_text(encoding="utf-8")
    strategy = Strategy.create(
        config.strategy.name,
        code,
        description=config.strategy.description,
        config_values=dict(config.strategy.params),
        sandbox_policy=config.sandbox,
    )
    store.put(STRATEGIES, strategy.id, strategy.to_dict())

    backtest_config = config.backtest_config()
    store.put(BACKTEST_CONFIGS, context.run_id, backtest_config.to_dict())

    def progress(percent: float, message: str) -> None:
        log.info("%5.1f%% %s", percent, message)

    with SandboxBridge(config.sandbox, audit_log=audit) as bridge:
        engine = BacktestEngine(bridge, audit_log=audit)
        result = engine.run(strategy, bars, backtest_config, progress=progress, backtest_id=context.run_id)

    store.put(BACKTEST_RESULTS, result.id, result.to_dict())
    if result.status.value == "completed":
        store.put(STRATEGIES, strategy.id, strategy.with_status(StrategyStatus.BACKTESTED).to_dict())

    summary = {
        "id": result.id,
        "status": result.status.value,
        "error": result.error,
        "bars": len(bars),
        "final_equity": result.final_equity,
        "metrics": result.metrics.to_dict(),
        "bar_errors": len(result.bar_errors),
    }
    print(json.dumps(summary, indent=2))
    if args.output:
        output = Path(args.output)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")


if __name__ == "__main__":
    main()
