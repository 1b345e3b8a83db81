from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from strategy_lab.config import load_config
from strategy_lab.data import load_bars_csv
from strategy_lab.runtime import LiveStrategyRunner, TradingMode
from strategy_lab.runtime.context import build_audit_log, build_monitor, build_store, create_run_context
from strategy_lab.sandbox.bridge import SandboxBridge
from strategy_lab.storage import STRATEGIES
from strategy_lab.strategy import Strategy


async def run(config_path: Path, data_path: Path) -> dict:
    config = load_config(config_path)
    if config.live.trading_mode != TradingMode.PAPER:
        raise SystemExit("run_paper.py only drives paper trading; set live.trading_mode to paper")
    context = create_run_context(config_path, config.run_id_prefix)
    audit = build_audit_log(config, context)
    monitor = build_monitor(config.monitoring)
    store = build_store(config.storage)

    code = Path(config.strategy.path).read_text(encoding="utf-8")
    strategy = Strategy.create(
        config.strategy.name,
        code,
        config_values=dict(config.strategy.params),
        sandbox_policy=config.sandbox,
    )
    store.put(STRATEGIES, strategy.id, strategy.to_dict())

    runner = LiveStrategyRunner(
        store,
        bridge_factory=lambda policy: SandboxBridge(policy, audit_log=audit, monitor=monitor),
        audit_log=audit,
        monitor=monitor,
    )
    await runner.initialize(config.live_config(strategy.id))
    await runner.start()
    try:
        for bar in load_bars_csv(data_path):
            await runner.process_bar(bar)
        await runner.drain()
        await runner.stop()
        return runner.state.to_dict()
    finally:
        await runner.destroy()


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay CSV bars through the paper trading runner")
    parser.add_argument("--config", required=True)
    parser.add_argument("--data", required=True)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    state = asyncio.run(run(Path(args.config), Path(args.data)))
    print(json.dumps(state, indent=2))


if __name__ == "__main__":
    main()
