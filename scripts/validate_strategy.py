from __future__ import annotations

import argparse
import json
from pathlib import Path

from strategy_lab.sandbox.policy import validate_code


def main() -> None:
    parser = argparse.ArgumentParser(description="Validate a strategy script against the sandbox policy")
    parser.add_argument("path")
    args = parser.parse_args()

    code = Path(args.path).read_text(encoding="utf-8")
    result = validate_code(code)
    print(json.dumps(result.to_dict(), indent=2))
    if not result.is_valid:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
