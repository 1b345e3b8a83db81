from __future__ import annotations

import argparse
import json
from pathlib import Path

from strategy_lab.strategy import Strategy, decode_share_code, export_json, import_strategy, share_code


def main() -> None:
    parser = argparse.ArgumentParser(description="Export or import shareable strategy packages")
    sub = parser.add_subparsers(dest="command", required=True)

    export_parser = sub.add_parser("export")
    export_parser.add_argument("path")
    export_parser.add_argument("--name", required=True)
    export_parser.add_argument("--description", default="")
    export_parser.add_argument("--code", action="store_true", help="print a share code instead of JSON")

    import_parser = sub.add_parser("import")
    import_parser.add_argument("source", help="package JSON file, or a share code with --code")
    import_parser.add_argument("--code", action="store_true")
    import_parser.add_argument("--existing", nargs="*", default=[])

    args = parser.parse_args()
    if args.command == "export":
        strategy = Strategy.create(args.name, Path(args.path).read_text(encoding="utf-8"), description=args.description)
        print(share_code(strategy) if args.code else export_json(strategy))
        return

    if args.code:
        data = decode_share_code(args.source)
    else:
        data = json.loads(Path(args.source).read_text(encoding="utf-8"))
    result = import_strategy(data, args.existing)
    for warning in result.warnings:
        print(f"warning: {warning}")
    if not result.success:
        for error in result.errors:
            print(f"error: {error}")
        raise SystemExit(1)
    print(json.dumps(result.strategy.to_dict(), indent=2))


if __name__ == "__main__":
    main()
