from __future__ import annotations

import argparse
from pathlib import Path

import orjson

from .ledger import EVENTS_FILE, EventLedger, read_events_file, walk_chain


def _print(result: dict) -> None:
    print(orjson.dumps(result, option=orjson.OPT_SORT_KEYS).decode())


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Verify an event ledger hash chain",
        epilog="A directory is searched for events.jsonl; anything else is a stream id.",
    )
    parser.add_argument("--stream", required=True, help="Stream id or directory")
    parser.add_argument(
        "--source",
        choices=("file", "store"),
        default="file",
        help="Verify the JSONL copy under artifacts or the ledger_events table",
    )
    args = parser.parse_args(argv)

    target = Path(args.stream)
    if target.is_dir():
        events = target / EVENTS_FILE
        if not events.exists():
            _print({"valid": False, "error": f"{EVENTS_FILE} not found", "path": str(events)})
            return 2
        result = {**walk_chain(read_events_file(events)), "source": "file"}
    else:
        from .runtime import open_runtime

        with open_runtime() as rt:
            result = rt.ledger.verify(args.stream, source=args.source)
        if not result["events"] and result["valid"]:
            _print({"valid": False, "error": "stream has no events", "stream": args.stream})
            return 2
    _print(result)
    return 0 if result.get("valid") else 1


if __name__ == "__main__":
    raise SystemExit(main())
