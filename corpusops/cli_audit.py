from __future__ import annotations

import argparse

import orjson

from .migration import migrate_legacy_layout
from .runtime import open_runtime


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Audit category snapshots and index pointers")
    parser.add_argument("--category", action="append", help="Audit only this category (repeatable)")
    parser.add_argument("--repair", action="store_true", help="Rewrite missing or dangling index pointers")
    args = parser.parse_args(argv)

    with open_runtime() as rt:
        categories = args.category or rt.cfg.category_ids()
        migration_log = migrate_legacy_layout(
            rt.store, categories, rt.snapshots.country, rt.snapshots.lang, ledger=rt.ledger
        )
        report = rt.audit.run_audit(categories)
        summary = {
            "migration": migration_log,
            "report": report.model_dump(),
        }
        if args.repair:
            summary["repair"] = rt.repair.repair(report)
            summary["after_repair"] = rt.audit.run_audit(categories).model_dump()
    print(orjson.dumps(summary, option=orjson.OPT_SORT_KEYS | orjson.OPT_INDENT_2).decode())
    return 1 if report.verdict == "NO_GO" else 0


if __name__ == "__main__":
    raise SystemExit(main())
