from __future__ import annotations

import argparse

import orjson

from .audit import assert_flush_allowed
from .errors import AuditBlockedError, SafetyLockError
from .migration import migrate_legacy_layout
from .runtime import open_runtime


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Irreversibly delete the whole corpus")
    parser.add_argument("--confirm", default="", help="Confirmation token: 'FLUSH <target_id>'")
    args = parser.parse_args(argv)

    with open_runtime() as rt:
        categories = rt.cfg.category_ids()
        migrate_legacy_layout(rt.store, categories, rt.snapshots.country, rt.snapshots.lang, ledger=rt.ledger)
        report = rt.audit.run_audit(categories)
        try:
            assert_flush_allowed(report)
            ok = rt.flush.flush_all(args.confirm, on_progress=print)
        except (AuditBlockedError, SafetyLockError) as e:
            print(orjson.dumps({"ok": False, "code": e.code, "error": str(e), "verdict": report.verdict}).decode())
            return 2
    print(orjson.dumps({"ok": ok, "verdict_before": report.verdict, "target_id": rt.flush.target_id}).decode())
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
