from __future__ import annotations

import time
from typing import Callable, List, Optional

from .errors import ProviderUnavailableError, RateLimitExhaustedError
from .rebuild import RebuildPipeline
from .schemas import AuditCategoryResult, AuditReport
from .snapshots import SnapshotStore, keyword_totals


def is_diagnostic_snapshot_id(snapshot_id: str) -> bool:
    return snapshot_id.startswith("diag_") or "integrity" in snapshot_id


class IndexRepairService:
    """Rewrites missing or dangling index pointers from audit results.

    Categories are handled one after another. A pointer is written only once
    the snapshot it names holds at least one valid row.
    """

    def __init__(self, snapshots: SnapshotStore, pipeline: RebuildPipeline, ledger=None) -> None:
        self.snapshots = snapshots
        self.pipeline = pipeline
        self.ledger = ledger

    def repair(self, report: AuditReport) -> List[str]:
        stream_id = f"repair_{int(time.time() * 1000)}"
        started = time.monotonic()
        logs: List[str] = []
        counts = {"repaired": 0, "skipped": 0, "failed": 0, "rate_limited": 0, "untouched": 0}

        def log(line: str, status: str = "ok") -> None:
            logs.append(line)
            if self.ledger is not None:
                self.ledger.log_event(stream_id, step="repair.progress", status=status, details={"line": line})

        log(f"[REPAIR] START categories={len(report.categories)} verdict={report.verdict}")
        for idx, result in enumerate(report.categories):
            try:
                counts["repaired" if self._repair_category(result, log) else "skipped"] += 1
            except (RateLimitExhaustedError, ProviderUnavailableError) as e:
                counts["rate_limited" if isinstance(e, RateLimitExhaustedError) else "failed"] += 1
                counts["untouched"] = len(report.categories) - idx - 1
                log(f"[REPAIR][ABORT] {e.code} at {result.category_id}: {e}. Remaining categories untouched.", "error")
                break
            except Exception as e:
                counts["failed"] += 1
                log(f"[REPAIR][FAIL] {result.category_id}: {type(e).__name__}: {e}", "error")
        duration_ms = int((time.monotonic() - started) * 1000)
        summary = " ".join(f"{k}={v}" for k, v in counts.items())
        log(f"[REPAIR] DONE {summary} duration_ms={duration_ms}")
        return logs

    def _repair_category(self, result: AuditCategoryResult, log: Callable[..., None]) -> bool:
        cat = result.category_id
        snapshot_id: Optional[str] = result.snapshot_id
        if snapshot_id and is_diagnostic_snapshot_id(snapshot_id):
            log(f"[REPAIR] {cat}: ignoring diagnostic snapshot {snapshot_id}", "warn")
            snapshot_id = None
        if not snapshot_id:
            draft = self.pipeline.ensure_draft(cat)
            snapshot_id = draft.snapshot_id
            log(f"[REPAIR] {cat}: drafted {snapshot_id}")

        rows = self.snapshots.read_keyword_rows(cat, snapshot_id)
        valid_total = sum(1 for r in rows if r.is_valid)
        if valid_total == 0:
            log(f"[REPAIR] {cat}: no valid rows in {snapshot_id}; running backfill")
            backfill = self.pipeline.backfill_minimum_validation(cat, snapshot_id)
            if not backfill.ok or backfill.fixed_count == 0:
                log(f"[REPAIR][SKIP] {cat}: backfill fixed nothing ({backfill.error or 'no rows validated'})", "warn")
                return False
            rows = self.snapshots.read_keyword_rows(cat, snapshot_id)

        for line in self.snapshots.normalize_stats(cat, snapshot_id, rows):
            log(line)
        snap = self.snapshots.get_snapshot(cat, snapshot_id)
        lifecycle = snap.lifecycle if snap is not None else result.lifecycle
        totals = keyword_totals(rows)
        self.snapshots.upsert_pointer(cat, snapshot_id, lifecycle, totals, source="REPAIR")
        log(f"[REPAIR][OK] {cat} -> {snapshot_id} lifecycle={lifecycle} valid={totals['valid']}/{totals['total']}")
        return True
