from __future__ import annotations

import datetime as _dt
import uuid
from typing import Any, Callable, Dict, List, Optional

from .errors import ProviderError
from .hashing import keyword_id
from .schemas import BackfillResult, KeywordRow, RebuildResult, SnapshotDoc
from .settings import CategoryCfg
from .snapshots import SnapshotStore, keyword_totals

MetricsFn = Callable[[List[KeywordRow]], Dict[str, Any]]


def _utc_now_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat()


def _norm(text: str) -> str:
    return " ".join((text or "").lower().split())


def apply_volumes(rows: List[KeywordRow], volumes: Dict[str, int]) -> int:
    """Mark rows VALID/ZERO from fetched volumes; return how many rows changed."""
    changed = 0
    now = _utc_now_iso()
    for row in rows:
        key = _norm(row.keyword_text)
        if key not in volumes:
            continue
        vol = int(volumes[key])
        status = "VALID" if vol > 0 else "ZERO"
        if row.volume != vol or row.status != status:
            changed += 1
        row.volume = vol
        row.status = status
        row.updated_at_iso = now
    return changed


class RebuildPipeline:
    """Builds one category snapshot from seed keywords and provider volumes."""

    def __init__(
        self,
        snapshots: SnapshotStore,
        client,
        categories: List[CategoryCfg],
        metrics_fn: Optional[MetricsFn] = None,
        backfill_limit: int = 100,
    ) -> None:
        self.snapshots = snapshots
        self.client = client
        self.categories = {c.id: c for c in categories}
        self.metrics_fn = metrics_fn
        self.backfill_limit = int(backfill_limit)

    def _category(self, category_id: str) -> CategoryCfg:
        cat = self.categories.get(category_id)
        if cat is None:
            raise KeyError(f"unknown category: {category_id}")
        return cat

    def ensure_draft(self, category_id: str, job_id: Optional[str] = None) -> SnapshotDoc:
        cat = self._category(category_id)
        now = _utc_now_iso()
        snapshot_id = f"snap_{category_id}_{_dt.datetime.now(tz=_dt.timezone.utc):%Y%m%dT%H%M%S}_{uuid.uuid4().hex[:6]}"
        snap = SnapshotDoc(
            snapshot_id=snapshot_id,
            category_id=category_id,
            country_code=self.snapshots.country,
            language_code=self.snapshots.lang,
            lifecycle="DRAFT",
            created_at_iso=now,
            updated_at_iso=now,
            anchors=[category_id],
            source_job_id=job_id,
        )
        self.snapshots.write_snapshot(snap)
        rows = [
            KeywordRow(keyword_id=keyword_id(kw), keyword_text=kw, anchor_id=category_id)
            for kw in dict.fromkeys(cat.seed_keywords)
        ]
        self.snapshots.write_keyword_rows(category_id, snapshot_id, rows)
        return snap

    def rebuild_category(self, category_id: str, job_id: Optional[str] = None) -> RebuildResult:
        """Draft, validate against the provider, then promote the index pointer.

        Provider errors propagate to the caller, which decides whether they
        halt the run or only fail this category.
        """
        cat = self._category(category_id)
        snap = self.ensure_draft(category_id, job_id)
        rows = self.snapshots.read_keyword_rows(category_id, snap.snapshot_id)

        volumes = self.client.fetch_volumes(
            cat.kind, [r.keyword_text for r in rows], context=f"rebuild:{category_id}"
        )
        apply_volumes(rows, volumes)
        self.snapshots.write_keyword_rows(category_id, snap.snapshot_id, rows)
        self.snapshots.normalize_stats(category_id, snap.snapshot_id, rows)

        totals = keyword_totals(rows)
        snap = self.snapshots.get_snapshot(category_id, snap.snapshot_id) or snap
        if totals["valid"] == 0:
            return RebuildResult(
                ok=False,
                category_id=category_id,
                snapshot_id=snap.snapshot_id,
                total=totals["total"],
                error="no valid keywords after validation",
            )

        snap.lifecycle = "VALIDATED"
        if self.metrics_fn is not None:
            snap.metrics = dict(self.metrics_fn(rows))
        snap.updated_at_iso = _utc_now_iso()
        self.snapshots.write_snapshot(snap)
        self.snapshots.promote_pointer(snap, totals, source="REBUILD")
        return RebuildResult(
            ok=True,
            category_id=category_id,
            snapshot_id=snap.snapshot_id,
            valid=totals["valid"],
            total=totals["total"],
        )

    def backfill_minimum_validation(self, category_id: str, snapshot_id: str) -> BackfillResult:
        """Validate a bounded number of active, unverified rows of one snapshot."""
        cat = self._category(category_id)
        rows = self.snapshots.read_keyword_rows(category_id, snapshot_id)
        pending = [r for r in rows if r.active and r.status == "UNVERIFIED"][: self.backfill_limit]
        if not pending:
            return BackfillResult(ok=True, valid_count=sum(1 for r in rows if r.is_valid))
        try:
            volumes = self.client.fetch_volumes(
                cat.kind, [r.keyword_text for r in pending], context=f"backfill:{category_id}"
            )
        except ProviderError as e:
            if e.code in ("DFS_RATE_LIMIT", "DFS_UNAVAILABLE"):
                raise
            return BackfillResult(ok=False, error=str(e))
        apply_volumes(pending, volumes)
        self.snapshots.write_keyword_rows(category_id, snapshot_id, pending)
        fixed = sum(1 for r in pending if r.is_valid)
        return BackfillResult(ok=True, fixed_count=fixed, valid_count=sum(1 for r in rows if r.is_valid))
