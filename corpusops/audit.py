from __future__ import annotations

import datetime as _dt
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from . import paths
from .errors import AuditBlockedError
from .schemas import AuditCategoryResult, AuditReport, derive_verdict, lifecycle_rank
from .snapshots import SnapshotStore
from .storage import StoredDocument

__all__ = [
    "SnapshotCandidate",
    "SnapshotAudit",
    "assert_flush_allowed",
    "derive_verdict",
    "normalize_snapshot_meta",
    "rank_candidates",
]


class SnapshotCandidate(BaseModel):
    path: str
    snapshot_id: str
    category_id: Optional[str] = None
    lifecycle: str = "UNKNOWN"
    created_at_iso: Optional[str] = None
    valid: int = 0


def _utc_now_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat()


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        v = data.get(k)
        if v not in (None, ""):
            return v
    return None


def normalize_snapshot_meta(doc: StoredDocument) -> SnapshotCandidate:
    """Read snapshot metadata written by any generation of the writer."""
    data = doc.data or {}
    stats = data.get("stats") if isinstance(data.get("stats"), dict) else {}
    valid = _first(stats, "valid_total", "validTotal")
    if valid is None:
        valid = _first(data, "valid_total", "validTotal") or 0
    lifecycle = _first(data, "lifecycle", "status") or "UNKNOWN"
    return SnapshotCandidate(
        path=doc.path,
        snapshot_id=str(_first(data, "snapshot_id", "snapshotId") or doc.id),
        category_id=_first(data, "category_id", "categoryId"),
        lifecycle=str(lifecycle).upper(),
        created_at_iso=_first(data, "created_at_iso", "createdAtIso", "createdAt"),
        valid=int(valid),
    )


def _ts_key(iso: Optional[str]) -> float:
    if not iso:
        return 0.0
    try:
        return _dt.datetime.fromisoformat(iso.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def rank_candidates(candidates: List[SnapshotCandidate]) -> List[SnapshotCandidate]:
    """Most certified lifecycle first, newest first within a lifecycle."""
    return sorted(candidates, key=lambda c: (lifecycle_rank(c.lifecycle), -_ts_key(c.created_at_iso)))


def assert_flush_allowed(report: AuditReport) -> None:
    if report.verdict == "NO_GO":
        raise AuditBlockedError("Flush blocked by audit: " + "; ".join(report.blockers + report.errors))


class SnapshotAudit:
    """Resolves the authoritative snapshot for each category.

    Resolution order: canonical index pointer, then the snapshot it names,
    then a bounded group scan over every ``snapshots`` collection.
    """

    def __init__(
        self,
        store,
        snapshots: SnapshotStore,
        target_id: str,
        scan_limit: int = 200,
        ledger=None,
    ) -> None:
        self.store = store
        self.snapshots = snapshots
        self.target_id = target_id
        self.scan_limit = int(scan_limit)
        self.ledger = ledger

    def _result(self, category_id: str, source: str, cand: SnapshotCandidate, active: Optional[str], reason: str) -> AuditCategoryResult:
        return AuditCategoryResult(
            category_id=category_id,
            source=source,
            active_snapshot_id=active,
            snapshot_path=cand.path,
            snapshot_id=cand.snapshot_id,
            lifecycle=cand.lifecycle,
            valid=cand.valid,
            created_at_iso=cand.created_at_iso,
            ok=True,
            reason=reason,
        )

    def scan_candidates(self, category_id: str) -> List[SnapshotCandidate]:
        docs = self.store.query(paths.SNAPSHOTS_GROUP, limit=self.scan_limit, group=True)
        marker = f"/{category_id}/{paths.SNAPSHOTS_GROUP}/"
        found: List[SnapshotCandidate] = []
        for doc in docs:
            cand = normalize_snapshot_meta(doc)
            if cand.category_id == category_id or marker in doc.path:
                found.append(cand)
        return found

    def resolve_category(self, category_id: str) -> AuditCategoryResult:
        pointer = self.store.get(self.snapshots.pointer_path(category_id)) or {}
        active = pointer.get("active_snapshot_id")
        if active:
            snap_path = self.snapshots.snapshot_path(category_id, active)
            data = self.store.get(snap_path)
            if data is not None:
                cand = normalize_snapshot_meta(StoredDocument(path=snap_path, id=active, data=data))
                return self._result(category_id, "INDEX_POINTER", cand, active, "resolved via index pointer")
            reason = f"dangling pointer to {active}"
        else:
            reason = "no index pointer"

        candidates = self.scan_candidates(category_id)
        if candidates:
            best = rank_candidates(candidates)[0]
            return self._result(
                category_id,
                "SNAPSHOT_SCAN",
                best,
                active,
                f"{reason}; selected {best.snapshot_id} from {len(candidates)} scanned candidates",
            )
        return AuditCategoryResult(category_id=category_id, source="NONE", active_snapshot_id=active, reason=f"{reason}; no snapshot found")

    def run_audit(self, category_ids: List[str]) -> AuditReport:
        results: List[AuditCategoryResult] = []
        for cat in category_ids:
            try:
                results.append(self.resolve_category(cat))
            except Exception as e:
                results.append(
                    AuditCategoryResult(
                        category_id=cat,
                        source="NONE",
                        reason=f"internal error: {type(e).__name__}",
                        error=str(e) or type(e).__name__,
                    )
                )
        report = AuditReport(ts=_utc_now_iso(), target_id=self.target_id, categories=results)
        if self.ledger is not None:
            self.ledger.log_event(
                "audit",
                step="audit.done",
                status="error" if report.errors else "ok",
                details={"verdict": report.verdict, "found": report.found, "errors": report.errors},
            )
        return report
