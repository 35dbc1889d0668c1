from __future__ import annotations

import datetime as _dt
from typing import Dict, List, Optional

from . import paths
from .schemas import IndexPointer, KeywordRow, SnapshotDoc, SnapshotStats, lifecycle_rank

_ROW_PAGE = 500


def _utc_now_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat()


def compute_stats(rows: List[KeywordRow], anchors: Optional[List[str]] = None) -> SnapshotStats:
    per_anchor_total: Dict[str, int] = {}
    per_anchor_valid: Dict[str, int] = {}
    for r in rows:
        aid = r.anchor_id or "unknown"
        per_anchor_total[aid] = per_anchor_total.get(aid, 0) + 1
        if r.is_valid:
            per_anchor_valid[aid] = per_anchor_valid.get(aid, 0) + 1
    return SnapshotStats(
        anchors_total=len(anchors) if anchors is not None else len(per_anchor_total),
        keywords_total=len(rows),
        valid_total=sum(1 for r in rows if r.is_valid),
        zero_total=sum(1 for r in rows if r.active and (r.status == "ZERO" or (r.volume is not None and r.volume == 0))),
        validated_total=sum(1 for r in rows if r.status != "UNVERIFIED"),
        low_total=sum(1 for r in rows if r.status == "LOW"),
        error_total=sum(1 for r in rows if r.status == "ERROR"),
        per_anchor_total_counts=per_anchor_total,
        per_anchor_valid_counts=per_anchor_valid,
    )


def keyword_totals(rows: List[KeywordRow]) -> Dict[str, int]:
    return {
        "valid": sum(1 for r in rows if r.is_valid),
        "total": len(rows),
        "validated": sum(1 for r in rows if r.status != "UNVERIFIED"),
        "zero": sum(1 for r in rows if r.status == "ZERO"),
    }


class SnapshotStore:
    """Category snapshots, their keyword rows and the per-category index pointer."""

    def __init__(self, store, country: str = "IN", lang: str = "en") -> None:
        self.store = store
        self.country = country
        self.lang = lang

    @classmethod
    def from_settings(cls, store, cfg) -> "SnapshotStore":
        return cls(store, country=cfg.corpus.get("country", "IN"), lang=cfg.corpus.get("language", "en"))

    # Snapshots

    def snapshot_path(self, category_id: str, snapshot_id: str) -> str:
        return paths.snapshot_path(category_id, snapshot_id, self.country, self.lang)

    def get_snapshot(self, category_id: str, snapshot_id: str) -> Optional[SnapshotDoc]:
        data = self.store.get(self.snapshot_path(category_id, snapshot_id))
        return SnapshotDoc.model_validate(data) if data else None

    def write_snapshot(self, snap: SnapshotDoc) -> None:
        self.store.set(self.snapshot_path(snap.category_id, snap.snapshot_id), snap.model_dump())

    def read_keyword_rows(self, category_id: str, snapshot_id: str) -> List[KeywordRow]:
        collection = paths.keywords_collection(category_id, snapshot_id, self.country, self.lang)
        rows: List[KeywordRow] = []
        cursor = None
        while True:
            page = self.store.query(collection, limit=_ROW_PAGE, start_after=cursor)
            rows.extend(KeywordRow.model_validate(d.data) for d in page)
            if len(page) < _ROW_PAGE:
                break
            cursor = page[-1].path
        return rows

    def write_keyword_rows(self, category_id: str, snapshot_id: str, rows: List[KeywordRow]) -> None:
        for row in rows:
            path = paths.keyword_path(category_id, snapshot_id, row.keyword_id, self.country, self.lang)
            self.store.set(path, row.model_dump())

    def normalize_stats(self, category_id: str, snapshot_id: str, rows: List[KeywordRow]) -> List[str]:
        """Recompute a snapshot's stats from its rows and write them back."""
        logs: List[str] = []
        snap = self.get_snapshot(category_id, snapshot_id)
        if snap is None:
            logs.append(f"[STATS_NORMALIZE][FAIL] Snapshot not found {snapshot_id}")
            return logs
        snap.stats = compute_stats(rows, snap.anchors or None)
        snap.updated_at_iso = _utc_now_iso()
        self.write_snapshot(snap)
        st = snap.stats
        logs.append(f"[STATS_NORMALIZE][DONE] {snapshot_id} valid={st.valid_total}/{st.keywords_total}")
        logs.append(
            f"[VALIDATION_DONE] category={category_id} rows={st.keywords_total} valid={st.valid_total} "
            f"zero={st.zero_total} unverified={st.keywords_total - st.validated_total}"
        )
        return logs

    # Index pointers

    def pointer_path(self, category_id: str) -> str:
        return paths.index_path(category_id, self.country, self.lang)

    def get_pointer(self, category_id: str) -> Optional[IndexPointer]:
        data = self.store.get(self.pointer_path(category_id))
        if not data or not data.get("active_snapshot_id"):
            return None
        return IndexPointer.model_validate(data)

    def upsert_pointer(
        self,
        category_id: str,
        snapshot_id: str,
        lifecycle: str,
        totals: Dict[str, int],
        source: str,
    ) -> IndexPointer:
        pointer = IndexPointer(
            category_id=category_id,
            country_code=self.country,
            language_code=self.lang,
            active_snapshot_id=snapshot_id,
            snapshot_status=lifecycle,
            keyword_totals=totals,
            source=source,
            updated_at=_utc_now_iso(),
        )
        self.store.set(self.pointer_path(category_id), pointer.model_dump(), merge=True)
        return pointer

    def promote_pointer(self, snap: SnapshotDoc, totals: Dict[str, int], source: str) -> bool:
        """Point the category at ``snap`` unless the current target is more certified."""
        current = self.get_pointer(snap.category_id)
        if current and current.active_snapshot_id != snap.snapshot_id:
            if self.get_snapshot(snap.category_id, current.active_snapshot_id) is not None and (
                lifecycle_rank(current.snapshot_status) < lifecycle_rank(snap.lifecycle)
            ):
                return False
        self.upsert_pointer(snap.category_id, snap.snapshot_id, snap.lifecycle, totals, source)
        return True

    def resolve_active_snapshot(self, category_id: str) -> Optional[SnapshotDoc]:
        pointer = self.get_pointer(category_id)
        if pointer is None:
            return None
        return self.get_snapshot(category_id, pointer.active_snapshot_id)
