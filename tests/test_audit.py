from __future__ import annotations

import pytest

from corpusops import paths
from corpusops.audit import (
    SnapshotAudit,
    SnapshotCandidate,
    assert_flush_allowed,
    derive_verdict,
    normalize_snapshot_meta,
    rank_candidates,
)
from corpusops.errors import AuditBlockedError
from corpusops.schemas import AuditCategoryResult, AuditReport
from corpusops.storage import StoredDocument


def _resolved(cat: str) -> AuditCategoryResult:
    return AuditCategoryResult(category_id=cat, source="INDEX_POINTER", snapshot_id=f"snap_{cat}", ok=True)


def _missing(cat: str) -> AuditCategoryResult:
    return AuditCategoryResult(category_id=cat, source="NONE")


def test_verdict_projection():
    assert derive_verdict([_missing("a"), _missing("b")]) == "EMPTY_DB"
    assert derive_verdict([]) == "EMPTY_DB"
    assert derive_verdict([_missing("a"), _resolved("b")]) == "READY_FOR_RESET"

    errored = AuditCategoryResult(category_id="c", source="NONE", error="boom")
    assert derive_verdict([_resolved("a"), _resolved("b"), errored]) == "NO_GO"
    assert derive_verdict([errored]) == "NO_GO"


def test_verdict_is_recomputed_from_categories():
    report = AuditReport(ts="t", target_id="x", categories=[_resolved("a"), _missing("b")])
    assert report.verdict == "READY_FOR_RESET"
    again = AuditReport.model_validate(report.model_dump())
    assert again.verdict == report.verdict

    report.categories.append(AuditCategoryResult(category_id="c", error="read failed"))
    assert report.verdict == "NO_GO"
    assert report.errors == ["[c] read failed"]


def test_unresolved_result_carries_no_snapshot():
    r = AuditCategoryResult(category_id="a", source="NONE", snapshot_id="snap_x", ok=True)
    assert r.ok is False
    assert r.snapshot_id is None


def test_ranking_prefers_certification_over_recency():
    draft = SnapshotCandidate(path="p/1", snapshot_id="draft", lifecycle="DRAFT", created_at_iso="2025-06-01T00:00:00Z")
    full = SnapshotCandidate(path="p/2", snapshot_id="full", lifecycle="CERTIFIED_FULL", created_at_iso="2020-01-01T00:00:00Z")
    assert rank_candidates([draft, full])[0].snapshot_id == "full"
    assert rank_candidates([full, draft])[0].snapshot_id == "full"


def test_ranking_prefers_newer_within_lifecycle():
    older = SnapshotCandidate(path="p/1", snapshot_id="t1", lifecycle="VALIDATED", created_at_iso="2024-01-01T00:00:00+00:00")
    newer = SnapshotCandidate(path="p/2", snapshot_id="t2", lifecycle="VALIDATED", created_at_iso="2024-03-01T00:00:00+00:00")
    assert rank_candidates([older, newer])[0].snapshot_id == "t2"


def test_unknown_lifecycle_ranks_after_draft():
    odd = SnapshotCandidate(path="p/1", snapshot_id="odd", lifecycle="ARCHIVED", created_at_iso="2026-01-01T00:00:00Z")
    draft = SnapshotCandidate(path="p/2", snapshot_id="draft", lifecycle="DRAFT", created_at_iso="2020-01-01T00:00:00Z")
    assert rank_candidates([odd, draft])[0].snapshot_id == "draft"


def test_normalize_snapshot_meta_reads_legacy_fields():
    doc = StoredDocument(
        path="mci_category_snapshots/IN/en/shaving/snapshots/s1",
        id="s1",
        data={"categoryId": "shaving", "status": "certified", "createdAtIso": "2024-02-02T00:00:00Z", "validTotal": 7},
    )
    meta = normalize_snapshot_meta(doc)
    assert meta.snapshot_id == "s1"
    assert meta.category_id == "shaving"
    assert meta.lifecycle == "CERTIFIED"
    assert meta.valid == 7


def test_audit_resolves_through_pointer(store, snapshots, seed_snapshot):
    snap = seed_snapshot("A", "snap_a1")
    snapshots.upsert_pointer("A", snap.snapshot_id, "VALIDATED", {"valid": 1, "total": 1}, source="TEST")

    report = SnapshotAudit(store, snapshots, target_id="t").run_audit(["A", "B"])
    a, b = report.categories
    assert a.source == "INDEX_POINTER" and a.ok and a.snapshot_id == "snap_a1"
    assert b.source == "NONE" and not b.ok
    assert report.verdict == "READY_FOR_RESET"
    assert report.found == 1


def test_dangling_pointer_falls_back_to_ranked_scan(store, snapshots, seed_snapshot):
    seed_snapshot("A", "snap_draft", lifecycle="DRAFT", created_at_iso="2025-05-01T00:00:00+00:00")
    seed_snapshot("A", "snap_cert", lifecycle="CERTIFIED_FULL", created_at_iso="2023-05-01T00:00:00+00:00")
    seed_snapshot("AB", "snap_other", lifecycle="CERTIFIED_FULL", created_at_iso="2026-05-01T00:00:00+00:00")
    snapshots.upsert_pointer("A", "snap_gone", "VALIDATED", {}, source="TEST")

    result = SnapshotAudit(store, snapshots, target_id="t").resolve_category("A")
    assert result.source == "SNAPSHOT_SCAN"
    assert result.snapshot_id == "snap_cert"
    assert result.active_snapshot_id == "snap_gone"
    assert "dangling" in result.reason


def test_empty_store_is_empty_db(store, snapshots):
    report = SnapshotAudit(store, snapshots, target_id="t").run_audit(["A", "B", "C"])
    assert report.verdict == "EMPTY_DB"
    assert all(c.source == "NONE" for c in report.categories)


def test_internal_error_is_isolated_and_blocks_flush(store, snapshots, seed_snapshot, monkeypatch):
    seed_snapshot("A", "snap_a1")
    snapshots.upsert_pointer("A", "snap_a1", "VALIDATED", {}, source="TEST")
    real_get = store.get
    broken = paths.index_path("B", "IN", "en")

    def flaky_get(path):
        if path == broken:
            raise RuntimeError("index read failed")
        return real_get(path)

    monkeypatch.setattr(store, "get", flaky_get)
    report = SnapshotAudit(store, snapshots, target_id="t").run_audit(["A", "B", "C"])

    assert [c.source for c in report.categories] == ["INDEX_POINTER", "NONE", "NONE"]
    assert report.categories[1].error == "index read failed"
    assert report.verdict == "NO_GO"
    with pytest.raises(AuditBlockedError):
        assert_flush_allowed(report)


def test_audit_is_recorded_in_ledger(store, snapshots, ledger):
    SnapshotAudit(store, snapshots, target_id="t", ledger=ledger).run_audit(["A"])
    assert store.get_ledger_steps("audit") == ["audit.done"]
