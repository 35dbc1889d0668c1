from __future__ import annotations

from corpusops.audit import SnapshotAudit
from corpusops.errors import ProviderUnavailableError, RateLimitExhaustedError
from corpusops.rebuild import RebuildPipeline
from corpusops.repair import IndexRepairService, is_diagnostic_snapshot_id


def _services(store, snapshots, provider, categories):
    pipeline = RebuildPipeline(snapshots, provider, categories)
    audit = SnapshotAudit(store, snapshots, target_id="t")
    return audit, IndexRepairService(snapshots, pipeline)


def test_missing_pointer_is_rewritten_from_scanned_snapshot(store, snapshots, provider, categories, seed_snapshot):
    seed_snapshot("A", "snap_a1", lifecycle="VALIDATED", statuses=["VALID", "ZERO"])
    audit, repair = _services(store, snapshots, provider, categories)

    report = audit.run_audit(["A"])
    assert report.categories[0].source == "SNAPSHOT_SCAN"
    logs = repair.repair(report)

    pointer = snapshots.get_pointer("A")
    assert pointer is not None
    assert pointer.active_snapshot_id == "snap_a1"
    assert pointer.source == "REPAIR"
    assert pointer.keyword_totals["valid"] == 1
    assert provider.calls == []
    assert any(l.startswith("[REPAIR][OK] A") for l in logs)
    assert audit.run_audit(["A"]).categories[0].source == "INDEX_POINTER"


def test_zero_valid_rows_trigger_backfill(store, snapshots, provider, categories, seed_snapshot):
    seed_snapshot("A", "snap_a1", statuses=["UNVERIFIED", "UNVERIFIED"])
    audit, repair = _services(store, snapshots, provider, categories)

    repair.repair(audit.run_audit(["A"]))

    assert provider.calls == ["backfill:A"]
    pointer = snapshots.get_pointer("A")
    assert pointer.active_snapshot_id == "snap_a1"
    assert pointer.keyword_totals["valid"] == 2
    assert snapshots.get_snapshot("A", "snap_a1").stats.valid_total == 2


def test_backfill_that_fixes_nothing_leaves_category_unrepaired(store, snapshots, provider, categories, seed_snapshot):
    seed_snapshot("A", "snap_a1", statuses=["UNVERIFIED"])
    provider.default_volume = 0
    audit, repair = _services(store, snapshots, provider, categories)

    logs = repair.repair(audit.run_audit(["A"]))

    assert snapshots.get_pointer("A") is None
    assert any("[REPAIR][SKIP] A" in l for l in logs)
    assert "skipped=1" in logs[-1]


def test_diagnostic_snapshot_is_replaced_by_a_draft(store, snapshots, provider, categories, seed_snapshot):
    seed_snapshot("A", "diag_probe_1")
    audit, repair = _services(store, snapshots, provider, categories)

    repair.repair(audit.run_audit(["A"]))

    pointer = snapshots.get_pointer("A")
    assert pointer is not None
    assert pointer.active_snapshot_id.startswith("snap_A_")
    assert provider.calls == ["backfill:A"]


def test_rate_limit_aborts_remaining_categories(store, snapshots, provider, categories, seed_snapshot):
    for cat in ("A", "B", "C"):
        seed_snapshot(cat, f"snap_{cat}", statuses=["UNVERIFIED"])
    provider.failures["B"] = RateLimitExhaustedError("google", "Rates limit per minute exceeded")
    audit, repair = _services(store, snapshots, provider, categories)

    logs = repair.repair(audit.run_audit(["A", "B", "C"]))

    assert snapshots.get_pointer("A") is not None
    assert snapshots.get_pointer("B") is None
    assert snapshots.get_pointer("C") is None
    assert provider.calls == ["backfill:A", "backfill:B"]
    assert any("[REPAIR][ABORT] DFS_RATE_LIMIT at B" in l for l in logs)
    assert logs[-1].startswith("[REPAIR] DONE repaired=1 skipped=0 failed=0 rate_limited=1 untouched=1 duration_ms=")


def test_unavailable_provider_aborts_too(store, snapshots, provider, categories, seed_snapshot):
    for cat in ("A", "B"):
        seed_snapshot(cat, f"snap_{cat}", statuses=["UNVERIFIED"])
    provider.failures["A"] = ProviderUnavailableError("google", "connection refused")
    audit, repair = _services(store, snapshots, provider, categories)

    repair.repair(audit.run_audit(["A", "B"]))

    assert provider.calls == ["backfill:A"]


def test_other_errors_are_isolated_per_category(store, snapshots, provider, categories, seed_snapshot):
    for cat in ("A", "B"):
        seed_snapshot(cat, f"snap_{cat}", statuses=["UNVERIFIED"])
    provider.failures["A"] = RuntimeError("bad row")
    audit, repair = _services(store, snapshots, provider, categories)

    logs = repair.repair(audit.run_audit(["A", "B"]))

    assert any("[REPAIR][FAIL] A" in l for l in logs)
    assert logs[-1].startswith("[REPAIR] DONE repaired=1 skipped=0 failed=1 rate_limited=0 untouched=0 ")
    assert snapshots.get_pointer("B") is not None


def test_diagnostic_id_convention():
    assert is_diagnostic_snapshot_id("diag_123")
    assert is_diagnostic_snapshot_id("snap_integrity_check")
    assert not is_diagnostic_snapshot_id("snap_shaving_1")
