from __future__ import annotations

import datetime as _dt
from typing import Any, Dict, List, Optional

from . import paths

SCHEMA_VERSION = 2

_INDEX_FIELDS = {
    "activeSnapshotId": "active_snapshot_id",
    "snapshotStatus": "snapshot_status",
    "keywordTotals": "keyword_totals",
    "categoryId": "category_id",
    "updatedAt": "updated_at",
}
_SNAPSHOT_FIELDS = {
    "snapshotId": "snapshot_id",
    "categoryId": "category_id",
    "countryCode": "country_code",
    "languageCode": "language_code",
    "createdAtIso": "created_at_iso",
    "updatedAtIso": "updated_at_iso",
    "sourceJobId": "source_job_id",
}
_ROW_FIELDS = {
    "keywordId": "keyword_id",
    "keyword": "keyword_text",
    "keywordText": "keyword_text",
    "anchorId": "anchor_id",
    "updatedAtIso": "updated_at_iso",
}


def _utc_now_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat()


def _rename(data: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    out = dict(data)
    for old, new in mapping.items():
        if old in out:
            value = out.pop(old)
            out.setdefault(new, value)
    return out


def legacy_index_paths(category_id: str, country: str, lang: str) -> List[str]:
    ids = [f"{category_id}_{country}_{lang}", category_id, f"{category_id}_{country.lower()}_{lang}"]
    canonical = paths.index_path(category_id, country, lang)
    out = []
    for doc_id in dict.fromkeys(ids):
        p = f"{paths.INDEX_COLLECTION}/{doc_id}"
        if p != canonical:
            out.append(p)
    return out


def legacy_snapshot_collections(category_id: str, country: str, lang: str) -> List[str]:
    candidates = [
        f"{paths.SNAPSHOTS_ROOT}/{country.lower()}/{lang}/{category_id}/{paths.SNAPSHOTS_GROUP}",
        f"{paths.SNAPSHOTS_ROOT}/{country}/{lang}/categories/{category_id}/{paths.SNAPSHOTS_GROUP}",
    ]
    canonical = paths.snapshots_collection(category_id, country, lang)
    return [c for c in dict.fromkeys(candidates) if c != canonical]


def current_version(store) -> int:
    marker = store.get(paths.SCHEMA_VERSION_PATH) or {}
    try:
        return int(marker.get("version", 1))
    except (TypeError, ValueError):
        return 1


def _move_snapshot(store, src: str, dst: str, category_id: str, country: str, lang: str) -> int:
    data = _rename(store.get(src) or {}, _SNAPSHOT_FIELDS)
    doc_id = dst.rsplit("/", 1)[-1]
    now = _utc_now_iso()
    data.setdefault("snapshot_id", doc_id)
    data["category_id"] = category_id
    data["country_code"] = country
    data["language_code"] = lang
    data.setdefault("created_at_iso", data.get("createdAt") or now)
    data.setdefault("updated_at_iso", data["created_at_iso"])

    children = store.list_under(src)
    for child in children:
        child_data = child.data
        if child.path.startswith(f"{src}/{paths.KEYWORDS_GROUP}/"):
            child_data = _rename(child_data, _ROW_FIELDS)
            child_data.setdefault("keyword_id", child.id)
        store.set(dst + child.path[len(src):], child_data)
    store.set(dst, data)
    for child in children:
        store.delete(child.path)
    store.delete(src)
    return len(children)


def _move_index(store, src: str, dst: str, category_id: str, country: str, lang: str) -> Optional[str]:
    data = _rename(store.get(src) or {}, _INDEX_FIELDS)
    if not data.get("active_snapshot_id"):
        store.delete(src)
        return None
    data["category_id"] = category_id
    data["country_code"] = country
    data["language_code"] = lang
    data.setdefault("updated_at", _utc_now_iso())
    store.set(dst, data)
    store.delete(src)
    return str(data["active_snapshot_id"])


def migrate_legacy_layout(
    store,
    category_ids: List[str],
    country: str = "IN",
    lang: str = "en",
    ledger=None,
) -> List[str]:
    """Move records stored under historical path spellings to canonical paths.

    Idempotent: once ``corpus_meta/schema`` carries the current version the
    call returns immediately.
    """
    logs: List[str] = []
    version = current_version(store)
    if version >= SCHEMA_VERSION:
        logs.append(f"[MIGRATE] schema v{version} is current; nothing to do")
        return logs

    moved_snapshots = 0
    moved_pointers = 0
    for cat in category_ids:
        for legacy in legacy_snapshot_collections(cat, country, lang):
            for doc in store.query(legacy, limit=10000):
                dst = paths.snapshot_path(cat, doc.id, country, lang)
                if store.exists(dst):
                    logs.append(f"[MIGRATE][SKIP] {doc.path}: canonical snapshot already present")
                    continue
                rows = _move_snapshot(store, doc.path, dst, cat, country, lang)
                moved_snapshots += 1
                logs.append(f"[MIGRATE] snapshot {doc.path} -> {dst} ({rows} sub-documents)")

        canonical = paths.index_path(cat, country, lang)
        for legacy in legacy_index_paths(cat, country, lang):
            if not store.exists(legacy):
                continue
            if store.exists(canonical):
                store.delete(legacy)
                logs.append(f"[MIGRATE][DROP] {legacy}: canonical pointer already present")
                continue
            active = _move_index(store, legacy, canonical, cat, country, lang)
            if active:
                moved_pointers += 1
                logs.append(f"[MIGRATE] pointer {legacy} -> {canonical} (active={active})")
            else:
                logs.append(f"[MIGRATE][DROP] {legacy}: no active snapshot id")

    store.set(
        paths.SCHEMA_VERSION_PATH,
        {"version": SCHEMA_VERSION, "migrated_at": _utc_now_iso(), "previous_version": version},
    )
    logs.append(f"[MIGRATE] v{version} -> v{SCHEMA_VERSION}: {moved_snapshots} snapshots, {moved_pointers} pointers")
    if ledger is not None:
        ledger.log_event(
            "migration",
            step="migration.done",
            status="ok",
            details={"from": version, "to": SCHEMA_VERSION, "snapshots": moved_snapshots, "pointers": moved_pointers},
        )
    return logs
