from __future__ import annotations

SNAPSHOTS_ROOT = "mci_category_snapshots"
INDEX_COLLECTION = "corpus_index"
JOBS_COLLECTION = "corpus_jobs"
PROBE_COLLECTION = "corpus_probe"
META_COLLECTION = "corpus_meta"
SNAPSHOTS_GROUP = "snapshots"
KEYWORDS_GROUP = "keywords"


def index_key(category_id: str, country: str, lang: str) -> str:
    return f"{category_id}__{country}__{lang}"


def index_path(category_id: str, country: str, lang: str) -> str:
    return f"{INDEX_COLLECTION}/{index_key(category_id, country, lang)}"


def snapshots_collection(category_id: str, country: str, lang: str) -> str:
    return f"{SNAPSHOTS_ROOT}/{country}/{lang}/{category_id}/{SNAPSHOTS_GROUP}"


def snapshot_path(category_id: str, snapshot_id: str, country: str, lang: str) -> str:
    return f"{snapshots_collection(category_id, country, lang)}/{snapshot_id}"


def keywords_collection(category_id: str, snapshot_id: str, country: str, lang: str) -> str:
    return f"{snapshot_path(category_id, snapshot_id, country, lang)}/{KEYWORDS_GROUP}"


def keyword_path(category_id: str, snapshot_id: str, keyword_id: str, country: str, lang: str) -> str:
    return f"{keywords_collection(category_id, snapshot_id, country, lang)}/{keyword_id}"


def job_path(job_id: str) -> str:
    return f"{JOBS_COLLECTION}/{job_id}"


def flush_record_path(flush_id: str) -> str:
    return f"{PROBE_COLLECTION}/{flush_id}"


SCHEMA_VERSION_PATH = f"{META_COLLECTION}/schema"
WRITE_PROBE_PATH = f"{PROBE_COLLECTION}/write_probe"
