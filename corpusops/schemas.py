from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, model_validator


JobStatus = Literal["INITIALIZING", "RUNNING", "PARTIAL", "STOPPED", "FAILED", "COMPLETED"]
JobPhase = Literal["IDLE", "PREFLIGHT", "FLUSHING", "REBUILDING", "VERIFYING", "COMPLETED"]
LogLevel = Literal["INFO", "WARN", "ERROR"]
AuditSource = Literal["INDEX_POINTER", "SNAPSHOT_SCAN", "NONE"]
Verdict = Literal["EMPTY_DB", "READY_FOR_RESET", "NO_GO"]
RowStatus = Literal["UNVERIFIED", "VALID", "ZERO", "LOW", "ERROR"]

PHASE_ORDER = ("IDLE", "PREFLIGHT", "FLUSHING", "REBUILDING", "VERIFYING", "COMPLETED")
TERMINAL_STATUSES = frozenset({"FAILED", "COMPLETED"})
RESUMABLE_STATUSES = frozenset({"STOPPED", "PARTIAL"})

# Most certified first; anything not listed ranks after DRAFT
LIFECYCLE_ORDER = (
    "CERTIFIED_FULL",
    "CERTIFIED_LITE",
    "CERTIFIED",
    "VALIDATED_LITE",
    "VALIDATED",
    "HYDRATED",
    "DRAFT",
)


def lifecycle_rank(lifecycle: Optional[str]) -> int:
    try:
        return LIFECYCLE_ORDER.index(lifecycle or "")
    except ValueError:
        return len(LIFECYCLE_ORDER)


class LedgerEvent(BaseModel):
    stream_id: str
    step: str
    status: Literal["ok", "warn", "error"]
    ts_iso: str  # UTC ISO 8601
    ts_ns: int   # monotonic clock nanoseconds
    details: Dict[str, Any] = Field(default_factory=dict)
    prev_event_hash: str
    event_hash: str


class JobProgress(BaseModel):
    total: int = 0
    flushed: int = 0
    rebuilt: int = 0
    verified: int = 0


class JobRecord(BaseModel):
    job_id: str
    kind: str
    scope: str
    status: JobStatus = "INITIALIZING"
    phase: JobPhase = "IDLE"
    progress: JobProgress = Field(default_factory=JobProgress)
    logs: List[str] = Field(default_factory=list)
    message: str = ""
    failed_categories: List[str] = Field(default_factory=list)
    current_category: Optional[str] = None
    stop_requested: bool = False
    started_at: str
    updated_at: str
    finished_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class KeywordRow(BaseModel):
    keyword_id: str
    keyword_text: str
    anchor_id: str = "unknown"
    active: bool = True
    status: RowStatus = "UNVERIFIED"
    volume: Optional[int] = None
    updated_at_iso: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.active and (self.status == "VALID" or (self.volume or 0) > 0)


class SnapshotStats(BaseModel):
    anchors_total: int = 0
    keywords_total: int = 0
    valid_total: int = 0
    zero_total: int = 0
    validated_total: int = 0
    low_total: int = 0
    error_total: int = 0
    per_anchor_total_counts: Dict[str, int] = Field(default_factory=dict)
    per_anchor_valid_counts: Dict[str, int] = Field(default_factory=dict)


class SnapshotDoc(BaseModel):
    snapshot_id: str
    category_id: str
    country_code: str
    language_code: str
    lifecycle: str = "DRAFT"
    created_at_iso: str
    updated_at_iso: str
    anchors: List[str] = Field(default_factory=list)
    stats: SnapshotStats = Field(default_factory=SnapshotStats)
    metrics: Dict[str, Any] = Field(default_factory=dict)
    source_job_id: Optional[str] = None


class IndexPointer(BaseModel):
    category_id: str
    country_code: str
    language_code: str
    active_snapshot_id: str
    snapshot_status: str = "DRAFT"
    keyword_totals: Dict[str, int] = Field(default_factory=dict)
    source: str = "REBUILD"
    updated_at: str


class AuditCategoryResult(BaseModel):
    category_id: str
    source: AuditSource = "NONE"
    active_snapshot_id: Optional[str] = None
    snapshot_path: Optional[str] = None
    snapshot_id: Optional[str] = None
    lifecycle: str = "UNKNOWN"
    valid: int = 0
    created_at_iso: Optional[str] = None
    ok: bool = False
    reason: str = ""
    error: Optional[str] = None

    @model_validator(mode="after")
    def _unresolved_has_no_snapshot(self) -> "AuditCategoryResult":
        if self.source == "NONE":
            self.ok = False
            self.snapshot_id = None
        return self


def derive_verdict(categories: List[AuditCategoryResult]) -> Verdict:
    """Project a verdict from category results; internal errors take precedence."""
    if any(c.error for c in categories):
        return "NO_GO"
    if not any(c.source != "NONE" for c in categories):
        return "EMPTY_DB"
    return "READY_FOR_RESET"


class AuditReport(BaseModel):
    ts: str
    target_id: str
    categories: List[AuditCategoryResult] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def errors(self) -> List[str]:
        return [f"[{c.category_id}] {c.error}" for c in self.categories if c.error]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def verdict(self) -> Verdict:
        return derive_verdict(self.categories)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def blockers(self) -> List[str]:
        errs = self.errors
        return [f"Audit internal errors: {len(errs)}"] if errs else []

    @property
    def found(self) -> int:
        return sum(1 for c in self.categories if c.source != "NONE")


class ProviderOutcome(BaseModel):
    """Normalized result of one externally visible provider call."""

    ok: bool
    status: int
    rate_limited: bool = False
    task_code: Optional[int] = None
    error: Optional[str] = None
    data: Any = None


class RebuildResult(BaseModel):
    ok: bool
    category_id: str
    snapshot_id: Optional[str] = None
    valid: int = 0
    total: int = 0
    error: Optional[str] = None


class BackfillResult(BaseModel):
    ok: bool
    fixed_count: int = 0
    valid_count: int = 0
    error: Optional[str] = None


class ProbeResult(BaseModel):
    ok: bool
    latency_ms: int
    ts_iso: str
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class FlushRecord(BaseModel):
    type: str = "FULL_FLUSH"
    flush_id: str
    target_id: str
    timestamp: str
    operator: str = "CLI"
    total_deleted: int
    excluded_id: Optional[str] = None
    status: Literal["COMPLETE", "FAILED"]
