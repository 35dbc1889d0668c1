from __future__ import annotations

import datetime as _dt
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Set

from . import paths
from .errors import JobStateError
from .schemas import PHASE_ORDER, JobRecord, LogLevel
from .storage import deep_merge

_LEDGER_STATUS = {"INFO": "ok", "WARN": "warn", "ERROR": "error"}

# Job ids currently held by a writer in this process
_claims: Set[str] = set()
_claims_lock = threading.Lock()


def _utc_now_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat()


class JobControl:
    """Durable job records; the only channel observers have into a run."""

    def __init__(self, store, ledger=None, log_cap: int = 1000) -> None:
        self.store = store
        self.ledger = ledger
        self.log_cap = max(1, int(log_cap))

    @classmethod
    def from_settings(cls, store, cfg, ledger=None) -> "JobControl":
        return cls(store, ledger=ledger, log_cap=int(cfg.jobs.get("log_cap", 1000)))

    def start_job(self, kind: str, scope: str, initial_state: Optional[Dict[str, Any]] = None) -> str:
        job_id = f"job_{kind.lower()}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"
        now = _utc_now_iso()
        data = JobRecord(job_id=job_id, kind=kind, scope=scope, started_at=now, updated_at=now).model_dump()
        if initial_state:
            data = deep_merge(data, initial_state)
        record = JobRecord.model_validate(data)
        self.store.set(paths.job_path(job_id), record.model_dump())
        if self.ledger is not None:
            self.ledger.log_event(job_id, step="job.start", status="ok", details={"kind": kind, "scope": scope})
        return job_id

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        data = self.store.get(paths.job_path(job_id))
        return JobRecord.model_validate(data) if data else None

    def _normalize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data["updated_at"] = _utc_now_iso()
        record = JobRecord.model_validate(data)
        p = record.progress
        for field in ("flushed", "rebuilt", "verified"):
            value = max(0, getattr(p, field))
            if p.total > 0:
                value = min(value, p.total)
            setattr(p, field, value)
        return record.model_dump()

    def _mutate(self, job_id: str, fn: Callable[[Dict[str, Any]], Dict[str, Any]]) -> JobRecord:
        data = self.store.update(paths.job_path(job_id), lambda current: self._normalize(fn(current)))
        if data is None:
            raise JobStateError(f"unknown job: {job_id}")
        return JobRecord.model_validate(data)

    def update_progress(self, job_id: str, partial: Dict[str, Any]) -> JobRecord:
        return self._mutate(job_id, lambda current: deep_merge(current, partial))

    def append_log(self, job_id: str, message: str, level: LogLevel = "INFO") -> JobRecord:
        line = f"[{_utc_now_iso()}] [{level}] {message}"

        def _append(current: Dict[str, Any]) -> Dict[str, Any]:
            current["logs"] = (list(current.get("logs") or []) + [line])[-self.log_cap:]
            return current

        record = self._mutate(job_id, _append)
        if self.ledger is not None:
            self.ledger.log_event(
                job_id,
                step="job.log",
                status=_LEDGER_STATUS.get(level, "ok"),
                details={"level": level, "msg": message},
            )
        return record

    def set_phase(self, job_id: str, phase: str) -> JobRecord:
        if phase not in PHASE_ORDER:
            raise JobStateError(f"unknown phase: {phase}")

        def _advance(current: Dict[str, Any]) -> Dict[str, Any]:
            old = current.get("phase") or PHASE_ORDER[0]
            if PHASE_ORDER.index(phase) < PHASE_ORDER.index(old) and phase != "REBUILDING":
                raise JobStateError(f"{job_id}: phase cannot move back from {old} to {phase}")
            current["phase"] = phase
            return current

        record = self._mutate(job_id, _advance)
        self.append_log(job_id, f"Phase -> {phase}")
        return record

    def finish_job(self, job_id: str, status: str, message: str) -> JobRecord:
        self.update_progress(
            job_id,
            {"status": status, "message": message, "current_category": None, "finished_at": _utc_now_iso()},
        )
        level = "ERROR" if status == "FAILED" else ("WARN" if status in ("PARTIAL", "STOPPED") else "INFO")
        return self.append_log(job_id, f"Finished {status}: {message}", level)

    def request_stop(self, job_id: str) -> bool:
        accepted = False

        def _flag(current: Dict[str, Any]) -> Dict[str, Any]:
            nonlocal accepted
            if JobRecord.model_validate(current).is_terminal:
                return current
            current["stop_requested"] = True
            accepted = True
            return current

        self._mutate(job_id, _flag)
        if not accepted:
            return False
        self.append_log(job_id, "Stop requested", "WARN")
        return True

    def is_stop_requested(self, job_id: str) -> bool:
        job = self.get_job(job_id)
        return bool(job and job.stop_requested)

    def list_jobs(self) -> List[JobRecord]:
        jobs: List[JobRecord] = []
        cursor = None
        while True:
            page = self.store.query(paths.JOBS_COLLECTION, limit=200, start_after=cursor)
            jobs.extend(JobRecord.model_validate(d.data) for d in page)
            if len(page) < 200:
                break
            cursor = page[-1].path
        return jobs

    def get_latest_job_for_scope(self, scope: str, kind: Optional[str] = None) -> Optional[JobRecord]:
        matches = [j for j in self.list_jobs() if j.scope == scope and (kind is None or j.kind == kind)]
        if not matches:
            return None
        return max(matches, key=lambda j: j.started_at)

    def claim(self, job_id: str) -> None:
        with _claims_lock:
            if job_id in _claims:
                raise JobStateError(f"{job_id} already has an active writer")
            _claims.add(job_id)

    def release(self, job_id: str) -> None:
        with _claims_lock:
            _claims.discard(job_id)
