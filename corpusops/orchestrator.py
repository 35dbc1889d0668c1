from __future__ import annotations

from typing import Callable, List

import orjson

from .errors import (
    INFRASTRUCTURE_ERRORS,
    CorpusOpsError,
    JobStateError,
    JobStoppedError,
    RateLimitExhaustedError,
)
from .provider import Credentials, resolve_credentials
from .schemas import RESUMABLE_STATUSES, JobRecord


class ResetRebuildOrchestrator:
    """Phase state machine for a full corpus reset.

    PREFLIGHT -> FLUSHING -> REBUILDING -> VERIFYING -> COMPLETED. A resumed
    run starts at REBUILDING from the first category not yet rebuilt. Every
    transition and category outcome goes to the job log.
    """

    def __init__(
        self,
        jobs,
        preflight,
        flush_engine,
        pipeline,
        snapshots,
        category_ids: List[str],
        credentials_fn: Callable[[], Credentials] = resolve_credentials,
        provider_kind: str = "google",
    ) -> None:
        self.jobs = jobs
        self.preflight = preflight
        self.flush_engine = flush_engine
        self.pipeline = pipeline
        self.snapshots = snapshots
        self.category_ids = list(category_ids)
        self.credentials_fn = credentials_fn
        self.provider_kind = provider_kind

    def run(self, job_id: str, resume_from_rebuild: bool = False, confirmation_token: str = "") -> JobRecord:
        job = self.jobs.get_job(job_id)
        if job is None:
            raise JobStateError(f"unknown job: {job_id}")
        if resume_from_rebuild:
            if job.is_terminal:
                raise JobStateError(f"{job_id} is {job.status}; only {sorted(RESUMABLE_STATUSES)} jobs can be resumed")
        elif job.status != "INITIALIZING":
            raise JobStateError(f"{job_id} already started (status {job.status})")

        self.jobs.claim(job_id)
        try:
            return self._run(job, resume_from_rebuild, confirmation_token)
        finally:
            self.jobs.release(job_id)

    def _log(self, job_id: str, message: str, level: str = "INFO") -> None:
        self.jobs.append_log(job_id, message, level)

    def _fail(self, job_id: str, message: str) -> JobRecord:
        return self.jobs.finish_job(job_id, "FAILED", message)

    def _run(self, job: JobRecord, resume: bool, token: str) -> JobRecord:
        job_id = job.job_id
        total = len(self.category_ids)
        start_state = {"status": "RUNNING", "stop_requested": False, "progress": {"total": total}}
        if not resume:
            start_state["failed_categories"] = []
        self.jobs.update_progress(job_id, start_state)
        self._log(job_id, f"Run started: categories={total} resume={resume}")

        creds = self.credentials_fn()
        if not creds.usable:
            return self._fail(job_id, f"No usable provider credentials (mode={creds.mode})")
        self._log(job_id, f"Credentials resolved: mode={creds.mode} source={creds.source}")

        try:
            if not resume:
                self.jobs.set_phase(job_id, "PREFLIGHT")
                probes = self.preflight.run_all(self.provider_kind)
                failed = [f"{name}: {probe.error}" for name, probe in probes.items() if not probe.ok]
                if failed:
                    return self._fail(job_id, "Preflight failed: " + "; ".join(failed))
                self._log(job_id, "Preflight OK: " + ", ".join(f"{n}={p.latency_ms}ms" for n, p in probes.items()))

                self.jobs.set_phase(job_id, "FLUSHING")
                flushed = self.flush_engine.flush_all(
                    token,
                    on_progress=lambda line: self._log(job_id, line),
                    exclude_id=job_id,
                )
                if not flushed:
                    return self._fail(job_id, "Flush failed; see log for the failing collection")
                self.jobs.update_progress(job_id, {"progress": {"flushed": total}})

            self.jobs.set_phase(job_id, "REBUILDING")
            halted = self._rebuild(job_id, resume)
            if halted is not None:
                return halted

            self.jobs.set_phase(job_id, "VERIFYING")
            verified = self._verify(job_id)

            self.jobs.set_phase(job_id, "COMPLETED")
            final = self.jobs.get_job(job_id)
            failed_cats = final.failed_categories if final else []
            message = f"Rebuilt {total - len(failed_cats)}/{total}, verified {verified}/{total}."
            if failed_cats:
                message += " Failed categories: " + orjson.dumps(failed_cats).decode()
            return self.jobs.finish_job(job_id, "COMPLETED", message)
        except JobStoppedError as e:
            return self.jobs.finish_job(job_id, "STOPPED", str(e))
        except CorpusOpsError as e:
            return self._fail(job_id, f"{e.code}: {e}")
        except Exception as e:
            return self._fail(job_id, f"Unhandled {type(e).__name__}: {e}")

    def _rebuild(self, job_id: str, resume: bool):
        job = self.jobs.get_job(job_id)
        total = len(self.category_ids)
        start = job.progress.rebuilt if resume else 0
        failed = list(job.failed_categories)
        if start:
            self._log(job_id, f"Resuming rebuild at category {start + 1}/{total}")

        for idx in range(start, total):
            if self.jobs.is_stop_requested(job_id):
                raise JobStoppedError(f"Stopped by operator after {idx}/{total} categories")

            cat = self.category_ids[idx]
            self.jobs.update_progress(
                job_id, {"current_category": cat, "message": f"Rebuilding {cat} ({idx + 1}/{total})"}
            )
            try:
                result = self.pipeline.rebuild_category(cat, job_id)
                if result.ok:
                    self._log(job_id, f"[{cat}] rebuilt {result.snapshot_id} valid={result.valid}/{result.total}")
                    if cat in failed:
                        failed.remove(cat)
                else:
                    self._log(job_id, f"[{cat}] rebuild incomplete: {result.error}", "WARN")
                    if cat not in failed:
                        failed.append(cat)
            except RateLimitExhaustedError as e:
                self._log(job_id, f"[{cat}] {e.code}: {e}", "ERROR")
                self.jobs.update_progress(job_id, {"failed_categories": failed})
                return self.jobs.finish_job(
                    job_id, "PARTIAL", f"Rate limit exhausted at {cat}; resume continues from {idx + 1}/{total}"
                )
            except INFRASTRUCTURE_ERRORS:
                self.jobs.update_progress(job_id, {"failed_categories": failed})
                raise
            except Exception as e:
                self._log(job_id, f"[{cat}] failed: {type(e).__name__}: {e}", "ERROR")
                if cat not in failed:
                    failed.append(cat)

            self.jobs.update_progress(job_id, {"progress": {"rebuilt": idx + 1}, "failed_categories": failed})
        return None

    def _verify(self, job_id: str) -> int:
        verified = 0
        for cat in self.category_ids:
            snap = self.snapshots.resolve_active_snapshot(cat)
            if snap is not None:
                verified += 1
                self._log(job_id, f"[{cat}] verified {snap.snapshot_id} ({snap.lifecycle})")
            else:
                self._log(job_id, f"[{cat}] no active snapshot", "WARN")
            self.jobs.update_progress(job_id, {"progress": {"verified": verified}})
        return verified
