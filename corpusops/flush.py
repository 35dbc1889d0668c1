from __future__ import annotations

import datetime as _dt
import time
from typing import Callable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from . import paths
from .cache import RuntimeCache, runtime_cache
from .errors import BatchCommitError, CorpusOpsError, SafetyLockError
from .schemas import FlushRecord
from .storage import StoredDocument

ProgressFn = Callable[[str], None]


def _noop(_msg: str) -> None:
    return None


class FlushEngine:
    """Irreversible bulk deletion of the corpus.

    Two passes: nested record groups first (cross-cutting group queries, so
    nesting depth does not matter), then flat root collections. Each pass pages
    by document path with a start-after cursor, so a preserved record never
    stalls pagination.
    """

    def __init__(
        self,
        store,
        *,
        target_id: str,
        dev_target: Optional[str] = None,
        batch_size: int = 200,
        yield_ms: int = 50,
        warning_threshold: int = 500000,
        deep_groups: Sequence[str] = ("keywords", "snapshots"),
        root_collections: Sequence[str] = (),
        jobs_collection: str = paths.JOBS_COLLECTION,
        ledger=None,
        cache: Optional[RuntimeCache] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.target_id = target_id
        self.dev_target = dev_target
        self.batch_size = int(batch_size)
        self.yield_ms = int(yield_ms)
        self.warning_threshold = int(warning_threshold)
        self.deep_groups = list(deep_groups)
        self.root_collections = list(root_collections)
        self.jobs_collection = jobs_collection
        self.ledger = ledger
        self.cache = cache or runtime_cache
        self._sleep = sleep
        self._total = 0
        self._warned = False

    @classmethod
    def from_settings(cls, store, cfg, ledger=None, **overrides) -> "FlushEngine":
        f = cfg.flush
        kwargs = dict(
            target_id=str(cfg.store["target_id"]),
            dev_target=f.get("dev_target"),
            batch_size=int(f.get("batch_size", 200)),
            yield_ms=int(f.get("yield_ms", 50)),
            warning_threshold=int(f.get("warning_threshold", 500000)),
            deep_groups=list(f.get("deep_groups", ["keywords", "snapshots"])),
            root_collections=list(f.get("root_collections", [])),
            ledger=ledger,
        )
        kwargs.update(overrides)
        return cls(store, **kwargs)

    def required_token(self) -> str:
        return f"FLUSH {self.target_id}"

    def check_token(self, confirmation_token: str) -> None:
        if self.dev_target and self.target_id == self.dev_target:
            return
        if confirmation_token != self.required_token():
            raise SafetyLockError(
                f"SAFETY_LOCK: target mismatch or invalid token. Required: '{self.required_token()}'"
            )

    def flush_all(
        self,
        confirmation_token: str,
        on_progress: Optional[ProgressFn] = None,
        exclude_id: Optional[str] = None,
    ) -> bool:
        emit = on_progress or _noop
        try:
            self.check_token(confirmation_token)
        except SafetyLockError:
            emit(f"[FLUSH] ERROR Safety guard: target {self.target_id} not allowed.")
            raise

        flush_id = f"flush_{int(time.time() * 1000)}"
        self._total = 0
        self._warned = False

        def _emit(msg: str, status: str = "ok") -> None:
            emit(msg)
            if self.ledger is not None:
                self.ledger.log_event(flush_id, step="flush.progress", status=status, details={"line": msg})

        _emit(f"[FLUSH] START flush_id={flush_id} target={self.target_id}")
        try:
            for group in self.deep_groups:
                self.delete_group(group, _emit)
            for name in self.root_collections:
                keep = exclude_id if name == self.jobs_collection else None
                self.delete_collection(name, _emit, exclude_id=keep)

            cleared = self.cache.reset_all("FLUSH_OP")
            _emit(f"[FLUSH] CACHE_RESET cleared={cleared} epoch={self.cache.epoch}")

            record = FlushRecord(
                flush_id=flush_id,
                target_id=self.target_id,
                timestamp=_dt.datetime.now(tz=_dt.timezone.utc).isoformat(),
                total_deleted=self._total,
                excluded_id=exclude_id,
                status="COMPLETE",
            )
            self.store.set(paths.flush_record_path(flush_id), record.model_dump())
            if self.ledger is not None:
                self.ledger.log_event(flush_id, step="flush.record", status="ok", details=record.model_dump())
            _emit(f"[FLUSH] DONE total_deleted={self._total}")
            return True
        except (CorpusOpsError, SQLAlchemyError) as e:
            _emit(f"[FLUSH] ERROR name=global msg={e}", status="error")
            return False

    def delete_group(self, group: str, emit: ProgressFn) -> int:
        emit(f"[FLUSH] GROUP_START name={group}")
        total = self._delete_pages(group, group=True, label=f"GROUP:{group}", emit=emit)
        emit(f"[FLUSH] GROUP_DONE name={group} total_deleted={total}")
        return total

    def delete_collection(self, name: str, emit: ProgressFn, exclude_id: Optional[str] = None) -> int:
        suffix = f" (keeping {exclude_id})" if exclude_id else ""
        emit(f"[FLUSH] COLLECTION_START name={name}{suffix}")
        total = self._delete_pages(name, group=False, label=f"COL:{name}", emit=emit, exclude_id=exclude_id)
        emit(f"[FLUSH] COLLECTION_DONE name={name} total_deleted={total}")
        return total

    def _delete_pages(
        self,
        name: str,
        *,
        group: bool,
        label: str,
        emit: ProgressFn,
        exclude_id: Optional[str] = None,
    ) -> int:
        total = 0
        cursor = None
        while True:
            page = self.store.query(name, limit=self.batch_size, start_after=cursor, group=group)
            if not page:
                break
            doomed = [d for d in page if not (exclude_id and d.id == exclude_id)]
            if doomed:
                deleted = self.commit_batch_safe(doomed, label, emit)
                total += deleted
                self._total += deleted
                emit(f"[FLUSH] BATCH {label} deleted_this_batch={deleted} total_deleted={total}")
                if not self._warned and self._total > self.warning_threshold:
                    self._warned = True
                    emit(f"[FLUSH] WARN Huge deletion detected: {self._total} records so far ({label})")
            if len(page) < self.batch_size:
                break
            cursor = page[-1].path
            self._sleep(self.yield_ms / 1000.0)
        return total

    def commit_batch_safe(self, docs: List[StoredDocument], context: str, emit: ProgressFn) -> int:
        """Delete ``docs`` atomically, falling back to one-by-one deletes."""
        if not docs:
            return 0
        try:
            self.store.batch_delete([d.path for d in docs])
            return len(docs)
        except BatchCommitError as e:
            emit(f"[FLUSH] WARN Batch commit failed ({e}). Switching to serial delete for {len(docs)} items in {context}.")

        deleted = 0
        for d in docs:
            try:
                self.store.delete(d.path)
                deleted += 1
            except (CorpusOpsError, SQLAlchemyError) as inner:
                emit(f"[FLUSH] ERROR failed to delete {d.path}: {inner}")
        return deleted
