from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from .audit import SnapshotAudit
from .flush import FlushEngine
from .jobs import JobControl
from .ledger import EventLedger
from .orchestrator import ResetRebuildOrchestrator
from .preflight import PreflightChecks
from .provider import KeywordDataClient, resolve_credentials
from .ratelimit import TaskExecutor
from .rebuild import RebuildPipeline
from .repair import IndexRepairService
from .settings import Settings, settings as default_settings
from .snapshots import SnapshotStore
from .storage import DocumentStore


class Runtime:
    """One wired set of services; owns the process-wide task executor."""

    def __init__(self, cfg: Settings, store: DocumentStore, ledger: EventLedger, executor: TaskExecutor, client) -> None:
        self.cfg = cfg
        self.store = store
        self.ledger = ledger
        self.executor = executor
        self.client = client
        self.snapshots = SnapshotStore.from_settings(store, cfg)
        self.pipeline = RebuildPipeline(self.snapshots, client, cfg.categories)
        self.audit = SnapshotAudit(store, self.snapshots, target_id=str(cfg.store["target_id"]), ledger=ledger)
        self.repair = IndexRepairService(self.snapshots, self.pipeline, ledger=ledger)
        self.flush = FlushEngine.from_settings(store, cfg, ledger=ledger)
        self.jobs = JobControl.from_settings(store, cfg, ledger=ledger)
        self.preflight = PreflightChecks(store, client)
        self.orchestrator = ResetRebuildOrchestrator(
            self.jobs,
            self.preflight,
            self.flush,
            self.pipeline,
            self.snapshots,
            cfg.category_ids(),
            credentials_fn=lambda: getattr(client, "credentials", None) or resolve_credentials(),
        )

    @classmethod
    def open(cls, cfg: Optional[Settings] = None, *, store: Optional[DocumentStore] = None, client=None, **executor_overrides) -> "Runtime":
        cfg = cfg or default_settings
        store = store or DocumentStore.from_settings(cfg)
        ledger = EventLedger(store, cfg)
        executor = TaskExecutor.from_settings(cfg, ledger=ledger, **executor_overrides)
        if client is None:
            client = KeywordDataClient(executor, cfg=cfg)
        return cls(cfg, store, ledger, executor, client)

    def close(self) -> None:
        self.executor.shutdown()
        self.store.dispose()


@contextmanager
def open_runtime(cfg: Optional[Settings] = None, **kwargs) -> Iterator[Runtime]:
    rt = Runtime.open(cfg, **kwargs)
    try:
        yield rt
    finally:
        rt.close()
