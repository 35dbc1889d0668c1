from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from corpusops.hashing import keyword_id
from corpusops.ledger import EventLedger
from corpusops.provider import Credentials
from corpusops.schemas import KeywordRow, ProviderOutcome, SnapshotDoc
from corpusops.settings import CategoryCfg, settings
from corpusops.snapshots import SnapshotStore
from corpusops.storage import DocumentStore


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProvider:
    """Scripted stand-in for KeywordDataClient.

    ``failures`` maps a category id to the exception its next fetch raises.
    Keywords without an entry in ``volumes`` get ``default_volume``.
    """

    def __init__(self) -> None:
        self.volumes: Dict[str, int] = {}
        self.default_volume = 100
        self.failures: Dict[str, Exception] = {}
        self.on_fetch: Optional[Callable[[str], None]] = None
        self.calls: List[str] = []
        self.credentials = Credentials(login="user", password="secret", mode="DIRECT", source="test")
        self.ping_outcome = ProviderOutcome(ok=True, status=200)
        self.pings = 0

    def fetch_volumes(self, kind: str, keywords: List[str], context: str = "") -> Dict[str, int]:
        self.calls.append(context)
        if self.on_fetch is not None:
            self.on_fetch(context)
        category = context.split(":", 1)[-1]
        if category in self.failures:
            raise self.failures[category]
        return {" ".join(k.lower().split()): self.volumes.get(k, self.default_volume) for k in keywords}

    def ping(self, kind: str = "google") -> ProviderOutcome:
        self.pings += 1
        return self.ping_outcome


@pytest.fixture
def cfg(tmp_path: Path):
    return settings.model_copy(update={"artifacts_base_dir": str(tmp_path / "artifacts")})


@pytest.fixture
def store(tmp_path: Path):
    s = DocumentStore(f"sqlite:///{tmp_path / 'corpus.db'}")
    yield s
    s.dispose()


@pytest.fixture
def ledger(store, cfg):
    return EventLedger(store, cfg)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def snapshots(store):
    return SnapshotStore(store, country="IN", lang="en")


@pytest.fixture
def categories() -> List[CategoryCfg]:
    return [
        CategoryCfg(id=cid, name=cid, seed_keywords=[f"{cid.lower()} one", f"{cid.lower()} two"])
        for cid in ("A", "B", "C")
    ]


@pytest.fixture
def seed_snapshot(snapshots):
    """Write a snapshot and its keyword rows directly, bypassing the pipeline."""

    def _seed(
        category_id: str,
        snapshot_id: str,
        lifecycle: str = "VALIDATED",
        created_at_iso: str = "2024-01-01T00:00:00+00:00",
        statuses: Optional[List[str]] = None,
    ) -> SnapshotDoc:
        snap = SnapshotDoc(
            snapshot_id=snapshot_id,
            category_id=category_id,
            country_code="IN",
            language_code="en",
            lifecycle=lifecycle,
            created_at_iso=created_at_iso,
            updated_at_iso=created_at_iso,
        )
        snapshots.write_snapshot(snap)
        rows = []
        for i, status in enumerate(statuses if statuses is not None else ["VALID"]):
            text = f"{category_id.lower()} keyword {i}"
            rows.append(
                KeywordRow(
                    keyword_id=keyword_id(text),
                    keyword_text=text,
                    anchor_id=category_id,
                    status=status,
                    volume=50 if status == "VALID" else None,
                )
            )
        snapshots.write_keyword_rows(category_id, snapshot_id, rows)
        return snap

    return _seed
