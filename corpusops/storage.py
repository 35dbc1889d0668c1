from __future__ import annotations

import datetime as _dt
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import orjson
from pydantic import BaseModel, Field
from sqlalchemy import (
    BigInteger,
    Column,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    func,
    select,
    text,
)
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import BatchCommitError, StoreUnavailableError
from .schemas import LedgerEvent

Base = declarative_base()


def _utc_now_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat()


class DocumentRow(Base):
    __tablename__ = "documents"
    path = Column(String, primary_key=True)
    parent = Column(String, nullable=False, index=True)
    grp = Column(String, nullable=False, index=True)
    doc_id = Column(String, nullable=False)
    data_json = Column(Text, nullable=False)
    updated_at = Column(String, nullable=False)


class LedgerRow(Base):
    __tablename__ = "ledger_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    stream_id = Column(String, nullable=False, index=True)
    step = Column(String, nullable=False)
    status = Column(String, nullable=False)
    ts_iso = Column(String, nullable=False)
    ts_ns = Column(BigInteger, nullable=False)
    prev_event_hash = Column(String, nullable=False)
    event_hash = Column(String, nullable=False)
    details_json = Column(Text, nullable=False)


class StoredDocument(BaseModel):
    path: str
    id: str
    data: Dict[str, Any] = Field(default_factory=dict)


def split_path(path: str) -> Tuple[str, str, str]:
    """Return (parent collection path, collection id, document id)."""
    segments = [s for s in (path or "").strip("/").split("/") if s]
    if len(segments) < 2:
        raise ValueError(f"not a document path: {path!r}")
    return "/".join(segments[:-1]), segments[-2], segments[-1]


def deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class DocumentStore:
    """Path-addressed JSON document store on top of SQLAlchemy.

    Documents live in one table keyed by their slash-separated path. ``parent``
    holds the collection path and ``grp`` the collection id, so a collection
    query and a cross-cutting group query are both single index scans, no
    matter how deeply the collection is nested.
    """

    def __init__(self, url: str, *, max_batch_writes: int = 450, echo: bool = False) -> None:
        self.url = url
        self.max_batch_writes = int(max_batch_writes)
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, echo=echo, future=True, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, future=True)
        self._write_lock = threading.RLock()
        try:
            Base.metadata.create_all(self.engine)
        except OperationalError as e:
            raise StoreUnavailableError(f"Store init failed for {url}: {e}") from e

    @classmethod
    def from_settings(cls, cfg) -> "DocumentStore":
        return cls(cfg.store_url(), max_batch_writes=int(cfg.store.get("max_batch_writes", 450)))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.SessionLocal() as session:
                yield session
        except OperationalError as e:
            raise StoreUnavailableError(f"Store unavailable: {e}") from e

    # Point reads / writes

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            row = session.get(DocumentRow, path)
            return orjson.loads(row.data_json) if row else None

    def exists(self, path: str) -> bool:
        return self.get(path) is not None

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> Dict[str, Any]:
        parent, grp, doc_id = split_path(path)
        with self._write_lock, self._session() as session:
            row = session.get(DocumentRow, path)
            if row is not None and merge:
                data = deep_merge(orjson.loads(row.data_json), data)
            payload = orjson.dumps(data, option=orjson.OPT_SORT_KEYS).decode()
            if row is None:
                session.add(
                    DocumentRow(
                        path=path,
                        parent=parent,
                        grp=grp,
                        doc_id=doc_id,
                        data_json=payload,
                        updated_at=_utc_now_iso(),
                    )
                )
            else:
                row.data_json = payload
                row.updated_at = _utc_now_iso()
            session.commit()
        return data

    def update(
        self, path: str, fn: Callable[[Dict[str, Any]], Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        """Apply ``fn`` to the stored document and write the result back.

        The read and the write share one transaction with the row locked, so a
        concurrent writer either lands before the read or after the commit.
        Returns None when the document does not exist.
        """
        stmt = select(DocumentRow).where(DocumentRow.path == path).with_for_update()
        with self._write_lock, self._session() as session:
            with session.begin():
                row = session.execute(stmt).scalars().first()
                if row is None:
                    return None
                data = fn(orjson.loads(row.data_json))
                row.data_json = orjson.dumps(data, option=orjson.OPT_SORT_KEYS).decode()
                row.updated_at = _utc_now_iso()
        return data

    def delete(self, path: str) -> bool:
        with self._session() as session:
            result = session.execute(delete(DocumentRow).where(DocumentRow.path == path))
            session.commit()
            return bool(result.rowcount)

    def batch_delete(self, paths: Sequence[str]) -> int:
        """Delete all paths in one transaction; all or nothing."""
        paths = list(paths)
        if not paths:
            return 0
        if len(paths) > self.max_batch_writes:
            raise BatchCommitError(
                f"Batch of {len(paths)} deletes exceeds limit of {self.max_batch_writes}"
            )
        try:
            with self.SessionLocal() as session:
                result = session.execute(delete(DocumentRow).where(DocumentRow.path.in_(paths)))
                session.commit()
                return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            raise BatchCommitError(f"Batch commit failed: {e}") from e

    # Queries

    def query(
        self,
        name: str,
        limit: int,
        start_after: Optional[str] = None,
        group: bool = False,
    ) -> List[StoredDocument]:
        """Page through a collection (or a collection group) ordered by path."""
        column = DocumentRow.grp if group else DocumentRow.parent
        stmt = select(DocumentRow).where(column == name.strip("/"))
        if start_after:
            stmt = stmt.where(DocumentRow.path > start_after)
        stmt = stmt.order_by(DocumentRow.path.asc()).limit(int(limit))
        with self._session() as session:
            rows = session.execute(stmt).scalars().all()
            return [
                StoredDocument(path=r.path, id=r.doc_id, data=orjson.loads(r.data_json))
                for r in rows
            ]

    def count(self, name: str, group: bool = False) -> int:
        column = DocumentRow.grp if group else DocumentRow.parent
        with self._session() as session:
            stmt = select(func.count()).select_from(DocumentRow).where(column == name.strip("/"))
            return int(session.execute(stmt).scalar_one())

    def list_under(self, prefix: str) -> List[StoredDocument]:
        """All documents strictly below a document or collection path."""
        prefix = prefix.strip("/") + "/"
        stmt = (
            select(DocumentRow)
            .where(func.substr(DocumentRow.path, 1, len(prefix)) == prefix)
            .order_by(DocumentRow.path.asc())
        )
        with self._session() as session:
            rows = session.execute(stmt).scalars().all()
            return [
                StoredDocument(path=r.path, id=r.doc_id, data=orjson.loads(r.data_json))
                for r in rows
            ]

    def ping(self) -> bool:
        with self._session() as session:
            session.execute(text("SELECT 1"))
        return True

    # Ledger persistence

    def append_ledger(self, event: LedgerEvent) -> None:
        with self._session() as session:
            session.add(
                LedgerRow(
                    stream_id=event.stream_id,
                    step=event.step,
                    status=event.status,
                    ts_iso=event.ts_iso,
                    ts_ns=event.ts_ns,
                    prev_event_hash=event.prev_event_hash,
                    event_hash=event.event_hash,
                    details_json=orjson.dumps(event.details, option=orjson.OPT_SORT_KEYS).decode(),
                )
            )
            session.commit()

    def get_last_ledger_hash(self, stream_id: str) -> Optional[str]:
        with self._session() as session:
            stmt = (
                select(LedgerRow)
                .where(LedgerRow.stream_id == stream_id)
                .order_by(LedgerRow.id.desc())
                .limit(1)
            )
            row = session.execute(stmt).scalars().first()
            return row.event_hash if row else None

    def get_ledger_steps(self, stream_id: str) -> List[str]:
        with self._session() as session:
            stmt = select(LedgerRow.step).where(LedgerRow.stream_id == stream_id).order_by(LedgerRow.id.asc())
            return list(session.execute(stmt).scalars().all())

    def get_ledger_events(self, stream_id: str) -> List[LedgerEvent]:
        with self._session() as session:
            stmt = select(LedgerRow).where(LedgerRow.stream_id == stream_id).order_by(LedgerRow.id.asc())
            return [
                LedgerEvent(
                    stream_id=r.stream_id,
                    step=r.step,
                    status=r.status,
                    ts_iso=r.ts_iso,
                    ts_ns=r.ts_ns,
                    details=orjson.loads(r.details_json),
                    prev_event_hash=r.prev_event_hash,
                    event_hash=r.event_hash,
                )
                for r in session.execute(stmt).scalars().all()
            ]

    def dispose(self) -> None:
        self.engine.dispose()
