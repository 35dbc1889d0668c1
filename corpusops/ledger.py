from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import orjson

from .hashing import chain_next
from .schemas import LedgerEvent
from .settings import Settings, settings as default_settings

EVENTS_FILE = "events.jsonl"


def read_events_file(events_path: Path) -> List[Dict[str, Any]]:
    lines = events_path.read_text(encoding="utf-8").splitlines()
    return [orjson.loads(line) for line in lines if line.strip()]


def walk_chain(events: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Recompute every hash in order and report the first event that breaks the chain."""
    count = 0
    stream_id = None
    prev = ""
    break_index: Optional[int] = None
    for idx, ev in enumerate(events):
        payload = {k: v for k, v in ev.items() if k != "event_hash"}
        if ev.get("prev_event_hash", "") != prev or chain_next(prev, payload) != ev.get("event_hash"):
            break_index = idx
            break
        prev = ev["event_hash"]
        stream_id = stream_id or ev.get("stream_id")
        count += 1
    return {
        "stream_id": stream_id,
        "events": count,
        "valid": break_index is None,
        "break_index": break_index,
    }


class EventLedger:
    """Hash-chained, append-only event log; one chain per stream.

    Every event is written as one JSON line to ``<artifacts>/<stream>/events.jsonl``
    and persisted to the store's ``ledger_events`` table.
    """

    def __init__(self, store, cfg: Optional[Settings] = None) -> None:
        self.store = store
        self.cfg = cfg or default_settings
        self._last_hash_by_stream: Dict[str, str] = {}
        self._lock = threading.Lock()

    def events_path(self, stream_id: str) -> Path:
        return self.cfg.artifacts_dir_for(stream_id) / EVENTS_FILE

    def _resolve_prev_hash(self, stream_id: str) -> str:
        if stream_id in self._last_hash_by_stream:
            return self._last_hash_by_stream[stream_id]
        # Try to recover from DB
        last = self.store.get_last_ledger_hash(stream_id)
        return last or ""

    def log_event(
        self,
        stream_id: str,
        step: str,
        status: str = "ok",
        details: Optional[Dict[str, Any]] = None,
    ) -> LedgerEvent:
        with self._lock:
            ts_iso = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
            ts_ns = time.perf_counter_ns()
            prev_hash = self._resolve_prev_hash(stream_id)

            # Build event without event_hash first
            event_dict = {
                "stream_id": stream_id,
                "step": step,
                "status": status,
                "ts_iso": ts_iso,
                "ts_ns": ts_ns,
                "details": details or {},
                "prev_event_hash": prev_hash,
            }
            event_hash = chain_next(prev_hash, event_dict)
            event_full = LedgerEvent(**{**event_dict, "event_hash": event_hash})

            line = orjson.dumps(event_full.model_dump(), option=orjson.OPT_SORT_KEYS)
            with open(self.events_path(stream_id), "ab") as f:
                f.write(line + b"\n")

            self.store.append_ledger(event_full)
            self._last_hash_by_stream[stream_id] = event_hash
            return event_full

    def verify(self, stream_id: str, source: str = "file") -> Dict[str, Any]:
        """Walk the chain of the JSONL copy (``file``) or the table copy (``store``)."""
        if source == "store":
            events = [e.model_dump() for e in self.store.get_ledger_events(stream_id)]
        elif source == "file":
            path = self.events_path(stream_id)
            events = read_events_file(path) if path.exists() else []
        else:
            raise ValueError(f"unknown ledger source: {source}")
        return {**walk_chain(events), "source": source}
