from __future__ import annotations

import datetime as _dt
import time
import uuid
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from . import paths
from .cache import RuntimeCache, runtime_cache
from .errors import CorpusOpsError
from .schemas import ProbeResult


def _utc_now_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat()


class PreflightChecks:
    """Connectivity probes run before any destructive step."""

    def __init__(
        self,
        store,
        client,
        provider_ttl_s: float = 60.0,
        cache: Optional[RuntimeCache] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.client = client
        self.provider_ttl_s = float(provider_ttl_s)
        self._cache = (cache or runtime_cache).cache_for("preflight")
        self._clock = clock

    def check_provider(self, kind: str = "google") -> ProbeResult:
        key = f"provider:{kind}"
        hit = self._cache.get(key)
        if hit is not None and self._clock() - hit[0] < self.provider_ttl_s:
            return hit[1]

        started = self._clock()
        try:
            outcome = self.client.ping(kind)
            result = ProbeResult(
                ok=outcome.ok,
                latency_ms=int((self._clock() - started) * 1000),
                ts_iso=_utc_now_iso(),
                error=None if outcome.ok else (outcome.error or f"HTTP {outcome.status}"),
                details={"http": outcome.status, "kind": kind},
            )
        except CorpusOpsError as e:
            result = ProbeResult(
                ok=False,
                latency_ms=int((self._clock() - started) * 1000),
                ts_iso=_utc_now_iso(),
                error=f"{e.code}: {e}",
                details={"kind": kind},
            )
        # failures are re-probed on the next call
        if result.ok:
            self._cache[key] = (self._clock(), result)
        return result

    def check_store_read(self) -> ProbeResult:
        started = self._clock()
        try:
            self.store.query(paths.JOBS_COLLECTION, limit=1)
        except (CorpusOpsError, SQLAlchemyError) as e:
            return ProbeResult(ok=False, latency_ms=int((self._clock() - started) * 1000), ts_iso=_utc_now_iso(), error=str(e))
        return ProbeResult(ok=True, latency_ms=int((self._clock() - started) * 1000), ts_iso=_utc_now_iso())

    def check_store_write(self) -> ProbeResult:
        started = self._clock()
        nonce = uuid.uuid4().hex
        try:
            self.store.set(paths.WRITE_PROBE_PATH, {"nonce": nonce, "ts": _utc_now_iso()})
            echoed = (self.store.get(paths.WRITE_PROBE_PATH) or {}).get("nonce")
        except (CorpusOpsError, SQLAlchemyError) as e:
            return ProbeResult(ok=False, latency_ms=int((self._clock() - started) * 1000), ts_iso=_utc_now_iso(), error=str(e))
        ok = echoed == nonce
        return ProbeResult(
            ok=ok,
            latency_ms=int((self._clock() - started) * 1000),
            ts_iso=_utc_now_iso(),
            error=None if ok else "write probe read-back mismatch",
        )

    def run_all(self, kind: str = "google") -> Dict[str, ProbeResult]:
        return {
            "provider": self.check_provider(kind),
            "store_read": self.check_store_read(),
            "store_write": self.check_store_write(),
        }
