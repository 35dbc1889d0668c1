from __future__ import annotations

import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

import requests
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
    wait_random,
)

from .errors import ProviderUnavailableError, RateLimitExhaustedError
from .schemas import ProviderOutcome

_RATE_LIMIT_MARKERS = ("rates limit", "limit per minute")
_TRANSIENT_ERRORS = (requests.RequestException, OSError)


def is_rate_limited(outcome: ProviderOutcome) -> bool:
    if outcome.rate_limited or outcome.status == 429:
        return True
    err = (outcome.error or "").lower()
    return any(marker in err for marker in _RATE_LIMIT_MARKERS)


class _RetryableFailure(Exception):
    def __init__(self, reason: str, error: str = "") -> None:
        super().__init__(f"{reason}: {error}" if error else reason)
        self.reason = reason
        self.error = error


class _FifoTurns:
    """Admits callers one at a time, strictly in arrival order."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._waiting: deque = deque()

    @contextmanager
    def turn(self) -> Iterator[None]:
        ticket = object()
        with self._cond:
            self._waiting.append(ticket)
            while self._waiting[0] is not ticket:
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                self._waiting.popleft()
                self._cond.notify_all()

    @property
    def depth(self) -> int:
        return len(self._waiting)


class ProviderQueue:
    def __init__(self, kind: str, min_interval_s: float) -> None:
        self.kind = kind
        self.min_interval_s = min_interval_s
        self.last_call_ts: Optional[float] = None
        self.turns = _FifoTurns()


class TaskExecutor:
    """Serializes provider calls per kind under a shared requests-per-minute budget.

    One FIFO queue exists per provider kind and admits a single in-flight call.
    Consecutive calls are spaced ``60 / max_rpm`` seconds apart, measured from
    the end of the previous call. Rate-limit signals, 5xx responses and
    network errors back off for a full window plus jitter and retry, up to
    ``max_attempts``. Exhaustion raises :class:`RateLimitExhaustedError`, or
    :class:`ProviderUnavailableError` when the last failure was a transport
    error. Anything else is returned to the caller as-is.
    """

    def __init__(
        self,
        *,
        max_rpm: int = 10,
        max_attempts: int = 5,
        backoff_base_s: float = 60.0,
        backoff_jitter_s: float = 5.0,
        ledger=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_rpm <= 0:
            raise ValueError("max_rpm must be positive")
        self.max_rpm = int(max_rpm)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_s = float(backoff_base_s)
        self.backoff_jitter_s = float(backoff_jitter_s)
        self.min_interval_s = 60.0 / self.max_rpm
        self.ledger = ledger
        self._clock = clock
        self._sleep = sleep
        self._queues: Dict[str, ProviderQueue] = {}
        self._queues_lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_settings(cls, cfg, ledger=None, **overrides) -> "TaskExecutor":
        p = cfg.provider
        kwargs = dict(
            max_rpm=int(p["max_rpm"]),
            max_attempts=int(p.get("max_attempts", 5)),
            backoff_base_s=int(p.get("backoff_base_ms", 60000)) / 1000.0,
            backoff_jitter_s=int(p.get("backoff_jitter_ms", 5000)) / 1000.0,
            ledger=ledger,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def queue_for(self, kind: str) -> ProviderQueue:
        with self._queues_lock:
            queue = self._queues.get(kind)
            if queue is None:
                queue = ProviderQueue(kind, self.min_interval_s)
                self._queues[kind] = queue
            return queue

    def shutdown(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _log(self, kind: str, step: str, status: str, details: Dict) -> None:
        if self.ledger is not None:
            self.ledger.log_event(f"provider.{kind}", step=step, status=status, details={"kind": kind, **details})

    def execute(self, kind: str, context: str, work: Callable[[], ProviderOutcome]) -> ProviderOutcome:
        if self._closed:
            raise ProviderUnavailableError(kind, "task executor is shut down")
        queue = self.queue_for(kind)
        with queue.turns.turn():
            retrying = Retrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_fixed(self.backoff_base_s) + wait_random(0, self.backoff_jitter_s),
                retry=retry_if_exception_type(_RetryableFailure),
                sleep=self._sleep,
                before_sleep=lambda rs: self._log_backoff(kind, context, rs),
            )
            try:
                for attempt in retrying:
                    with attempt:
                        return self._attempt(queue, context, attempt.retry_state.attempt_number, work)
            except RetryError as exc:
                failure = exc.last_attempt.exception()
                reason = getattr(failure, "reason", "unknown")
                if reason in ("network", "timeout"):
                    msg = f"Provider unreachable after {self.max_attempts} attempts ({reason}): {getattr(failure, 'error', '')}"
                    self._log(kind, "provider.fail", "error", {"context": context, "code": "DFS_UNAVAILABLE", "msg": msg})
                    raise ProviderUnavailableError(kind, msg) from failure
                msg = f"Rates limit per minute exceeded after {self.max_attempts} attempts"
                self._log(kind, "provider.fail", "error", {"context": context, "code": "DFS_RATE_LIMIT", "msg": msg})
                raise RateLimitExhaustedError(kind, msg) from failure
        raise AssertionError("unreachable")  # pragma: no cover

    def _attempt(
        self,
        queue: ProviderQueue,
        context: str,
        attempt: int,
        work: Callable[[], ProviderOutcome],
    ) -> ProviderOutcome:
        wait_s = 0.0
        if queue.last_call_ts is not None:
            wait_s = max(0.0, queue.min_interval_s - (self._clock() - queue.last_call_ts))
        if wait_s > 0:
            self._sleep(wait_s)

        base = {"context": context, "attempt": attempt, "wait_ms": int(wait_s * 1000)}
        started = self._clock()
        try:
            outcome = work()
        except _TRANSIENT_ERRORS as e:
            reason = "timeout" if isinstance(e, (requests.Timeout, TimeoutError)) else "network"
            self._log(queue.kind, "provider.attempt", "warn", {**base, "outcome": reason, "error": str(e)})
            raise _RetryableFailure(reason, str(e)) from e
        finally:
            queue.last_call_ts = self._clock()
        latency_ms = int((queue.last_call_ts - started) * 1000)

        if is_rate_limited(outcome):
            self._log(queue.kind, "provider.attempt", "warn", {**base, "outcome": "429_RATE", "http": outcome.status})
            raise _RetryableFailure("429_RATE", outcome.error or "")
        if not outcome.ok and outcome.status >= 500:
            self._log(queue.kind, "provider.attempt", "warn", {**base, "outcome": "5XX", "http": outcome.status})
            raise _RetryableFailure("5XX", outcome.error or "")

        self._log(
            queue.kind,
            "provider.attempt",
            "ok" if outcome.ok else "error",
            {
                **base,
                "outcome": "ok" if outcome.ok else "final_error",
                "http": outcome.status,
                "task_code": outcome.task_code,
                "latency_ms": latency_ms,
            },
        )
        return outcome

    def _log_backoff(self, kind: str, context: str, retry_state: RetryCallState) -> None:
        failure = retry_state.outcome.exception() if retry_state.outcome else None
        sleep_s = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self._log(
            kind,
            "provider.backoff",
            "warn",
            {
                "context": context,
                "attempt": retry_state.attempt_number,
                "reason": getattr(failure, "reason", "unknown"),
                "sleep_ms": int(sleep_s * 1000),
            },
        )
