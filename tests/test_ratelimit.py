from __future__ import annotations

import threading
import time

import pytest
import requests

from corpusops.errors import ProviderUnavailableError, RateLimitExhaustedError
from corpusops.ratelimit import TaskExecutor, is_rate_limited
from corpusops.schemas import ProviderOutcome

OK = ProviderOutcome(ok=True, status=200, task_code=20000)
RATE_LIMITED = ProviderOutcome(ok=False, status=429, rate_limited=True, error="Too Many Requests")


def _executor(clock, **kw) -> TaskExecutor:
    return TaskExecutor(max_rpm=10, clock=clock, sleep=clock.sleep, **kw)


def test_twelve_calls_are_spaced_by_the_rpm_budget(clock):
    ex = _executor(clock)
    start = clock()
    for i in range(12):
        assert ex.execute("google", f"call:{i}", lambda: OK).ok
    assert clock() - start >= 66.0
    assert sum(clock.sleeps) == pytest.approx(66.0)
    assert all(s == pytest.approx(6.0) for s in clock.sleeps)


def test_interval_counts_from_end_of_previous_call(clock):
    ex = _executor(clock)

    def slow():
        clock.now += 4.0
        return OK

    ex.execute("google", "first", slow)
    ex.execute("google", "second", lambda: OK)
    assert clock.sleeps == [pytest.approx(6.0)]


def test_provider_kinds_have_independent_queues(clock):
    ex = _executor(clock)
    ex.execute("google", "g", lambda: OK)
    ex.execute("amazon", "a", lambda: OK)
    assert clock.sleeps == []


def test_rate_limit_backs_off_a_full_window_plus_jitter(clock):
    ex = _executor(clock)
    for _ in range(20):
        replies = iter([RATE_LIMITED, OK])
        clock.sleeps.clear()
        out = ex.execute("google", "backoff", lambda: next(replies))
        assert out.ok
        backoffs = [s for s in clock.sleeps if s >= 60.0]
        assert len(backoffs) == 1
        assert 60.0 <= backoffs[0] < 65.0


def test_server_errors_are_retried(clock):
    ex = _executor(clock)
    replies = iter([ProviderOutcome(ok=False, status=503, error="unavailable"), OK])
    assert ex.execute("google", "5xx", lambda: next(replies)).ok
    assert any(s >= 60.0 for s in clock.sleeps)


def test_final_logical_error_is_returned_without_retry(clock):
    ex = _executor(clock)
    calls = []

    def work():
        calls.append(1)
        return ProviderOutcome(ok=False, status=400, task_code=40501, error="Invalid Field")

    out = ex.execute("google", "bad-payload", work)
    assert not out.ok
    assert out.error == "Invalid Field"
    assert len(calls) == 1
    assert clock.sleeps == []


def test_exhausted_budget_raises_rate_limit_error(clock, ledger, store):
    ex = _executor(clock, max_attempts=5, ledger=ledger)
    calls = []

    def work():
        calls.append(1)
        return RATE_LIMITED

    with pytest.raises(RateLimitExhaustedError) as info:
        ex.execute("google", "exhaust", work)
    assert info.value.code == "DFS_RATE_LIMIT"
    assert len(calls) == 5

    steps = store.get_ledger_steps("provider.google")
    assert steps.count("provider.attempt") == 5
    assert steps.count("provider.backoff") == 4
    assert steps[-1] == "provider.fail"


def test_network_errors_exhaust_as_unavailable(clock):
    ex = _executor(clock, max_attempts=3)

    def work():
        raise requests.ConnectionError("connection refused")

    with pytest.raises(ProviderUnavailableError) as info:
        ex.execute("google", "offline", work)
    assert info.value.code == "DFS_UNAVAILABLE"
    assert not isinstance(info.value, RateLimitExhaustedError)


def test_rate_limit_detection_from_error_text():
    assert is_rate_limited(ProviderOutcome(ok=False, status=200, error="You have reached your Rates Limit per minute"))
    assert not is_rate_limited(ProviderOutcome(ok=False, status=400, error="Invalid Field"))


def test_shutdown_rejects_new_calls(clock):
    ex = _executor(clock)
    ex.shutdown()
    with pytest.raises(ProviderUnavailableError):
        ex.execute("google", "late", lambda: OK)


def test_concurrent_callers_run_one_at_a_time_in_arrival_order(clock):
    ex = _executor(clock)
    queue = ex.queue_for("google")
    gate = threading.Event()
    events = []
    in_flight = []

    def work_for(i):
        def work():
            in_flight.append(i)
            events.append(("enter", i, len(in_flight)))
            if i == 0:
                gate.wait(timeout=5)
            in_flight.remove(i)
            events.append(("exit", i))
            return OK

        return work

    threads = []
    for i in range(5):
        t = threading.Thread(target=ex.execute, args=("google", f"call:{i}", work_for(i)))
        t.start()
        threads.append(t)
        deadline = time.monotonic() + 5
        while queue.turns.depth < i + 1 and time.monotonic() < deadline:
            time.sleep(0.001)
    assert queue.turns.depth == 5

    gate.set()
    for t in threads:
        t.join(timeout=5)

    assert events[0::2] == [("enter", i, 1) for i in range(5)]
    assert events[1::2] == [("exit", i) for i in range(5)]
