from __future__ import annotations

from corpusops.cache import RuntimeCache
from corpusops.errors import ProviderUnavailableError
from corpusops.preflight import PreflightChecks
from corpusops.schemas import ProviderOutcome


def test_all_probes_pass(store, provider, clock):
    results = PreflightChecks(store, provider, cache=RuntimeCache(), clock=clock).run_all()
    assert set(results) == {"provider", "store_read", "store_write"}
    assert all(r.ok for r in results.values())


def test_provider_probe_is_cached_for_a_minute(store, provider, clock):
    checks = PreflightChecks(store, provider, cache=RuntimeCache(), clock=clock)
    checks.check_provider()
    clock.now += 30
    checks.check_provider()
    assert provider.pings == 1
    clock.now += 31
    checks.check_provider()
    assert provider.pings == 2


def test_cache_reset_forces_a_new_probe(store, provider, clock):
    cache = RuntimeCache()
    checks = PreflightChecks(store, provider, cache=cache, clock=clock)
    checks.check_provider()
    cache.reset_all("FLUSH_OP")
    checks.check_provider()
    assert provider.pings == 2


def test_failed_provider_probe_is_not_cached(store, provider, clock):
    provider.ping_outcome = ProviderOutcome(ok=False, status=401, error="Unauthorized")
    checks = PreflightChecks(store, provider, cache=RuntimeCache(), clock=clock)
    assert checks.check_provider().error == "Unauthorized"
    checks.check_provider()
    assert provider.pings == 2


def test_unreachable_provider_is_reported(store, provider, clock, monkeypatch):
    def offline(kind="google"):
        raise ProviderUnavailableError(kind, "connection refused")

    monkeypatch.setattr(provider, "ping", offline)
    result = PreflightChecks(store, provider, cache=RuntimeCache(), clock=clock).check_provider()
    assert not result.ok
    assert result.error.startswith("DFS_UNAVAILABLE")
