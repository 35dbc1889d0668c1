from __future__ import annotations

from typing import List

import orjson
import pytest

from corpusops.errors import ProviderError
from corpusops.provider import Credentials, KeywordDataClient, resolve_credentials
from corpusops.ratelimit import TaskExecutor


class FakeResponse:
    def __init__(self, status_code: int, body) -> None:
        self.status_code = status_code
        self.content = orjson.dumps(body)
        self.reason = "OK" if status_code < 400 else "Error"


class FakeSession:
    def __init__(self, posts: List[FakeResponse], gets: List[FakeResponse]) -> None:
        self.posts = list(posts)
        self.gets = list(gets)
        self.urls: List[str] = []

    def post(self, url, **kw):
        self.urls.append(url)
        return self.posts.pop(0)

    def get(self, url, **kw):
        self.urls.append(url)
        return self.gets.pop(0)


def _task(code: int, **extra):
    return {"status_code": 20000, "tasks": [{"status_code": code, **extra}]}


CREDS = Credentials(login="user", password="secret", mode="DIRECT", source="test")


def _client(cfg, clock, session) -> KeywordDataClient:
    executor = TaskExecutor(max_rpm=10, clock=clock, sleep=clock.sleep)
    return KeywordDataClient(executor, credentials=CREDS, cfg=cfg, session=session, sleep=clock.sleep)


def test_fetch_volumes_polls_until_done(cfg, clock):
    session = FakeSession(
        posts=[FakeResponse(200, _task(20100, id="task-1"))],
        gets=[
            FakeResponse(200, _task(40602, status_message="Task In Queue")),
            FakeResponse(200, _task(20000, result=[
                {"keyword": "Razor ", "search_volume": 900},
                {"keyword": "blade", "search_volume": None},
            ])),
        ],
    )
    volumes = _client(cfg, clock, session).fetch_volumes("google", ["razor", "blade"], context="rebuild:shaving")

    assert volumes == {"razor": 900, "blade": 0}
    assert session.urls[0].endswith("keywords_data/google_ads/search_volume/task_post")
    assert session.urls[1].endswith("search_volume/task_get/task-1")
    assert len(session.urls) == 3


def test_rate_limit_task_code_is_retried(cfg, clock):
    session = FakeSession(
        posts=[
            FakeResponse(200, _task(40202, status_message="Rate limit per minute exceeded")),
            FakeResponse(200, _task(20100, id="task-2")),
        ],
        gets=[FakeResponse(200, _task(20000, result=[{"keyword": "razor", "search_volume": 5}]))],
    )
    volumes = _client(cfg, clock, session).fetch_volumes("google", ["razor"])
    assert volumes == {"razor": 5}
    assert any(s >= 60.0 for s in clock.sleeps)


def test_failed_task_raises_provider_error(cfg, clock):
    session = FakeSession(
        posts=[FakeResponse(200, _task(20100, id="task-3"))],
        gets=[FakeResponse(200, _task(40501, status_message="Invalid Field"))],
    )
    with pytest.raises(ProviderError) as info:
        _client(cfg, clock, session).fetch_volumes("google", ["razor"])
    assert "Invalid Field" in str(info.value)
    assert info.value.code == "DFS_ERROR"


def test_unknown_kind_is_rejected(cfg, clock):
    with pytest.raises(ProviderError):
        _client(cfg, clock, FakeSession([], [])).submit_task("bing", {})


def test_credentials_from_environment(monkeypatch):
    monkeypatch.delenv("DATAFORSEO_PROXY_URL", raising=False)
    monkeypatch.delenv("DATAFORSEO_LOGIN", raising=False)
    monkeypatch.delenv("DATAFORSEO_PASSWORD", raising=False)
    assert resolve_credentials().usable is False

    monkeypatch.setenv("DATAFORSEO_LOGIN", "me")
    monkeypatch.setenv("DATAFORSEO_PASSWORD", "pw")
    creds = resolve_credentials()
    assert creds.mode == "DIRECT" and creds.usable

    monkeypatch.setenv("DATAFORSEO_PROXY_URL", "https://proxy.local/")
    assert resolve_credentials().mode == "PROXY"


def test_proxy_mode_changes_base_url(cfg, clock):
    executor = TaskExecutor(max_rpm=10, clock=clock, sleep=clock.sleep)
    client = KeywordDataClient(
        executor,
        credentials=Credentials(proxy_url="https://proxy.local/", mode="PROXY", source="env"),
        cfg=cfg,
        session=FakeSession([], []),
    )
    assert client.base_url == "https://proxy.local/v3"
