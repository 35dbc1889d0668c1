from __future__ import annotations

import os
import time
from typing import Any, Callable, Dict, List, Literal, Optional

import orjson
import requests
from pydantic import BaseModel
from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from .errors import ProviderError
from .schemas import ProviderOutcome
from .settings import Settings, settings as default_settings


TASK_OK = 20000
TASK_CREATED = 20100
TASK_IN_PROGRESS = frozenset({40601, 40602})
TASK_RATE_LIMITED = frozenset({40202})

_ENDPOINTS: Dict[str, Dict[str, str]] = {
    "google": {
        "post": "keywords_data/google_ads/search_volume/task_post",
        "get": "keywords_data/google_ads/search_volume/task_get/{task_id}",
    },
    "amazon": {
        "post": "dataforseo_labs/amazon/bulk_search_volume/task_post",
        "get": "dataforseo_labs/amazon/bulk_search_volume/task_get/{task_id}",
    },
}
_PING_PATH = "appendix/user_data"


class Credentials(BaseModel):
    login: Optional[str] = None
    password: Optional[str] = None
    proxy_url: Optional[str] = None
    mode: Literal["DIRECT", "PROXY", "NONE"] = "NONE"
    source: str = "none"

    @property
    def usable(self) -> bool:
        return bool(self.login and self.password) or self.mode == "PROXY"


def resolve_credentials() -> Credentials:
    """Resolve provider credentials from the environment (.env already loaded)."""
    login = os.getenv("DATAFORSEO_LOGIN")
    password = os.getenv("DATAFORSEO_PASSWORD")
    proxy_url = os.getenv("DATAFORSEO_PROXY_URL")
    if proxy_url:
        return Credentials(login=login, password=password, proxy_url=proxy_url, mode="PROXY", source="env")
    if login and password:
        return Credentials(login=login, password=password, mode="DIRECT", source="env")
    return Credentials()


class PollResult(BaseModel):
    state: Literal["done", "in_progress", "failed"]
    outcome: ProviderOutcome


def _outcome_from_response(resp: requests.Response) -> ProviderOutcome:
    status = int(resp.status_code)
    try:
        body = orjson.loads(resp.content or b"{}")
    except orjson.JSONDecodeError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    tasks = body.get("tasks") or [{}]
    task = tasks[0] if isinstance(tasks[0], dict) else {}
    task_code = task.get("status_code") or body.get("status_code")
    ok = 200 <= status < 300 and task_code in (TASK_OK, TASK_CREATED)
    error = None
    if not ok:
        error = task.get("status_message") or body.get("status_message") or resp.reason or f"HTTP {status}"
    return ProviderOutcome(
        ok=ok,
        status=status,
        rate_limited=status == 429 or task_code in TASK_RATE_LIMITED,
        task_code=task_code,
        error=error,
        data=task,
    )


def _parse_volumes(task: Dict[str, Any]) -> Dict[str, int]:
    volumes: Dict[str, int] = {}
    for item in task.get("result") or []:
        if not isinstance(item, dict):
            continue
        kw = item.get("keyword")
        if not isinstance(kw, str):
            continue
        sv = item.get("search_volume")
        volumes[" ".join(kw.lower().split())] = int(sv) if isinstance(sv, (int, float)) else 0
    return volumes


class KeywordDataClient:
    """Two-phase (submit, then poll) client for the keyword-volume provider.

    Every HTTP call goes through the shared :class:`~corpusops.ratelimit.TaskExecutor`.
    """

    def __init__(
        self,
        executor,
        credentials: Optional[Credentials] = None,
        cfg: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executor = executor
        self.credentials = credentials or resolve_credentials()
        self.cfg = cfg or default_settings
        self.session = session or requests.Session()
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        if self.credentials.mode == "PROXY" and self.credentials.proxy_url:
            return self.credentials.proxy_url.rstrip("/") + "/v3"
        return str(self.cfg.provider["base_url"]).rstrip("/")

    def _auth(self):
        if self.credentials.login and self.credentials.password:
            return (self.credentials.login, self.credentials.password)
        return None

    def _post(self, path: str, payload: List[Dict[str, Any]]) -> ProviderOutcome:
        resp = self.session.post(
            f"{self.base_url}/{path}",
            auth=self._auth(),
            data=orjson.dumps(payload),
            headers={"Content-Type": "application/json"},
            timeout=int(self.cfg.provider.get("request_timeout_s", 60)),
        )
        return _outcome_from_response(resp)

    def _get(self, path: str) -> ProviderOutcome:
        resp = self.session.get(
            f"{self.base_url}/{path}",
            auth=self._auth(),
            timeout=int(self.cfg.provider.get("request_timeout_s", 60)),
        )
        return _outcome_from_response(resp)

    def _endpoint(self, kind: str, op: str) -> str:
        try:
            return _ENDPOINTS[kind][op]
        except KeyError:
            raise ProviderError(kind, f"unknown provider kind: {kind}") from None

    def submit_task(self, kind: str, payload: Dict[str, Any], context: str = "") -> str:
        path = self._endpoint(kind, "post")
        outcome = self.executor.execute(kind, context or "submit", lambda: self._post(path, [payload]))
        if not outcome.ok:
            raise ProviderError(kind, f"task submit failed: {outcome.error}", status=outcome.status)
        task_id = (outcome.data or {}).get("id")
        if not task_id:
            raise ProviderError(kind, "task submit returned no task id", status=outcome.status)
        return str(task_id)

    def poll_task(self, kind: str, task_id: str, context: str = "") -> PollResult:
        path = self._endpoint(kind, "get").format(task_id=task_id)
        outcome = self.executor.execute(kind, context or f"poll:{task_id}", lambda: self._get(path))
        if outcome.ok:
            return PollResult(state="done", outcome=outcome)
        if outcome.task_code in TASK_IN_PROGRESS:
            return PollResult(state="in_progress", outcome=outcome)
        return PollResult(state="failed", outcome=outcome)

    def fetch_volumes(self, kind: str, keywords: List[str], context: str = "") -> Dict[str, int]:
        """Submit one volume task for ``keywords`` and poll it to completion."""
        if not keywords:
            return {}
        payload = {
            "keywords": list(keywords),
            "location_code": int(self.cfg.provider.get("location_code", 2356)),
            "language_code": str(self.cfg.provider.get("language_code", "en")),
        }
        task_id = self.submit_task(kind, payload, context)
        poller = Retrying(
            retry=retry_if_result(lambda r: r.state == "in_progress"),
            stop=stop_after_attempt(int(self.cfg.provider.get("poll_max_attempts", 24))),
            wait=wait_fixed(float(self.cfg.provider.get("poll_interval_s", 5))),
            sleep=self._sleep,
        )
        try:
            result = poller(self.poll_task, kind, task_id, context)
        except RetryError as e:
            raise ProviderError(kind, f"task {task_id} still in progress after polling budget") from e
        if result.state == "failed":
            raise ProviderError(kind, f"task {task_id} failed: {result.outcome.error}", status=result.outcome.status)
        return _parse_volumes(result.outcome.data or {})

    def ping(self, kind: str = "google") -> ProviderOutcome:
        return self.executor.execute(kind, "preflight", lambda: self._get(_PING_PATH))
