from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator


_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_DEFAULT_CONFIG_PATH = _PROJECT_ROOT / "config" / "config.json"


def _config_path() -> Path:
    override = os.getenv("CORPUSOPS_CONFIG")
    return Path(override) if override else _DEFAULT_CONFIG_PATH


class _ArtifactsCfg(BaseModel):
    base_dir: str


class _StoreCfg(BaseModel):
    url: str
    target_id: str
    max_batch_writes: int = 450


class _ProviderCfg(BaseModel):
    base_url: str
    max_rpm: int
    max_attempts: int = 5
    backoff_base_ms: int = 60000
    backoff_jitter_ms: int = 5000
    request_timeout_s: int = 60
    poll_interval_s: float = 5
    poll_max_attempts: int = 24
    location_code: int = 2356
    language_code: str = "en"

    @field_validator("max_rpm", "max_attempts")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class CategoryCfg(BaseModel):
    id: str
    name: str
    kind: str = "google"
    seed_keywords: List[str] = Field(default_factory=list)


class _CorpusCfg(BaseModel):
    country: str = "IN"
    language: str = "en"
    categories: List[CategoryCfg]


class _RawConfig(BaseModel):
    artifacts: _ArtifactsCfg
    store: _StoreCfg
    provider: _ProviderCfg
    corpus: _CorpusCfg
    flush: Optional[Dict[str, Any]] = None
    jobs: Optional[Dict[str, Any]] = None


class Settings(BaseModel):
    artifacts_base_dir: str = Field(..., description="Base directory for ledger files")
    store: Dict[str, Any]
    provider: Dict[str, Any]
    flush: Dict[str, Any]
    jobs: Dict[str, Any]
    corpus: Dict[str, Any]

    @classmethod
    def load(cls) -> "Settings":
        # Environment first; credentials are never stored in config.json
        load_dotenv(dotenv_path=_PROJECT_ROOT / ".env", override=False)

        config_path = _config_path()
        try:
            raw_bytes = config_path.read_bytes()
        except FileNotFoundError as e:
            raise FileNotFoundError(f"Missing config file at {config_path}") from e
        try:
            raw_obj = orjson.loads(raw_bytes)
        except orjson.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file: {config_path}") from e
        try:
            validated = _RawConfig.model_validate(raw_obj)
        except ValidationError as e:
            raise ValueError(f"Invalid config structure: {e}") from e

        flush_cfg = {
            "batch_size": 200,
            "yield_ms": 50,
            "warning_threshold": 500000,
            "dev_target": None,
            "deep_groups": ["keywords", "snapshots"],
            "root_collections": [
                "mci_category_snapshots",
                "corpus_index",
                "keyword_volume_cache",
                "corpus_jobs",
                "batch_certification_jobs",
                "mci_outputs",
                "corpus_probe",
            ],
        }
        if validated.flush:
            flush_cfg.update(validated.flush)

        jobs_cfg = {"log_cap": 1000}
        if validated.jobs:
            jobs_cfg.update(validated.jobs)

        return cls(
            artifacts_base_dir=validated.artifacts.base_dir,
            store=validated.store.model_dump(),
            provider=validated.provider.model_dump(),
            flush=flush_cfg,
            jobs=jobs_cfg,
            corpus=validated.corpus.model_dump(),
        )

    @property
    def cfg_hash(self) -> str:
        from hashlib import sha256

        try:
            raw_bytes = _config_path().read_bytes()
        except FileNotFoundError:
            raw_bytes = b"{}"
        try:
            obj = orjson.loads(raw_bytes)
        except orjson.JSONDecodeError:
            obj = {}
        canonical = orjson.dumps(obj, option=orjson.OPT_SORT_KEYS)
        return sha256(canonical).hexdigest()

    @property
    def categories(self) -> List[CategoryCfg]:
        return [CategoryCfg.model_validate(c) for c in self.corpus.get("categories", [])]

    def category_ids(self) -> List[str]:
        return [c.id for c in self.categories]

    def artifacts_dir_for(self, stream_id: str) -> Path:
        base = Path(self.artifacts_base_dir)
        if not base.is_absolute():
            base = _PROJECT_ROOT / base
        stream_dir = base / stream_id
        base.mkdir(parents=True, exist_ok=True)
        stream_dir.mkdir(parents=True, exist_ok=True)
        return stream_dir

    def store_url(self) -> str:
        url = str(self.store["url"])
        # Relative sqlite paths resolve against the project root
        prefix = "sqlite:///"
        if url.startswith(prefix) and not url.startswith(prefix + "/") and ":memory:" not in url:
            return prefix + str(_PROJECT_ROOT / url[len(prefix):])
        return url


# Singleton settings instance for convenience
settings = Settings.load()
