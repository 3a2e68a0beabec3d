from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Mapping, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "crowsnest.sqlite"
DEFAULT_SCRAPING_CONFIG_PATH = PROJECT_ROOT / "scraping_config.json"
DEFAULT_LLM_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai"
DEFAULT_LLM_MODEL = "gemini-2.5-flash-lite"

RUN_REQUIRED_ENVS = ("GEMINI_API_KEY",)

_TRUE_VALUES = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    llm_api_key: str = ""
    llm_base_url: str = DEFAULT_LLM_BASE_URL
    llm_model: str = DEFAULT_LLM_MODEL
    llm_timeout_seconds: float = Field(default=60.0, gt=0.0)
    llm_rate_limit_attempts: int = Field(default=3, ge=1)
    llm_rate_limit_backoff_seconds: float = Field(default=20.0, ge=0.0)
    llm_fixing_retries: int = Field(default=2, ge=0)
    db_path: Path = Field(default=DEFAULT_DB_PATH)
    seed_urls_csv: str | None = None
    scraping_config_path: Path = Field(default=DEFAULT_SCRAPING_CONFIG_PATH)
    headless: bool = True
    page_load_wait_ms: int = Field(default=2_500, ge=0)
    request_delay_ms: int = Field(default=2_000, ge=0)
    tab_open_timeout_ms: int = Field(default=5_000, gt=0)
    navigation_timeout_ms: int = Field(default=45_000, gt=0)
    similarity_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    posted_at_max_age_days: int = Field(default=183, ge=0)
    verify_detail_pages: bool = False
    seed_retry_attempts: int = Field(default=2, ge=1)
    seed_retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    log_level: str = "INFO"

    @field_validator("llm_base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("LLM_BASE_URL must use http:// or https://")
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown LOG_LEVEL: {value}")
        return level


def _env_value(environ: Mapping[str, str], key: str) -> str:
    return environ.get(key, "").strip()


def _env_flag(environ: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _env_value(environ, key)
    if not raw:
        return default
    return raw.casefold() in _TRUE_VALUES


def missing_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> list[str]:
    source = os.environ if environ is None else environ
    return [key for key in required if not _env_value(source, key)]


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    source = os.environ if environ is None else environ
    payload = {
        "llm_api_key": _env_value(source, "GEMINI_API_KEY"),
        "llm_base_url": _env_value(source, "LLM_BASE_URL") or DEFAULT_LLM_BASE_URL,
        "llm_model": _env_value(source, "LLM_MODEL") or DEFAULT_LLM_MODEL,
        "llm_timeout_seconds": float(_env_value(source, "LLM_TIMEOUT_SECONDS") or "60"),
        "llm_rate_limit_attempts": int(_env_value(source, "LLM_RATE_LIMIT_ATTEMPTS") or "3"),
        "llm_rate_limit_backoff_seconds": float(
            _env_value(source, "LLM_RATE_LIMIT_BACKOFF_SECONDS") or "20"
        ),
        "llm_fixing_retries": int(_env_value(source, "LLM_FIXING_RETRIES") or "2"),
        "db_path": Path(_env_value(source, "CROWSNEST_DB_PATH") or DEFAULT_DB_PATH),
        "seed_urls_csv": _env_value(source, "SEED_URLS") or None,
        "scraping_config_path": Path(
            _env_value(source, "SCRAPING_CONFIG_PATH") or DEFAULT_SCRAPING_CONFIG_PATH
        ),
        "headless": _env_flag(source, "BROWSER_HEADLESS", True),
        "page_load_wait_ms": int(_env_value(source, "PAGE_LOAD_WAIT_MS") or "2500"),
        "request_delay_ms": int(_env_value(source, "REQUEST_DELAY_MS") or "2000"),
        "tab_open_timeout_ms": int(_env_value(source, "TAB_OPEN_TIMEOUT_MS") or "5000"),
        "navigation_timeout_ms": int(_env_value(source, "NAVIGATION_TIMEOUT_MS") or "45000"),
        "similarity_threshold": float(_env_value(source, "SIMILARITY_THRESHOLD") or "0.6"),
        "posted_at_max_age_days": int(_env_value(source, "POSTED_AT_MAX_AGE_DAYS") or "183"),
        "verify_detail_pages": _env_flag(source, "VERIFY_DETAIL_PAGES", False),
        "seed_retry_attempts": int(_env_value(source, "SEED_RETRY_ATTEMPTS") or "2"),
        "seed_retry_delay_seconds": float(_env_value(source, "SEED_RETRY_DELAY_SECONDS") or "1"),
        "log_level": _env_value(source, "LOG_LEVEL") or "INFO",
    }
    try:
        return Settings(**payload)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


def assert_required_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> None:
    missing = missing_envs(required, environ)
    if missing:
        keys = ", ".join(missing)
        raise ValueError(f"Missing required environment variables: {keys}")


def _dedupe_urls(urls: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for url in urls:
        cleaned = url.strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        unique.append(cleaned)
    return unique


def load_seed_urls(settings: Settings) -> list[str]:
    if settings.seed_urls_csv:
        return _dedupe_urls(settings.seed_urls_csv.split(","))

    if not settings.scraping_config_path.exists():
        return []

    try:
        payload = json.loads(settings.scraping_config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid scraping config {settings.scraping_config_path}: {exc}") from exc

    seeds = payload.get("seedUrls", []) if isinstance(payload, dict) else []
    if not isinstance(seeds, list):
        raise ValueError("scraping config 'seedUrls' must be a list")
    return _dedupe_urls([str(seed) for seed in seeds])


def mask_secret(value: str, visible_prefix: int = 3, visible_suffix: int = 2) -> str:
    if not value:
        return ""
    if len(value) <= visible_prefix + visible_suffix:
        return "*" * len(value)
    hidden = "*" * (len(value) - visible_prefix - visible_suffix)
    return f"{value[:visible_prefix]}{hidden}{value[-visible_suffix:]}"
