"""Structured-output client for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import json
import logging
import re
from typing import TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from crowsnest.config import Settings

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

RATE_LIMIT_MARKERS = ("429", "resource_exhausted", "rate limit")

_FIXING_SYSTEM_PROMPT = """You repair JSON documents.
Return ONLY a JSON object that satisfies the JSON schema below, keeping the
original values wherever they are valid. No explanation, no markdown.

JSON schema:
{schema}"""


class LLMError(Exception):
    """The model call failed."""


class RateLimitError(LLMError):
    """The provider rejected the call with a rate-limit response."""


class StructuredOutputError(LLMError):
    """The response could not be decoded into the requested model."""


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
        return True
    message = str(exc).casefold()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def extract_json_text(text: str) -> str:
    """Pull the JSON object out of a reply that may carry think tags or code fences."""
    if "</think>" in text:
        after = text.split("</think>")[-1].strip()
        if after:
            text = after
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1)
    text = text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        text = text[start : end + 1]
    return text


class LLMClient:
    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str,
        timeout_seconds: float = 60.0,
        rate_limit_attempts: int = 3,
        rate_limit_backoff_seconds: float = 20.0,
        http_client: httpx.Client | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.rate_limit_attempts = rate_limit_attempts
        self.rate_limit_backoff_seconds = rate_limit_backoff_seconds
        self._client = http_client or httpx.Client(timeout=timeout_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMClient":
        return cls(
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            base_url=settings.llm_base_url,
            timeout_seconds=settings.llm_timeout_seconds,
            rate_limit_attempts=settings.llm_rate_limit_attempts,
            rate_limit_backoff_seconds=settings.llm_rate_limit_backoff_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def _post_chat(self, system: str, user: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": 0.0,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            response = self._client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            if is_rate_limit_error(exc):
                raise RateLimitError(f"rate limited by {self.base_url}: {exc}") from exc
            raise LLMError(f"chat completion failed: {exc}") from exc

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise LLMError(f"unexpected chat completion payload: {exc}") from exc
        return content or ""

    def complete(self, system: str, user: str) -> str:
        """One chat completion, retrying rate-limit failures with a fixed backoff."""
        retrying = Retrying(
            retry=retry_if_exception_type(RateLimitError),
            stop=stop_after_attempt(self.rate_limit_attempts),
            wait=wait_fixed(self.rate_limit_backoff_seconds),
            before_sleep=lambda state: log.warning(
                "LLM rate limited (attempt %d/%d), backing off %.0fs",
                state.attempt_number,
                self.rate_limit_attempts,
                self.rate_limit_backoff_seconds,
            ),
            reraise=True,
        )
        return retrying(self._post_chat, system, user)

    def extract(self, response_model: type[M], *, system: str, user: str, fixing_retries: int = 2) -> M:
        """Ask the model for ``response_model``; undecodable replies get fixing passes."""
        raw = self.complete(system, user)
        schema = json.dumps(response_model.model_json_schema())

        for attempt in range(fixing_retries + 1):
            try:
                return response_model.model_validate_json(extract_json_text(raw))
            except ValidationError as exc:
                error = exc
            if attempt == fixing_retries:
                break
            log.debug("fixing %s output (pass %d): %s", response_model.__name__, attempt + 1, error)
            raw = self.complete(
                _FIXING_SYSTEM_PROMPT.format(schema=schema),
                f"Invalid JSON:\n{raw}\n---\nValidation errors:\n{error}",
            )

        raise StructuredOutputError(
            f"could not decode {response_model.__name__} after {fixing_retries} fixing passes: {error}"
        )
