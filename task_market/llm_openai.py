from __future__ import annotations

import os
import random
import time
from dataclasses import dataclass
from typing import Any, TypeVar

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    BadRequestError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)
from pydantic import BaseModel

from task_market.json_extract import extract_json_object
from task_market.logs import get_logger

log = get_logger("llm.openai")

TModel = TypeVar("TModel", bound=BaseModel)

_MAX_OUTER_RETRIES = 3
_TRANSIENT_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class Usage:
    calls: int
    input_tokens: int
    output_tokens: int

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            calls=self.calls + other.calls,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


ZERO_USAGE = Usage(calls=0, input_tokens=0, output_tokens=0)


def _resolve_max_retries(*, requested: int, env_name: str) -> int:
    max_retries = int(requested)
    raw = str(os.getenv(env_name) or "").strip()
    if raw:
        try:
            max_retries = int(raw)
        except ValueError as e:
            raise ValueError(f"{env_name} must be an int") from e
    if max_retries <= 0:
        raise ValueError(f"{env_name}/max_retries must be > 0")
    if max_retries > _MAX_OUTER_RETRIES:
        raise ValueError(f"{env_name}/max_retries must be <= {_MAX_OUTER_RETRIES}")
    return max_retries


def _backoff_s(attempt: int) -> float:
    return 0.5 * (2**attempt) + random.random() * 0.2


def _status_code_from_error(err: Exception) -> int | None:
    raw = getattr(err, "status_code", None)
    if raw is None:
        response = getattr(err, "response", None)
        raw = getattr(response, "status_code", None)
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _is_transient_error(err: Exception) -> bool:
    if isinstance(
        err,
        (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError, TimeoutError),
    ):
        return True
    status = _status_code_from_error(err)
    if isinstance(err, APIStatusError):
        return status in _TRANSIENT_STATUS_CODES
    return status in _TRANSIENT_STATUS_CODES if status is not None else False


def _usage_from_completion(resp: Any) -> Usage:
    usage = getattr(resp, "usage", None)
    if usage is None:
        return Usage(calls=1, input_tokens=0, output_tokens=0)
    return Usage(
        calls=1,
        input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
    )


class OpenAIJSONClient:
    """Chat Completions client; also serves OpenAI-compatible gateways such as Groq."""

    def __init__(self, *, api_key: str, base_url: str | None = None) -> None:
        # Per-call deadlines are enforced by the caller, not the SDK.
        self._client = OpenAI(api_key=api_key, base_url=base_url, timeout=None)
        self._no_temperature: set[str] = set()
        self._no_json_mode: set[str] = set()

    def call_text(
        self,
        *,
        model: str,
        system: str,
        user: str,
        temperature: float = 0.0,
        max_output_tokens: int = 1500,
        json_mode: bool = False,
        max_retries: int = 3,
    ) -> tuple[str, Usage]:
        max_retries = _resolve_max_retries(requested=max_retries, env_name="TM_OPENAI_MAX_RETRIES")

        last_err: Exception | None = None
        for attempt in range(max_retries):
            try:
                return self._call_text_once(
                    model=model,
                    system=system,
                    user=user,
                    temperature=temperature,
                    max_output_tokens=max_output_tokens,
                    json_mode=json_mode,
                )
            except Exception as e:
                if not _is_transient_error(e):
                    raise
                last_err = e
                if attempt == max_retries - 1:
                    break
                log.warning("openai transient error (attempt %d): %s", attempt + 1, e)
                time.sleep(_backoff_s(attempt))

        raise RuntimeError(
            f"OpenAI transient request failed after {max_retries} attempts: {last_err}"
        ) from last_err

    def call_json(
        self,
        *,
        model: str,
        system: str,
        user: str,
        schema: type[TModel],
        temperature: float = 0.0,
        max_output_tokens: int = 1500,
        max_retries: int = 3,
    ) -> tuple[TModel, Usage, str]:
        text, usage = self.call_text(
            model=model,
            system=system,
            user=user,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            json_mode=True,
            max_retries=max_retries,
        )
        parsed = extract_json_object(text)
        return schema.model_validate(parsed), usage, text

    def _call_text_once(
        self,
        *,
        model: str,
        system: str,
        user: str,
        temperature: float,
        max_output_tokens: int,
        json_mode: bool,
    ) -> tuple[str, Usage]:
        params: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "max_tokens": max_output_tokens,
        }
        if model not in self._no_temperature:
            params["temperature"] = temperature
        if json_mode and model not in self._no_json_mode:
            params["response_format"] = {"type": "json_object"}

        resp: Any | None = None
        for _attempt in range(3):
            try:
                resp = self._client.chat.completions.create(**params)
                break
            except BadRequestError as e:
                msg = str(e)
                if "temperature" in msg and "temperature" in params:
                    self._no_temperature.add(model)
                    params.pop("temperature", None)
                    continue
                if "response_format" in msg and "response_format" in params:
                    self._no_json_mode.add(model)
                    params.pop("response_format", None)
                    continue
                raise

        if resp is None:  # pragma: no cover
            raise RuntimeError("OpenAI request failed after parameter fallbacks")

        choices = getattr(resp, "choices", None) or []
        text = ""
        if choices:
            text = str(getattr(choices[0].message, "content", "") or "")
        return text, _usage_from_completion(resp)
