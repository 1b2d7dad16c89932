from __future__ import annotations

import time
from typing import Any, TypeVar

from google import genai
from google.genai import types
from pydantic import BaseModel

from task_market.json_extract import extract_json_object
from task_market.llm_openai import Usage, _backoff_s, _resolve_max_retries
from task_market.logs import get_logger

log = get_logger("llm.google")

TModel = TypeVar("TModel", bound=BaseModel)

_TRANSIENT_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}
_TRANSIENT_CODE_NAMES = {
    "deadline_exceeded",
    "resource_exhausted",
    "service_unavailable",
    "unavailable",
    "internal",
}


def _is_transient_google_error(err: Exception) -> bool:
    if isinstance(err, TimeoutError):
        return True
    status = getattr(err, "status_code", None) or getattr(err, "code", None)
    if isinstance(status, int):
        return status in _TRANSIENT_STATUS_CODES
    code_name = str(getattr(err, "status", "") or "").strip().lower()
    if code_name in _TRANSIENT_CODE_NAMES:
        return True
    name = type(err).__name__.lower()
    return any(part in name for part in ("ratelimit", "resourceexhausted", "timeout", "connection"))


def _usage_from_response(resp: Any) -> Usage:
    usage = getattr(resp, "usage_metadata", None)
    if usage is None:
        return Usage(calls=1, input_tokens=0, output_tokens=0)
    return Usage(
        calls=1,
        input_tokens=int(getattr(usage, "prompt_token_count", 0) or 0),
        output_tokens=int(getattr(usage, "candidates_token_count", 0) or 0),
    )


class GoogleJSONClient:
    def __init__(self, *, api_key: str) -> None:
        self._client = genai.Client(api_key=api_key)

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
        max_retries = _resolve_max_retries(requested=max_retries, env_name="TM_GOOGLE_MAX_RETRIES")

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
                if not _is_transient_google_error(e):
                    raise
                last_err = e
                if attempt == max_retries - 1:
                    break
                log.warning("gemini transient error (attempt %d): %s", attempt + 1, e)
                time.sleep(_backoff_s(attempt))

        raise RuntimeError(
            f"Google/Gemini transient request failed after {max_retries} attempts: {last_err}"
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
        cfg = types.GenerateContentConfig(
            system_instruction=system,
            temperature=float(temperature),
            max_output_tokens=int(max_output_tokens),
            response_mime_type="application/json" if json_mode else None,
        )
        resp = self._client.models.generate_content(model=model, contents=user, config=cfg)
        text = str(getattr(resp, "text", "") or "").strip()
        return text, _usage_from_response(resp)
