from __future__ import annotations

import json
import time
from typing import Any, TypeVar
from urllib import error, request

from pydantic import BaseModel

from task_market.json_extract import extract_json_object
from task_market.llm_openai import Usage, _backoff_s, _resolve_max_retries
from task_market.logs import get_logger

log = get_logger("llm.ollama")

TModel = TypeVar("TModel", bound=BaseModel)

_RETRYABLE_HTTP_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})
_REQUEST_TIMEOUT_S = 300


def _should_retry(err: Exception) -> bool:
    # HTTPError subclasses URLError, so it has to be checked first.
    if isinstance(err, error.HTTPError):
        return int(err.code) in _RETRYABLE_HTTP_CODES
    return isinstance(err, (TimeoutError, error.URLError))


def _chat_payload(
    *, model: str, system: str, user: str, temperature: float, max_output_tokens: int, json_mode: bool
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "stream": False,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        "options": {"temperature": float(temperature), "num_predict": int(max_output_tokens)},
    }
    if json_mode:
        payload["format"] = "json"
    return payload


def _usage_from_body(body: dict[str, Any]) -> Usage:
    return Usage(
        calls=1,
        input_tokens=int(body.get("prompt_eval_count") or 0),
        output_tokens=int(body.get("eval_count") or 0),
    )


class OllamaJSONClient:
    """Non-streaming client for a local Ollama server's ``/api/chat``."""

    def __init__(self, *, base_url: str) -> None:
        self._chat_url = str(base_url).rstrip("/") + "/api/chat"

    def _post_chat(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            url=self._chat_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with request.urlopen(req, timeout=_REQUEST_TIMEOUT_S) as resp:
            body = json.loads(resp.read().decode("utf-8", errors="replace"))
        if not isinstance(body, dict):
            raise RuntimeError("ollama returned a non-object body")
        if body.get("error"):
            raise RuntimeError(f"ollama error: {body['error']}")
        return body

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
        attempts = _resolve_max_retries(requested=max_retries, env_name="TM_OLLAMA_MAX_RETRIES")
        payload = _chat_payload(
            model=model,
            system=system,
            user=user,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            json_mode=json_mode,
        )

        for attempt in range(attempts):
            try:
                body = self._post_chat(payload)
            except Exception as e:
                if not _should_retry(e):
                    raise
                if attempt == attempts - 1:
                    raise RuntimeError(
                        f"ollama request to {model} failed after {attempts} attempts: {e}"
                    ) from e
                log.warning("ollama transient error (attempt %d): %s", attempt + 1, e)
                time.sleep(_backoff_s(attempt))
                continue
            message = body.get("message") or {}
            return str(message.get("content") or ""), _usage_from_body(body)
        raise AssertionError("unreachable")

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
        return schema.model_validate(extract_json_object(text)), usage, text
