from __future__ import annotations

import pytest
from pydantic import BaseModel

from task_market.llm_openai import OpenAIJSONClient, Usage, _resolve_max_retries


class _FakeBadRequest(Exception):
    pass


class _Message:
    def __init__(self, content: str) -> None:
        self.content = content


class _Choice:
    def __init__(self, content: str) -> None:
        self.message = _Message(content)


class _FakeUsage:
    def __init__(self, *, prompt_tokens: int, completion_tokens: int) -> None:
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens


class _FakeCompletion:
    def __init__(self, content: str, *, prompt_tokens: int = 0, completion_tokens: int = 0) -> None:
        self.choices = [_Choice(content)]
        self.usage = _FakeUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)


class _FakeCompletions:
    def __init__(self, outcomes: list[object]) -> None:
        self._outcomes = list(outcomes)
        self.params: list[dict] = []

    def create(self, **kwargs) -> object:
        self.params.append(dict(kwargs))
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _FakeChat:
    def __init__(self, completions: _FakeCompletions) -> None:
        self.completions = completions


class _FakeClient:
    def __init__(self, outcomes: list[object]) -> None:
        self.chat = _FakeChat(_FakeCompletions(outcomes))


def _make_client(*, outcomes: list[object]) -> tuple[OpenAIJSONClient, _FakeCompletions]:
    client = OpenAIJSONClient(api_key="test-key", base_url=None)
    fake = _FakeClient(outcomes)
    client._client = fake  # type: ignore[assignment]
    return client, fake.chat.completions


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("task_market.llm_openai._backoff_s", lambda attempt: 0.0)
    monkeypatch.delenv("TM_OPENAI_MAX_RETRIES", raising=False)


def test_resolve_max_retries_rejects_invalid_and_too_high_values(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    assert _resolve_max_retries(requested=2, env_name="TM_OPENAI_MAX_RETRIES") == 2
    with pytest.raises(ValueError, match=r"<= 3"):
        _resolve_max_retries(requested=9, env_name="TM_OPENAI_MAX_RETRIES")
    with pytest.raises(ValueError, match=r"> 0"):
        _resolve_max_retries(requested=0, env_name="TM_OPENAI_MAX_RETRIES")
    monkeypatch.setenv("TM_OPENAI_MAX_RETRIES", "abc")
    with pytest.raises(ValueError, match="must be an int"):
        _resolve_max_retries(requested=3, env_name="TM_OPENAI_MAX_RETRIES")
    monkeypatch.setenv("TM_OPENAI_MAX_RETRIES", "4")
    with pytest.raises(ValueError, match=r"<= 3"):
        _resolve_max_retries(requested=3, env_name="TM_OPENAI_MAX_RETRIES")


def test_call_text_retries_only_transient_errors() -> None:
    client, completions = _make_client(
        outcomes=[
            TimeoutError("t1"),
            TimeoutError("t2"),
            _FakeCompletion("ok", prompt_tokens=11, completion_tokens=7),
        ]
    )

    text, usage = client.call_text(model="gpt-4o-mini", system="s", user="u")

    assert text == "ok"
    assert usage == Usage(calls=1, input_tokens=11, output_tokens=7)
    assert len(completions.params) == 3
    assert completions.params[0]["messages"][0] == {"role": "system", "content": "s"}


def test_call_text_gives_up_after_max_retries() -> None:
    client, completions = _make_client(outcomes=[TimeoutError("t")] * 3)
    with pytest.raises(RuntimeError, match="after 2 attempts"):
        client.call_text(model="m", system="s", user="u", max_retries=2)
    assert len(completions.params) == 2


def test_call_text_does_not_retry_non_transient_errors() -> None:
    client, completions = _make_client(outcomes=[ValueError("bad"), _FakeCompletion("unused")])
    with pytest.raises(ValueError, match="bad"):
        client.call_text(model="m", system="s", user="u")
    assert len(completions.params) == 1


def test_unsupported_parameters_are_dropped_and_remembered(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("task_market.llm_openai.BadRequestError", _FakeBadRequest)
    client, completions = _make_client(
        outcomes=[
            _FakeBadRequest("Unsupported value: 'temperature'"),
            _FakeBadRequest("response_format is not supported"),
            _FakeCompletion('{"ok": true}'),
            _FakeCompletion('{"ok": false}'),
        ]
    )

    client.call_text(model="reasoner", system="s", user="u", json_mode=True)
    client.call_text(model="reasoner", system="s", user="u", json_mode=True)

    first, second, third, fourth = completions.params
    assert "temperature" in first and "response_format" in first
    assert "temperature" not in second and "response_format" in second
    assert "temperature" not in third and "response_format" not in third
    assert "temperature" not in fourth and "response_format" not in fourth


class _Verdict(BaseModel):
    ok: bool


def test_call_json_parses_fenced_output() -> None:
    client, completions = _make_client(
        outcomes=[_FakeCompletion('```json\n{"ok": true}\n```', prompt_tokens=3, completion_tokens=2)]
    )
    parsed, usage, raw = client.call_json(model="m", system="s", user="u", schema=_Verdict)
    assert parsed.ok is True
    assert usage.input_tokens == 3
    assert raw.startswith("```json")
    assert completions.params[0]["response_format"] == {"type": "json_object"}
