from __future__ import annotations

from typing import Protocol

from task_market.cancellation import CancelToken, call_with_deadline
from task_market.config import OrchestratorSettings
from task_market.errors import SynthesisFailure, TaskCancelled
from task_market.llm_router import LLMRouter
from task_market.logs import get_logger
from task_market.schemas import ExecutionTrace, StepOutcome, StepStatus

log = get_logger("synthesizer")

NO_RESULTS_MESSAGE = "No relevant results were produced for this task."


class Summarizer(Protocol):
    def summarize(self, text: str, results: list[str]) -> str: ...


def _label(outcome: StepOutcome) -> str:
    name = outcome.worker_name or outcome.worker_id or outcome.capability_id
    if outcome.status == StepStatus.DEGRADED:
        return f"{name} (degraded)"
    return name


def outcome_lines(trace: ExecutionTrace) -> list[str]:
    lines: list[str] = []
    for o in trace.outcomes:
        if not o.usable or o.result is None:
            continue
        lines.append(f"**{_label(o)}**: {o.result.as_text()}")
    return lines


class LLMSummarizer:
    def __init__(self, router: LLMRouter, *, model_ref: str) -> None:
        self._router = router
        self._model_ref = model_ref

    def summarize(self, text: str, results: list[str]) -> str:
        system = "\n".join(
            [
                "You write the final answer for a user from the outputs of hired workers.",
                "Use only the results that help answer the request; ignore irrelevant ones.",
                "Mark information from degraded results as unavailable or uncertain.",
                "Answer in plain prose, concisely.",
            ]
        )
        user = "\n".join([f"Request:\n{text.strip()}", "", "Worker results:", *results])
        answer, _usage = self._router.call_text(
            model_ref=self._model_ref, system=system, user=user, max_output_tokens=800
        )
        return answer


class ResponseSynthesizer:
    def __init__(
        self, summarizer: Summarizer | None = None, *, settings: OrchestratorSettings | None = None
    ) -> None:
        self._summarizer = summarizer
        self._settings = settings or OrchestratorSettings()

    def _summarize(self, text: str, lines: list[str], token: CancelToken | None) -> str:
        assert self._summarizer is not None
        summarizer = self._summarizer
        try:
            answer = call_with_deadline(
                lambda: summarizer.summarize(text, lines),
                timeout_s=self._settings.summarizer_timeout_s,
                token=token,
                label="summarizer",
            )
        except TaskCancelled:
            raise
        except Exception as e:
            raise SynthesisFailure(f"summarizer failed: {e}") from e
        if not isinstance(answer, str) or not answer.strip():
            raise SynthesisFailure("summarizer returned an empty answer")
        return answer.strip()

    def synthesize(
        self, text: str, trace: ExecutionTrace, *, token: CancelToken | None = None
    ) -> str:
        """Final answer for ``text``. Never empty."""
        lines = outcome_lines(trace)
        if not lines:
            return NO_RESULTS_MESSAGE
        # A cancelled task gets the deterministic answer from what already ran.
        if self._summarizer is not None and not trace.cancelled:
            try:
                return self._summarize(text, lines, token)
            except SynthesisFailure as e:
                log.warning("synthesis fallback to concatenation: %s", e)
        return "\n\n".join(lines)
