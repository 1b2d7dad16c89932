from __future__ import annotations

import re
from typing import Any, Protocol

from pydantic import BaseModel, Field

from task_market.capabilities import WEATHER_TABLE
from task_market.cancellation import CancelToken, call_with_deadline
from task_market.config import OrchestratorSettings
from task_market.errors import PlanningFailure, TaskCancelled
from task_market.llm_router import LLMRouter
from task_market.logs import get_logger
from task_market.schemas import PlannedStep, PlanResult

log = get_logger("planner")


class Planner(Protocol):
    def plan(self, text: str, catalog: list[str]) -> list[PlannedStep]: ...


class LLMPlanStep(BaseModel):
    capability: str
    params: dict[str, Any] = Field(default_factory=dict)


class LLMPlan(BaseModel):
    steps: list[LLMPlanStep] = Field(default_factory=list)
    reasoning: str = ""


def planner_system_prompt() -> str:
    return "\n".join(
        [
            "You are the planner of an agent that hires paid specialist workers.",
            "Split the user's task into the fewest steps that answer it; every step costs money.",
            "Return JSON only.",
        ]
    )


def planner_user_prompt(*, text: str, catalog: list[str], max_steps: int) -> str:
    lines = [
        f"Task:\n{text.strip()}",
        "",
        "Available workers (capability = category):",
        *catalog,
        "",
        "Rules:",
        f"- At most {max_steps} steps, in execution order.",
        "- capability must be one of the listed categories.",
        '- data steps take {"city": ...}; compute steps take {"expression": ...};',
        '  summarize, sentiment and translate steps take {"text": ...}; research takes {"query": ...}.',
        "",
        "Return JSON schema:",
        '{ "steps": [ { "capability": "data", "params": { "city": "Tokyo" } } ], "reasoning": "..." }',
    ]
    return "\n".join(lines)


class LLMPlanner:
    def __init__(self, router: LLMRouter, *, model_ref: str, max_steps: int = 8) -> None:
        self._router = router
        self._model_ref = model_ref
        self._max_steps = int(max_steps)

    def plan(self, text: str, catalog: list[str]) -> list[PlannedStep]:
        parsed, usage, _raw = self._router.call_json(
            model_ref=self._model_ref,
            system=planner_system_prompt(),
            user=planner_user_prompt(text=text, catalog=catalog, max_steps=self._max_steps),
            schema=LLMPlan,
        )
        log.info(
            "llm plan model=%s steps=%d tokens_in=%d tokens_out=%d",
            self._model_ref,
            len(parsed.steps),
            usage.input_tokens,
            usage.output_tokens,
        )
        return [
            PlannedStep(capability_id=s.capability.strip(), parameters=dict(s.params))
            for s in parsed.steps
            if s.capability.strip()
        ]


_ARITHMETIC_RE = re.compile(r"\d\s*[-+*/^%]\s*[\d(]")
_EXPRESSION_RE = re.compile(r"[\d.()+\-*/^% ]+")
_CITY_AFTER_WEATHER_RE = re.compile(r"weather\s+(?:in|for|at)?\s*([a-z][a-z-]*)", re.IGNORECASE)
_CITY_BEFORE_WEATHER_RE = re.compile(r"\b(?:in|for|at)\s+([a-z][a-z-]*)", re.IGNORECASE)

# Category order is the order steps are emitted in.
_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("data", ("weather", "temperature", "forecast")),
    ("summarize", ("summarize", "summarise", "summary", "tl;dr")),
    ("sentiment", ("sentiment", "feeling", "tone")),
    ("compute", ("calculate", "compute", "math", "solve")),
    ("research", ("research", "find out", "look up", "what is", "who is")),
    ("translate", ("translate", "translation")),
]


def _extract_city(text: str) -> str:
    lowered = text.lower()
    for city in WEATHER_TABLE:
        if re.search(rf"\b{re.escape(city)}\b", lowered):
            return city.title()
    for pattern in (_CITY_AFTER_WEATHER_RE, _CITY_BEFORE_WEATHER_RE):
        m = pattern.search(text)
        if m and m.group(1).lower() not in {"the", "a", "my", "today", "tomorrow"}:
            return m.group(1).title()
    return "New York"


def _extract_expression(text: str) -> str | None:
    candidates = [c.strip() for c in _EXPRESSION_RE.findall(text)]
    for c in candidates:
        if _ARITHMETIC_RE.search(c):
            return c
    return None


def _params_for(category: str, text: str) -> dict[str, Any]:
    if category == "data":
        return {"city": _extract_city(text)}
    if category == "compute":
        return {"expression": _extract_expression(text) or "42 * 3"}
    if category == "research":
        return {"query": text}
    if category == "translate":
        return {"text": text, "target_lang": "Spanish"}
    return {"text": text}


def rule_based_plan(text: str, *, max_steps: int = 8) -> PlanResult:
    """Keyword planner used when no LLM plan is available. Never fails."""
    lowered = text.lower()
    matched: list[str] = []
    for category, keywords in _RULES:
        hit = any(k in lowered for k in keywords)
        if category == "compute" and _ARITHMETIC_RE.search(lowered):
            hit = True
        if hit:
            matched.append(category)

    reasoning = "Rule-based planning (LLM unavailable)."
    if not matched:
        matched = ["research"]
        reasoning += " No specific intent detected, defaulting to research."

    steps = [PlannedStep(capability_id=c, parameters=_params_for(c, text)) for c in matched]
    return PlanResult(steps=steps[: max(1, max_steps)], source="rules", reasoning=reasoning)


class PlannerAdapter:
    """Runs the LLM planner under a deadline and falls back to keyword rules."""

    def __init__(
        self,
        planner: Planner | None,
        *,
        catalog: list[str] | None = None,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self._planner = planner
        self._catalog = list(catalog or [])
        self._settings = settings or OrchestratorSettings()

    def _primary(self, text: str, token: CancelToken | None) -> list[PlannedStep]:
        assert self._planner is not None
        planner = self._planner
        try:
            steps = call_with_deadline(
                lambda: planner.plan(text, self._catalog),
                timeout_s=self._settings.planner_timeout_s,
                token=token,
                label="planner",
            )
        except TaskCancelled:
            raise
        except Exception as e:
            raise PlanningFailure(f"planner failed: {e}") from e
        if not isinstance(steps, list) or not all(isinstance(s, PlannedStep) for s in steps):
            raise PlanningFailure("planner returned a malformed plan")
        if not steps:
            raise PlanningFailure("planner returned an empty plan")
        return steps

    def plan(self, text: str, *, token: CancelToken | None = None) -> PlanResult:
        max_steps = self._settings.max_plan_steps
        if self._planner is not None:
            try:
                steps = self._primary(text, token)
            except PlanningFailure as e:
                log.warning("planner fallback to rules: %s", e)
            else:
                if len(steps) > max_steps:
                    log.warning("plan truncated from %d to %d steps", len(steps), max_steps)
                return PlanResult(
                    steps=steps[:max_steps],
                    source="llm",
                    reasoning=f"Planned by language model ({len(steps)} step(s)).",
                )
        return rule_based_plan(text, max_steps=max_steps)
