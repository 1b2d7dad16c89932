from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv


def repo_root() -> Path:
    # Project root is the directory that contains the `task_market/` package.
    return Path(__file__).resolve().parents[1]


def load_env() -> None:
    # Prefer a project-local `.env`; fall back to searching from CWD.
    root_env = repo_root() / ".env"
    env_path = str(root_env) if root_env.exists() else (find_dotenv(usecwd=True) or str(root_env))
    load_dotenv(env_path)


DEFAULT_BUDGET_LIMIT = 0.05


@dataclass(frozen=True)
class ProviderSettings:
    openai_api_key: str | None
    openai_base_url: str | None
    google_api_key: str | None
    ollama_base_url: str


@dataclass(frozen=True)
class OrchestratorSettings:
    max_retries: int = 2
    planner_timeout_s: float = 20.0
    worker_timeout_s: float = 15.0
    settlement_timeout_s: float = 10.0
    summarizer_timeout_s: float = 20.0

    # Ranking: reputation^2 / ((price + epsilon) * k).
    efficiency_k: float = 10_000.0
    efficiency_epsilon: float = 1e-6

    rep_gain_on_success: int = 1
    rep_loss_on_failure: int = 5

    max_delegation_depth: int = 4
    max_plan_steps: int = 8

    planner_model_ref: str | None = None
    summarizer_model_ref: str | None = None

    facilitator_url: str | None = None
    payer_id: str = "requester"


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number") from e


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an int") from e


def _env_str(name: str) -> str | None:
    return (os.getenv(name) or "").strip() or None


def load_provider_settings() -> ProviderSettings:
    load_env()
    return ProviderSettings(
        openai_api_key=_env_str("OPENAI_API_KEY") or _env_str("GROQ_API_KEY"),
        openai_base_url=_env_str("OPENAI_BASE_URL"),
        google_api_key=_env_str("GOOGLE_API_KEY") or _env_str("GEMINI_API_KEY"),
        ollama_base_url=_env_str("OLLAMA_BASE_URL") or "http://127.0.0.1:11434",
    )


def load_settings() -> OrchestratorSettings:
    load_env()
    defaults = OrchestratorSettings()
    settings = OrchestratorSettings(
        max_retries=_env_int("TM_MAX_RETRIES", defaults.max_retries),
        planner_timeout_s=_env_float("TM_PLANNER_TIMEOUT_S", defaults.planner_timeout_s),
        worker_timeout_s=_env_float("TM_WORKER_TIMEOUT_S", defaults.worker_timeout_s),
        settlement_timeout_s=_env_float("TM_SETTLEMENT_TIMEOUT_S", defaults.settlement_timeout_s),
        summarizer_timeout_s=_env_float("TM_SUMMARIZER_TIMEOUT_S", defaults.summarizer_timeout_s),
        efficiency_k=_env_float("TM_EFFICIENCY_K", defaults.efficiency_k),
        efficiency_epsilon=_env_float("TM_EFFICIENCY_EPSILON", defaults.efficiency_epsilon),
        rep_gain_on_success=_env_int("TM_REP_GAIN", defaults.rep_gain_on_success),
        rep_loss_on_failure=_env_int("TM_REP_LOSS", defaults.rep_loss_on_failure),
        max_delegation_depth=_env_int("TM_MAX_DELEGATION_DEPTH", defaults.max_delegation_depth),
        max_plan_steps=_env_int("TM_MAX_PLAN_STEPS", defaults.max_plan_steps),
        planner_model_ref=_env_str("TM_PLANNER_MODEL"),
        summarizer_model_ref=_env_str("TM_SUMMARIZER_MODEL"),
        facilitator_url=_env_str("TM_FACILITATOR_URL") or _env_str("X402_FACILITATOR_URL"),
        payer_id=_env_str("TM_PAYER_ID") or defaults.payer_id,
    )
    if settings.max_retries < 0:
        raise ValueError("TM_MAX_RETRIES must be >= 0")
    if settings.efficiency_k <= 0:
        raise ValueError("TM_EFFICIENCY_K must be > 0")
    return settings
