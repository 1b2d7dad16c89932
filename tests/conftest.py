from __future__ import annotations

import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    project_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(project_root))


@pytest.fixture
def bus():
    from task_market.events import EventBus

    return EventBus()


@pytest.fixture
def registry():
    from task_market.registry import default_registry

    return default_registry()


@pytest.fixture(autouse=True)
def _clean_task_market_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep a developer's LLM or facilitator settings out of the test runs.
    for name in (
        "TM_PLANNER_MODEL",
        "TM_SUMMARIZER_MODEL",
        "TM_FACILITATOR_URL",
        "X402_FACILITATOR_URL",
        "TM_MAX_RETRIES",
        "TM_WORKER_TIMEOUT_S",
        "TM_SETTLEMENT_TIMEOUT_S",
    ):
        monkeypatch.delenv(name, raising=False)
