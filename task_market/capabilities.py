"""Built-in worker capabilities.

These back the default catalog when workers have no HTTP endpoint. Every
handler takes the step parameters and returns a result plus any hires the
worker made while serving the call.
"""

from __future__ import annotations

import ast
import hashlib
import math
import operator
import re
from collections.abc import Callable
from typing import Any

from task_market.schemas import (
    MathResult,
    NestedHire,
    StepResult,
    SummaryResult,
    TextResult,
    WeatherResult,
)

CapabilityOutput = tuple[StepResult, list[NestedHire]]
Capability = Callable[[dict[str, Any]], CapabilityOutput]

WEATHER_TABLE: dict[str, dict[str, Any]] = {
    "new york": {"temp_c": 22, "condition": "Partly Cloudy", "humidity": 65, "wind": "12 km/h NW"},
    "london": {"temp_c": 15, "condition": "Rainy", "humidity": 80, "wind": "18 km/h SW"},
    "tokyo": {"temp_c": 28, "condition": "Sunny", "humidity": 55, "wind": "8 km/h E"},
    "mumbai": {"temp_c": 33, "condition": "Humid", "humidity": 90, "wind": "6 km/h SE"},
    "sydney": {"temp_c": 25, "condition": "Clear", "humidity": 50, "wind": "14 km/h NE"},
    "berlin": {"temp_c": 12, "condition": "Overcast", "humidity": 72, "wind": "20 km/h W"},
    "dubai": {"temp_c": 40, "condition": "Hot", "humidity": 30, "wind": "10 km/h S"},
    "paris": {"temp_c": 18, "condition": "Cloudy", "humidity": 68, "wind": "15 km/h NW"},
}

_CONDITIONS = ["Sunny", "Cloudy", "Rainy", "Windy"]

# The research worker pays this summarizer for its digest.
RESEARCH_DELEGATE = {"worker_id": "summarizer", "capability_id": "summarize", "amount": 0.003}


def _digest(*parts: str) -> int:
    h = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return int(h[:12], 16)


def _sim_tx(*parts: str) -> str:
    return f"sim_tx_{_digest(*parts):012x}"


def _text_param(params: dict[str, Any], *names: str) -> str:
    for name in names:
        value = params.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise ValueError(f"missing parameter: {names[0]}")


def weather(params: dict[str, Any]) -> CapabilityOutput:
    city = str(params.get("city") or "New York").strip() or "New York"
    row = WEATHER_TABLE.get(city.lower())
    if row is None:
        # Unknown cities get stable synthetic readings.
        n = _digest("weather", city.lower())
        row = {
            "temp_c": 5 + n % 35,
            "condition": _CONDITIONS[n % len(_CONDITIONS)],
            "humidity": 30 + n % 60,
            "wind": f"{5 + n % 25} km/h",
        }
    return WeatherResult(city=city.title(), **row), []


def summarize_text(text: str, max_length: int = 150) -> str:
    sentences = [s for s in re.sub(r"([.!?])\s+", r"\1|", text).split("|") if s]
    if len(sentences) <= 2:
        return text[:max_length]
    summary = " ".join(sentences[: math.ceil(len(sentences) / 3)])
    if len(summary) > max_length:
        summary = summary[: max_length - 3] + "..."
    return summary


def summarize(params: dict[str, Any]) -> CapabilityOutput:
    text = _text_param(params, "text", "query")
    max_length = int(params.get("max_length") or params.get("maxLength") or 150)
    return SummaryResult(summary=summarize_text(text, max_length), original_length=len(text)), []


_BIN_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_MAX_EXPONENT = 1000
_MAX_RESULT_DIGITS = 308


class _NonRealResult(ArithmeticError):
    pass


def _power(base: float, exponent: float) -> float:
    if abs(exponent) > _MAX_EXPONENT:
        raise ValueError("exponent too large")
    if base < 0 and not float(exponent).is_integer():
        raise _NonRealResult("fractional power of a negative number")
    # Estimate the result size first; big-integer powers hold the GIL.
    if base not in (0, 1, -1) and exponent * math.log10(abs(base)) > _MAX_RESULT_DIGITS:
        raise OverflowError("result too large")
    return base**exponent


def _eval_node(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow):
            return _power(left, right)
        return _BIN_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    raise ValueError(f"unsupported syntax: {type(node).__name__}")


def solve_math(expression: str) -> MathResult:
    """Evaluate plain arithmetic. ``^`` is a power; results round to 10 places."""
    sanitized = re.sub(r"[^0-9+\-*/().^ %]", "", expression).strip()
    if not sanitized:
        return MathResult(
            expression=expression, value="Invalid expression", steps=["No valid math tokens found."]
        )
    steps = [f"Input: {expression}", f"Sanitized: {sanitized}"]
    try:
        tree = ast.parse(sanitized.replace("^", "**"), mode="eval")
        value = float(_eval_node(tree))
    except ZeroDivisionError:
        return MathResult(
            expression=sanitized,
            value="Undefined or infinite",
            steps=[*steps, "Result is not a finite number."],
        )
    except (_NonRealResult, TypeError):
        return MathResult(
            expression=sanitized,
            value="Undefined or infinite",
            steps=[*steps, "Result is not a real number."],
        )
    except (SyntaxError, ValueError, OverflowError) as e:
        return MathResult(
            expression=sanitized, value="Error", steps=[*steps, f"Evaluation failed: {e}"]
        )
    if not math.isfinite(value):
        return MathResult(
            expression=sanitized,
            value="Undefined or infinite",
            steps=[*steps, "Result is not a finite number."],
        )
    steps.append(f"Result: {value:g}")
    return MathResult(expression=sanitized, value=round(value, 10), steps=steps)


def compute(params: dict[str, Any]) -> CapabilityOutput:
    return solve_math(_text_param(params, "expression", "query", "text")), []


def research(params: dict[str, Any]) -> CapabilityOutput:
    query = _text_param(params, "query", "text")
    notes = (
        f"Findings on {query!r}. Several sources address the question directly. "
        "Primary sources agree on the core facts. Secondary coverage adds context but little "
        "new evidence. Open questions remain around recent developments."
    )
    digest = summarize_text(notes, 200)
    hire = NestedHire(
        worker_id=RESEARCH_DELEGATE["worker_id"],
        capability_id=RESEARCH_DELEGATE["capability_id"],
        amount=RESEARCH_DELEGATE["amount"],
        tx_id=_sim_tx("research", query),
    )
    return TextResult(text=digest, source="research"), [hire]


_POSITIVE = {"good", "great", "love", "happy", "excellent", "amazing", "wonderful", "like", "best"}
_NEGATIVE = {"bad", "terrible", "hate", "sad", "awful", "poor", "worst", "angry", "dislike"}


def sentiment(params: dict[str, Any]) -> CapabilityOutput:
    text = _text_param(params, "text", "query")
    words = re.findall(r"[a-z']+", text.lower())
    pos = sum(1 for w in words if w in _POSITIVE)
    neg = sum(1 for w in words if w in _NEGATIVE)
    total = pos + neg
    score = 0.0 if total == 0 else (pos - neg) / total
    label = "positive" if score > 0 else "negative" if score < 0 else "neutral"
    return TextResult(text=f"Sentiment: {label} (score {score:.2f})", source="sentiment"), []


def translate(params: dict[str, Any]) -> CapabilityOutput:
    text = _text_param(params, "text", "query")
    target = str(params.get("target_lang") or params.get("targetLang") or "Spanish")
    return TextResult(text=f"[{target}] {text}", source="translate"), []


HANDLERS: dict[str, Capability] = {
    "weather": weather,
    "summarize": summarize,
    "math": compute,
    "research": research,
    "sentiment": sentiment,
    "translate": translate,
}


def degraded_result(category: str, params: dict[str, Any]) -> StepResult:
    """Placeholder returned when no worker could serve a step."""
    if category == "data":
        city = str(params.get("city") or "the requested city")
        return TextResult(text=f"Weather data for {city} is temporarily unavailable.", source="degraded")
    if category == "summarize":
        text = str(params.get("text") or "")
        return SummaryResult(summary=text[:100] or "Summary unavailable.", original_length=len(text))
    if category == "compute":
        expr = str(params.get("expression") or "")
        return MathResult(expression=expr, value="Unavailable", steps=["No solver available."])
    return TextResult(
        text=f"The {category} service is temporarily unavailable; no result was produced.",
        source="degraded",
    )
