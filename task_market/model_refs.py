from __future__ import annotations

_ALIASES = {
    "local": "ollama",
    "gemini": "google",
    "groq": "openai",
}


def split_provider_model(model_ref: str) -> tuple[str, str]:
    """``"provider:model"`` -> ``(provider, model)``; a bare model name is OpenAI."""
    ref = model_ref.strip()
    if not ref:
        raise ValueError("empty model ref")
    if ":" not in ref:
        return "openai", ref
    provider, model = ref.split(":", 1)
    provider = provider.strip().lower()
    provider = _ALIASES.get(provider, provider)
    model = model.strip()
    if not model:
        raise ValueError(f"model ref {model_ref!r} names no model")
    return provider, model
