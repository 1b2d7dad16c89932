from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, TypeVar

from pydantic import BaseModel

from task_market.config import ProviderSettings
from task_market.llm_openai import Usage
from task_market.model_refs import split_provider_model

TModel = TypeVar("TModel", bound=BaseModel)


class JSONClient(Protocol):
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
    ) -> tuple[str, Usage]: ...

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
    ) -> tuple[TModel, Usage, str]: ...


_MISSING_HINT = {
    "openai": "set OPENAI_API_KEY (or GROQ_API_KEY with OPENAI_BASE_URL)",
    "google": "set GOOGLE_API_KEY",
    "ollama": "set OLLAMA_BASE_URL",
}


@dataclass(frozen=True)
class LLMRouter:
    openai: JSONClient | None = None
    google: JSONClient | None = None
    ollama: JSONClient | None = None

    def _client_for(self, model_ref: str) -> tuple[JSONClient, str]:
        provider, model = split_provider_model(model_ref)
        if provider not in _MISSING_HINT:
            raise ValueError(f"unsupported provider {provider!r} for model_ref={model_ref!r}")
        client = getattr(self, provider)
        if client is None:
            raise ValueError(f"missing {provider} client ({_MISSING_HINT[provider]})")
        return client, model

    def call_text(
        self,
        *,
        model_ref: str,
        system: str,
        user: str,
        temperature: float = 0.0,
        max_output_tokens: int = 1500,
        max_retries: int = 3,
    ) -> tuple[str, Usage]:
        client, model = self._client_for(model_ref)
        return client.call_text(
            model=model,
            system=system,
            user=user,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            max_retries=max_retries,
        )

    def call_json(
        self,
        *,
        model_ref: str,
        system: str,
        user: str,
        schema: type[TModel],
        temperature: float = 0.0,
        max_output_tokens: int = 1500,
        max_retries: int = 3,
    ) -> tuple[TModel, Usage, str]:
        client, model = self._client_for(model_ref)
        return client.call_json(
            model=model,
            system=system,
            user=user,
            schema=schema,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            max_retries=max_retries,
        )


def build_router(providers: ProviderSettings) -> LLMRouter:
    """Instantiate a client for every provider that has credentials."""
    openai_client = None
    google_client = None
    if providers.openai_api_key:
        from task_market.llm_openai import OpenAIJSONClient

        openai_client = OpenAIJSONClient(
            api_key=providers.openai_api_key, base_url=providers.openai_base_url
        )
    if providers.google_api_key:
        from task_market.llm_google import GoogleJSONClient

        google_client = GoogleJSONClient(api_key=providers.google_api_key)

    from task_market.llm_ollama import OllamaJSONClient

    return LLMRouter(
        openai=openai_client,
        google=google_client,
        ollama=OllamaJSONClient(base_url=providers.ollama_base_url),
    )
