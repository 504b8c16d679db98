# User value: This file picks a working AI backend per task, and falls back when the preferred one is not set up.
import logging
from typing import Optional

import config
from services.ai.base import AIProvider, ModelParams, ProviderUnavailableError
from services.ai.providers import PROVIDER_CLASSES

logger = logging.getLogger("api.ai.registry")


def _credentials(provider: str) -> tuple[str, str]:
    if provider == "openai":
        return config.LLM_OPENAI_API_KEY, ""
    if provider == "anthropic":
        return config.LLM_ANTHROPIC_API_KEY, ""
    if provider == "gemini":
        return config.LLM_GEMINI_API_KEY, ""
    if provider == "openrouter":
        return config.LLM_OPENROUTER_API_KEY, config.LLM_OPENROUTER_BASE_URL
    if provider == "custom":
        return config.LLM_CUSTOM_API_KEY, config.LLM_CUSTOM_BASE_URL
    return "", ""


def mask_secret(value: str) -> str | None:
    if not value:
        return None
    if len(value) <= 8:
        return "****"
    return f"{value[:3]}****{value[-4:]}"


def build_provider(provider: str, params: Optional[ModelParams] = None) -> AIProvider:
    cls = PROVIDER_CLASSES.get((provider or "").strip().lower())
    if cls is None:
        raise ProviderUnavailableError(f"Unknown AI provider '{provider}'")
    api_key, base_url = _credentials(cls.name)
    return cls(api_key=api_key, base_url=base_url, params=params)


class ProviderRegistry:
    """Resolves the provider for a task from live settings.

    Configuration presence is checked locally; nothing here talks to the network.
    """

    def __init__(self, settings_service, fallback_order: Optional[list[str]] = None, providers: Optional[dict] = None):
        self.settings_service = settings_service
        self.fallback_order = list(fallback_order or config.PROVIDER_FALLBACK_ORDER)
        self._providers: dict[str, AIProvider] = dict(providers or {})

    def _base(self, name: str) -> AIProvider:
        if name not in self._providers:
            self._providers[name] = build_provider(name)
        return self._providers[name]

    def is_configured(self, name: str) -> bool:
        try:
            return self._base(name).is_configured()
        except ProviderUnavailableError:
            return False

    def get_provider(self, task: str) -> AIProvider:
        provider_name, params = self.settings_service.task_params(task)
        if self.is_configured(provider_name):
            return self._base(provider_name).with_params(params)

        for candidate in self.fallback_order:
            if candidate == provider_name or not self.is_configured(candidate):
                continue
            fallback = self._base(candidate)
            # the selected model name belongs to the other vendor
            fallback_params = ModelParams(
                model="",
                temperature=params.temperature,
                max_tokens=params.max_tokens,
                top_p=params.top_p,
            )
            logger.warning(
                "ai_provider_fallback task=%s selected=%s fallback=%s",
                task,
                provider_name,
                candidate,
            )
            return fallback.with_params(fallback_params)

        raise ProviderUnavailableError(
            f"No configured AI provider for task '{task}' (selected '{provider_name}')"
        )

    def status(self) -> list[dict]:
        names = list(dict.fromkeys([*self.fallback_order, *PROVIDER_CLASSES.keys()]))
        out = []
        for name in names:
            api_key, base_url = _credentials(name)
            out.append(
                {
                    "provider": name,
                    "configured": self.is_configured(name),
                    "api_key": mask_secret(api_key),
                    "base_url": base_url or None,
                }
            )
        return out
