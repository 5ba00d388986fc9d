"""AI provider capability interface and its OpenAI / unavailable variants.

Callers only ever see ``complete(prompt, max_tokens=..., temperature=...)``.
Provider failures raise ``ProviderError``; a completed response with no text
returns ``""`` so callers can tell "no content" apart from "call failed".
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, runtime_checkable

from openai import OpenAI, OpenAIError

from .config import Settings, get_settings
from .errors import ProviderError

logger = logging.getLogger(__name__)


@runtime_checkable
class AIProvider(Protocol):
    name: str
    available: bool

    def complete(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str: ...


# --- Helpers --------------------------------------------------------------

def build_client(api_key: Optional[str] = None, *, timeout: float | None = None) -> OpenAI:
    """Create an OpenAI client; separated for easier testing."""
    if timeout is None:
        return OpenAI(api_key=api_key)
    return OpenAI(api_key=api_key, timeout=timeout)


def _require_api_key(settings: Settings) -> str:
    if not settings.openai_api_key:
        raise ProviderError(
            "OPENAI_API_KEY is required. Set it in the environment or .env file."
        )
    return settings.openai_api_key


def _response_text_or_raise(response: object, *, step: str) -> str:
    """Extract response text, raising ProviderError when the call did not complete."""
    status = getattr(response, "status", None)
    if status == "incomplete":
        details = getattr(response, "incomplete_details", None)
        reason = getattr(details, "reason", None) if details else None
        hint = ""
        if reason == "max_output_tokens":
            hint = " Increase MAX_TOKENS or shorten the prompt."
        raise ProviderError(f"{step} response incomplete (reason={reason}).{hint}")

    err = getattr(response, "error", None)
    if err:
        raise ProviderError(f"{step} response error: {err}")

    text = getattr(response, "output_text", None)
    if isinstance(text, str):
        return text.strip()
    return ""


# --- Providers ------------------------------------------------------------

class OpenAIProvider:
    """Completion provider backed by the OpenAI Responses API."""

    name = "openai"
    available = True

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        *,
        model: str | None = None,
        settings: Settings | None = None,
        system_prompt: str = "You write clear, accurate business content.",
    ):
        self.settings = settings or get_settings()
        self.model = model or self.settings.generation_model
        self.system_prompt = system_prompt
        self._client = client

    def _get_client(self) -> OpenAI:
        if self._client is None:
            api_key = _require_api_key(self.settings)
            self._client = build_client(api_key, timeout=self.settings.ai_timeout_seconds)
        return self._client

    def complete(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        client = self._get_client()
        try:
            response = client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": prompt},
                ],
                max_output_tokens=max_tokens or self.settings.max_tokens,
                temperature=self.settings.temperature if temperature is None else temperature,
            )
        except OpenAIError as exc:
            raise ProviderError(f"Completion request failed: {exc}") from exc
        return _response_text_or_raise(response, step="Completion")

    def with_model(self, model: str) -> "OpenAIProvider":
        """A provider sharing this one's client and settings but calling ``model``."""
        return OpenAIProvider(
            self._client, model=model, settings=self.settings, system_prompt=self.system_prompt
        )

    def health(self) -> dict:
        return {"status": "healthy", "provider": self.name, "model": self.model}


class UnavailableProvider:
    """Explicit stand-in when no provider is configured; every call raises."""

    name = "unavailable"
    available = False

    def __init__(self, reason: str = "No AI provider configured."):
        self.reason = reason

    def complete(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        raise ProviderError(f"AI provider unavailable: {self.reason}")

    def health(self) -> dict:
        return {"status": "warning", "provider": self.name, "reason": self.reason}


def resolve_provider(settings: Settings | None = None) -> AIProvider:
    """Return an OpenAI provider when a key is configured, else the unavailable variant."""
    settings = settings or get_settings()
    if settings.openai_api_key:
        return OpenAIProvider(settings=settings)
    logger.info("OPENAI_API_KEY not set; AI steps will use local fallbacks")
    return UnavailableProvider("OPENAI_API_KEY not set.")


def for_classification(provider: AIProvider, settings: Settings | None = None) -> AIProvider:
    """Point an OpenAI provider at the classifier model; other providers pass through."""
    if isinstance(provider, OpenAIProvider):
        settings = settings or provider.settings
        return provider.with_model(settings.classifier_model)
    return provider
