from types import SimpleNamespace

import pytest
from openai import OpenAIError

import content_pipeline.providers as providers
from content_pipeline.config import Settings
from content_pipeline.errors import ProviderError
from content_pipeline.providers import (
    OpenAIProvider,
    UnavailableProvider,
    build_client,
    for_classification,
    resolve_provider,
)


class FakeResponses:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


def fake_client(response=None, error=None):
    return SimpleNamespace(responses=FakeResponses(response, error))


def completed(text):
    return SimpleNamespace(status="completed", error=None, output_text=text)


def test_client_timeout_comes_from_settings(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    captured = {}

    def fake_build_client(api_key=None, *, timeout=None):
        captured.update(api_key=api_key, timeout=timeout)
        return fake_client(completed("ok"))

    monkeypatch.setattr(providers, "build_client", fake_build_client)
    provider = OpenAIProvider(settings=Settings(ai_timeout_seconds=12.5))

    assert provider.complete("hi") == "ok"
    assert captured == {"api_key": "sk-test", "timeout": 12.5}


def test_build_client_applies_timeout():
    client = build_client("sk-test", timeout=7.0)
    assert client.timeout == 7.0


def test_missing_key_is_a_provider_error():
    provider = OpenAIProvider(settings=Settings())
    with pytest.raises(ProviderError, match="OPENAI_API_KEY is required"):
        provider.complete("hi")


def test_request_uses_model_and_limits():
    client = fake_client(completed("  Drafted copy.  "))
    provider = OpenAIProvider(client, model="test-model", settings=Settings(max_tokens=300))

    assert provider.complete("Write a note.", temperature=0.1) == "Drafted copy."

    call = client.responses.calls[0]
    assert call["model"] == "test-model"
    assert call["max_output_tokens"] == 300
    assert call["temperature"] == 0.1
    assert call["input"][-1] == {"role": "user", "content": "Write a note."}


def test_sdk_error_becomes_provider_error():
    provider = OpenAIProvider(fake_client(error=OpenAIError("rate limited")), settings=Settings())
    with pytest.raises(ProviderError, match="rate limited") as excinfo:
        provider.complete("hi")
    assert isinstance(excinfo.value.__cause__, OpenAIError)


def test_incomplete_response_is_an_error():
    response = SimpleNamespace(
        status="incomplete",
        incomplete_details=SimpleNamespace(reason="max_output_tokens"),
        error=None,
        output_text="half a sen",
    )
    provider = OpenAIProvider(fake_client(response), settings=Settings())
    with pytest.raises(ProviderError, match="max_output_tokens") as excinfo:
        provider.complete("hi")
    assert "Increase MAX_TOKENS" in str(excinfo.value)


def test_response_error_field_is_an_error():
    response = SimpleNamespace(status="failed", error="server_error", output_text=None)
    provider = OpenAIProvider(fake_client(response), settings=Settings())
    with pytest.raises(ProviderError, match="server_error"):
        provider.complete("hi")


@pytest.mark.parametrize("output_text", ["", "   ", None])
def test_empty_response_is_empty_text_not_an_error(output_text):
    response = SimpleNamespace(status="completed", error=None, output_text=output_text)
    provider = OpenAIProvider(fake_client(response), settings=Settings())
    assert provider.complete("hi") == ""


def test_resolve_provider_without_key_is_unavailable():
    provider = resolve_provider(Settings())
    assert isinstance(provider, UnavailableProvider)
    assert provider.available is False
    with pytest.raises(ProviderError, match="unavailable"):
        provider.complete("hi")


def test_resolve_provider_with_key_uses_generation_model(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    provider = resolve_provider(Settings(generation_model="writer-model"))
    assert isinstance(provider, OpenAIProvider)
    assert provider.model == "writer-model"


def test_classification_uses_classifier_model_and_shares_client():
    client = fake_client(completed("competitor:0.9"))
    settings = Settings(generation_model="writer-model", classifier_model="tagger-model")
    provider = OpenAIProvider(client, settings=settings)

    tagger = for_classification(provider, settings)

    assert tagger.model == "tagger-model"
    assert provider.model == "writer-model"
    tagger.complete("classify")
    assert client.responses.calls[0]["model"] == "tagger-model"


def test_classification_passes_other_providers_through():
    unavailable = UnavailableProvider()
    assert for_classification(unavailable, Settings()) is unavailable
