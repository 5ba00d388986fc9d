"""Shared pytest configuration: no test talks to a real AI provider."""

import pytest

from content_pipeline.models import Template

PRODUCT_NOTE_BODY = (
    "{{greeting}}, the search team shipped faster filters this week. "
    "Teams can now find records in less time. Read the guide to get started."
)


@pytest.fixture(autouse=True)
def _offline(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("MONITOR_ENABLED", "false")


@pytest.fixture
def product_note():
    return Template(
        id="product_note",
        name="Product Note for Customer Announcements",
        template_type="product_note",
        content=PRODUCT_NOTE_BODY,
        variables={"greeting": "string"},
        target_audience="customers",
    )


@pytest.fixture
def product_note_request():
    return {
        "templateId": "product_note",
        "customVariables": {"greeting": "Hello"},
        "targetAudience": "customers",
        "useAI": False,
    }
