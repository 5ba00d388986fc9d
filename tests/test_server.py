import pytest
from fastapi.testclient import TestClient

from content_pipeline.monitor import PipelineMonitor
from content_pipeline.orchestrator import ContentPipelineOrchestrator
from content_pipeline.providers import UnavailableProvider
from content_pipeline.registry import TemplateRegistry
from content_pipeline.server import app, get_monitor, get_orchestrator
from content_pipeline.store import InMemoryRecordStore

GOOD_CONTENT = {
    "title": "Product Note for Customer Announcements",
    "content": (
        "The search team shipped faster filters this week. "
        "Teams can now find records in less time. "
        "Read the guide to get started."
    ),
}


@pytest.fixture
def orchestrator(product_note):
    return ContentPipelineOrchestrator(
        InMemoryRecordStore(),
        registry=TemplateRegistry([product_note]),
        provider=UnavailableProvider(),
    )


@pytest.fixture
def client(orchestrator):
    monitor = PipelineMonitor(
        orchestrator.events,
        probes=orchestrator.component_probes(),
        settings=orchestrator.settings,
        memory_probe=lambda: 0.1,
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_monitor] = lambda: monitor
    yield TestClient(app)
    app.dependency_overrides.clear()
    monitor.close()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_cors_wildcard_disables_credentials():
    cors = next(m for m in app.user_middleware if m.cls.__name__ == "CORSMiddleware")
    assert cors.kwargs["allow_origins"] == ["*"]
    assert cors.kwargs["allow_credentials"] is False


def test_run_pipeline_created(client, product_note_request):
    resp = client.post("/pipeline/run", json=product_note_request)
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["state"] == "done"
    assert body["content"]["body"].startswith("Hello, the search team")
    assert body["approval"]["required"] is True


def test_run_pipeline_unknown_template_is_404(client):
    resp = client.post("/pipeline/run", json={"templateId": "missing"})
    assert resp.status_code == 404
    assert "missing" in resp.json()["detail"]


def test_run_pipeline_invalid_request_is_400(client):
    resp = client.post("/pipeline/run", json={"priority": "someday"})
    assert resp.status_code == 400
    assert "Schema validation failed" in resp.json()["detail"]


def test_batch_isolates_failures(client, product_note_request):
    resp = client.post(
        "/pipeline/batch",
        json={"requests": [product_note_request, {"templateId": "missing"}], "max_workers": 2},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["total_requests"] == 2
    assert body["successful_requests"] == 1
    assert body["failed_requests"] == 1
    assert body["items"][0]["success"] is True
    assert body["items"][1]["run"] is None
    assert "missing" in body["items"][1]["error"]


@pytest.mark.parametrize(
    "body",
    [
        {"requests": "nope"},
        {},
        {"requests": [], "max_workers": "many"},
        {"requests": [], "max_workers": 0},
        {"requests": [], "max_workers": [2]},
    ],
)
def test_malformed_batch_body_is_422(client, body):
    resp = client.post("/pipeline/batch", json=body)
    assert resp.status_code == 422


def test_batch_accepts_numeric_string_workers(client, product_note_request):
    resp = client.post(
        "/pipeline/batch", json={"requests": [product_note_request], "max_workers": "2"}
    )
    assert resp.status_code == 200
    assert resp.json()["successful_requests"] == 1


def test_validate_content(client):
    resp = client.post("/validate", json=GOOD_CONTENT)
    assert resp.status_code == 200
    body = resp.json()
    assert body["passed"] is True
    assert body["reason"] == "Validation passed."
    assert set(body["rule_results"]) >= {"grammar_spelling", "legal_compliance"}


def test_validate_template(client, product_note):
    resp = client.post("/validate", params={"strict": "true"}, json=product_note.model_dump())
    assert resp.status_code == 200
    assert resp.json()["syntax_errors"] == []


def test_validate_empty_content_is_400(client):
    resp = client.post("/validate", json={"title": "Empty", "content": ""})
    assert resp.status_code == 400


@pytest.mark.parametrize(
    "body",
    [
        {**GOOD_CONTENT, "is_template": True, "variables": {"name": {"type": "string"}}},
        {**GOOD_CONTENT, "variables": ["name"]},
        {**GOOD_CONTENT, "audience": {"segment": "customers"}},
        {
            "id": "tpl",
            "name": "Bad Variables",
            "template_type": "product_note",
            "content": GOOD_CONTENT["content"],
            "variables": {"name": {"type": "string"}},
        },
    ],
)
def test_validate_rejects_mistyped_fields_with_400(client, body):
    resp = client.post("/validate", json=body)
    assert resp.status_code == 400


def test_validate_content_mapping_accepts_type_alias(client):
    resp = client.post("/validate", json={**GOOD_CONTENT, "type": "product_note"})
    assert resp.status_code == 200
    assert resp.json()["passed"] is True


def test_tags(client):
    resp = client.post(
        "/tags",
        json={
            "text": "Urgent: our main competitor cut pricing and gained market share versus us.",
            "use_ai": False,
            "threshold": 0.5,
        },
    )
    assert resp.status_code == 200
    assert "competitive-intelligence" in resp.json()["detected_tags"]


def test_tags_requires_text(client):
    assert client.post("/tags", json={"use_ai": False}).status_code == 400


def test_monitor_health(client):
    resp = client.get("/monitor/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["monitor"] == "stopped"
    assert body["health"]["components"]["ai_provider"]["status"] == "warning"
    assert body["health"]["overall_status"] == "warning"
    assert body["alerts"] == []
