import json
from pathlib import Path

from typer.testing import CliRunner

from content_pipeline import cli
from content_pipeline.cli import _to_plain, _write_output, app
from content_pipeline.orchestrator import ContentPipelineOrchestrator
from content_pipeline.providers import UnavailableProvider
from content_pipeline.registry import TemplateRegistry
from content_pipeline.store import InMemoryRecordStore

runner = CliRunner()

GOOD_CONTENT = {
    "title": "Product Note for Customer Announcements",
    "content": (
        "The search team shipped faster filters this week. "
        "Teams can now find records in less time. "
        "Read the guide to get started."
    ),
}


def _write_json(path: Path, payload) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def _patch_orchestrator(monkeypatch, template):
    def _build(records, *, no_ai=False):
        return ContentPipelineOrchestrator(
            InMemoryRecordStore(),
            registry=TemplateRegistry([template]),
            provider=UnavailableProvider(),
        )

    monkeypatch.setattr(cli, "_build_orchestrator", _build)


def test_to_plain_serializes_paths_dataclasses_and_models(tmp_path, product_note):
    orchestrator = ContentPipelineOrchestrator(
        InMemoryRecordStore(), registry=TemplateRegistry([product_note]), provider=UnavailableProvider()
    )
    run = orchestrator.execute_pipeline(
        {"templateId": "product_note", "customVariables": {"greeting": "Hello"}, "useAI": False}
    )

    payload = _to_plain({"run": run, "path": tmp_path / "out.md", "tags": ("a", "b")})

    assert payload["path"] == str(tmp_path / "out.md")
    assert payload["tags"] == ["a", "b"]
    assert payload["run"]["template"]["id"] == "product_note"
    assert isinstance(payload["run"]["state_history"][0]["started_at"], str)
    json.dumps(payload)


def test_write_output_json_and_markdown(tmp_path):
    json_file = tmp_path / "result.json"
    md_file = tmp_path / "result.md"

    _write_output(json_file, markdown="unused", json_payload={"success": True})
    _write_output(md_file, markdown="# Title\n", json_payload={"success": True})

    assert json.loads(json_file.read_text(encoding="utf-8")) == {"success": True}
    assert md_file.read_text(encoding="utf-8") == "# Title\n"


def test_run_writes_json_output(tmp_path, monkeypatch, product_note, product_note_request):
    _patch_orchestrator(monkeypatch, product_note)
    request_path = _write_json(tmp_path / "request.json", product_note_request)
    out_path = tmp_path / "run.json"

    result = runner.invoke(app, ["run", str(request_path), "--out", str(out_path)])

    assert result.exit_code == 0, result.output
    written = json.loads(out_path.read_text(encoding="utf-8"))
    assert written["success"] is True
    assert written["content"]["body"].startswith("Hello, the search team")


def test_run_writes_markdown_output(tmp_path, monkeypatch, product_note, product_note_request):
    _patch_orchestrator(monkeypatch, product_note)
    request_path = _write_json(tmp_path / "request.json", product_note_request)
    out_path = tmp_path / "run.md"

    result = runner.invoke(app, ["run", str(request_path), "-o", str(out_path), "--no-ai"])

    assert result.exit_code == 0, result.output
    assert out_path.read_text(encoding="utf-8").startswith(
        "# Product Note for Customer Announcements\n\nHello,"
    )


def test_run_unknown_template_exits_with_error(tmp_path, monkeypatch, product_note):
    _patch_orchestrator(monkeypatch, product_note)
    request_path = _write_json(tmp_path / "request.json", {"templateId": "missing"})

    result = runner.invoke(app, ["run", str(request_path)])

    assert result.exit_code == 1
    assert "Template not found: missing" in result.output


def test_run_invalid_request_exits_with_error(tmp_path):
    request_path = _write_json(tmp_path / "request.json", {"priority": "someday"})
    result = runner.invoke(app, ["run", str(request_path)])
    assert result.exit_code == 1
    assert "Schema validation failed" in result.output


def test_batch_writes_one_file_per_request(tmp_path, monkeypatch, product_note, product_note_request):
    _patch_orchestrator(monkeypatch, product_note)
    requests_dir = tmp_path / "requests"
    requests_dir.mkdir()
    _write_json(requests_dir / "a.json", product_note_request)
    _write_json(requests_dir / "b.json", product_note_request)
    outdir = tmp_path / "out"

    result = runner.invoke(
        app, ["batch", str(requests_dir), "--outdir", str(outdir), "--format", "json"]
    )

    assert result.exit_code == 0, result.output
    assert sorted(p.name for p in outdir.iterdir()) == ["000-a.json", "001-b.json"]


def test_batch_reports_failures(tmp_path, monkeypatch, product_note, product_note_request):
    _patch_orchestrator(monkeypatch, product_note)
    good = _write_json(tmp_path / "good.json", product_note_request)
    bad = _write_json(tmp_path / "bad.json", {"templateId": "missing"})

    result = runner.invoke(app, ["batch", str(good), str(bad)])

    assert result.exit_code == 1
    assert "1 succeeded, 1 failed" in result.output


def test_validate_content_file(tmp_path):
    path = _write_json(tmp_path / "content.json", GOOD_CONTENT)
    result = runner.invoke(app, ["validate", str(path)])
    assert result.exit_code == 0, result.output
    assert "Passed with score" in result.output


def test_validate_empty_content_fails(tmp_path):
    path = _write_json(tmp_path / "content.json", {"title": "Empty", "content": ""})
    result = runner.invoke(app, ["validate", str(path)])
    assert result.exit_code == 1
    assert "no content" in result.output


def test_tags_rule_based(tmp_path):
    path = tmp_path / "signal.txt"
    path.write_text(
        "Urgent: our main competitor cut pricing and gained market share versus us.",
        encoding="utf-8",
    )
    result = runner.invoke(app, ["tags", str(path), "--no-ai", "--threshold", "0.5"])
    assert result.exit_code == 0, result.output
    assert "competitive-intelligence" in result.output


def test_health_json():
    result = runner.invoke(app, ["health", "--json"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output[result.output.index("{"):])
    assert payload["health"]["components"]["ai_provider"]["status"] == "warning"
    assert payload["health"]["overall_status"] == "warning"
