from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

import content_pipeline.orchestrator as orchestrator_module
from content_pipeline.config import Settings
from content_pipeline.errors import InputValidationError, NoViableTemplate, TemplateNotFound
from content_pipeline.events import EventChannel, EventRecorder
from content_pipeline.models import ContentRequest, MeetingRecord, Template
from content_pipeline.monitor import PipelineMonitor
from content_pipeline.orchestrator import ContentPipelineOrchestrator, approval_steps_for
from content_pipeline.providers import OpenAIProvider, UnavailableProvider
from content_pipeline.registry import TemplateRegistry
from content_pipeline.store import InMemoryRecordStore, InMemoryWorkflowStore
from content_pipeline.validator import (
    FixableIssue,
    RuleOutcome,
    TemplateValidator,
    ValidationRule,
)

FIXED_NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class SpyValidator(TemplateValidator):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fix_calls = 0

    def apply_fixes(self, target, fixable_issues):
        self.fix_calls += 1
        return super().apply_fixes(target, fixable_issues)


def single_rule_validator(check, *, critical=True):
    return SpyValidator(rules=(ValidationRule("house_style", 1.0, critical, check),))


def _always_passes(target, ctx):
    return RuleOutcome(1.0)


def _content_needs_single_spaces(target, ctx):
    if target.is_template or "  " not in target.content:
        return RuleOutcome(1.0)
    return RuleOutcome(
        0.4,
        ("Double spaces found.",),
        (FixableIssue("fix_double_spaces", "house_style", "Collapse double spaces."),),
    )


def _content_always_fails(target, ctx):
    if target.is_template:
        return RuleOutcome(1.0)
    return RuleOutcome(
        0.2,
        ("Needs an editor.",),
        (FixableIssue("rewrite_by_hand", "house_style", "Rewrite."),),
    )


def _content_fails_without_fix(target, ctx):
    if target.is_template:
        return RuleOutcome(1.0)
    return RuleOutcome(0.2, ("Needs legal sign-off.",))


def _templates_fail(target, ctx):
    return RuleOutcome(0.1, ("Template rejected.",))


def build(templates=(), *, records=(), validator=None, workflow_store=None, events=None):
    return ContentPipelineOrchestrator(
        InMemoryRecordStore(records),
        workflow_store=workflow_store or InMemoryWorkflowStore(),
        registry=TemplateRegistry(templates),
        provider=UnavailableProvider(),
        validator=validator,
        events=events,
        clock=lambda: FIXED_NOW,
    )


def test_happy_path_runs_every_stage(product_note, product_note_request):
    events = EventChannel()
    recorder = EventRecorder()
    events.subscribe(recorder)
    orchestrator = build([product_note], events=events)

    run = orchestrator.execute_pipeline(product_note_request)

    assert run.success, run.reason
    assert run.state == "done"
    assert [t.state for t in run.state_history] == [
        "validating_request",
        "gathering_data",
        "deriving_insights",
        "selecting_template",
        "generating_content",
        "validating_output",
        "creating_workflow",
        "done",
    ]
    assert run.content.body.startswith("Hello, the search team")
    assert run.content.content_title == "Product Note for Customer Announcements"
    assert run.validation.passed
    assert run.metadata["template_id"] == "product_note"
    assert "total" in run.performance

    content_id = run.metadata["content_id"]
    assert orchestrator.record_store.get_persisted(content_id) is run.content
    workflow = orchestrator.workflow_store.workflows[run.workflow_id]
    assert workflow["content_id"] == content_id
    assert [e.type for e in recorder.events] == ["approval_request", "pipeline_completed"]
    assert recorder.events[-1].payload["success"] is True


def test_approval_not_required_skips_workflow(product_note, product_note_request):
    orchestrator = build([product_note])
    run = orchestrator.execute_pipeline({**product_note_request, "approvalRequired": False})
    assert run.success
    assert run.approval.required is False
    assert run.workflow_id is None
    assert orchestrator.workflow_store.workflows == {}


def test_press_release_approval_steps():
    orchestrator = build()
    content = SimpleNamespace(content_type="press_release", content_title="Launch")
    approval = orchestrator.create_approval_workflow(
        "content_1", content, ContentRequest(content_type="press_release")
    )
    assert [step["stage"] for step in approval.steps] == [
        "content_review",
        "legal_review",
        "executive_approval",
    ]
    assert [step["due_date"][:10] for step in approval.steps] == [
        "2024-01-02",
        "2024-01-03",
        "2024-01-02",
    ]
    assert approval.reviewers == ["marketing", "legal", "executive"]


def test_unknown_content_type_uses_default_approval():
    assert [s.stage for s in approval_steps_for("product_note")] == ["content_review"]


def test_workflow_store_failure_is_recorded(product_note, product_note_request):
    class BrokenWorkflowStore:
        def create_workflow(self, content_id, steps, reviewers):
            raise RuntimeError("approval service down")

    orchestrator = build([product_note], workflow_store=BrokenWorkflowStore())
    run = orchestrator.execute_pipeline(product_note_request)
    assert run.success
    assert run.workflow_id is None
    assert run.metadata["workflow_error"] == "approval service down"


def test_enhancement_fixes_content_once(product_note):
    spaced = product_note.model_copy(
        update={"content": product_note.content.replace("search team", "search  team")}
    )
    validator = single_rule_validator(_content_needs_single_spaces)
    orchestrator = build([spaced], validator=validator)

    run = orchestrator.execute_pipeline(
        {"templateId": "product_note", "customVariables": {"greeting": "Hi"}, "useAI": False}
    )

    assert run.success
    assert "enhancing_content" in [t.state for t in run.state_history]
    assert run.metadata["enhancements"] == ["fix_double_spaces"]
    assert "  " not in run.content.body
    assert validator.fix_calls == 1


def test_enhancement_is_attempted_only_once(product_note, product_note_request):
    validator = single_rule_validator(_content_always_fails)
    orchestrator = build([product_note], validator=validator)

    run = orchestrator.execute_pipeline(product_note_request)

    assert run.success is False
    assert run.state == "failed"
    assert run.failure_kind == "validation"
    assert run.content is not None
    assert validator.fix_calls == 1
    assert validator.stats.total_validations == 3


def test_unfixable_critical_failure_skips_enhancement(product_note, product_note_request):
    validator = single_rule_validator(_content_fails_without_fix)
    orchestrator = build([product_note], validator=validator)

    run = orchestrator.execute_pipeline(product_note_request)

    assert run.success is False
    assert validator.fix_calls == 0
    assert "enhancing_content" not in [t.state for t in run.state_history]


def test_enhance_false_skips_enhancement(product_note, product_note_request):
    validator = single_rule_validator(_content_always_fails)
    orchestrator = build([product_note], validator=validator)
    run = orchestrator.execute_pipeline({**product_note_request, "enhance": False})
    assert run.success is False
    assert validator.fix_calls == 0


def test_empty_generation_fails_the_run():
    silent = Template(
        id="silent",
        name="Silent Template Used for Empty Output",
        template_type="product_note",
        content="{{#if greeting}}{{greeting}}{{/if}}",
        variables={"greeting": "string"},
    )
    orchestrator = build([silent], validator=single_rule_validator(_always_passes))
    run = orchestrator.execute_pipeline({"templateId": "silent", "useAI": False})
    assert run.success is False
    assert run.failure_kind == "generation"
    assert run.reason == "Generated content is empty."


def test_no_viable_template_raises_and_publishes(product_note, product_note_request):
    events = EventChannel()
    recorder = EventRecorder()
    events.subscribe(recorder, "pipeline_completed")
    orchestrator = build(
        [product_note], validator=single_rule_validator(_templates_fail), events=events
    )

    with pytest.raises(NoViableTemplate) as excinfo:
        orchestrator.execute_pipeline(product_note_request)

    assert excinfo.value.scores == {"product_note": pytest.approx(0.1)}
    payload = recorder.events[-1].payload
    assert payload["success"] is False
    assert payload["failure_kind"] == "NoViableTemplate"


def test_invalid_request_raises():
    with pytest.raises(InputValidationError):
        build().execute_pipeline({"priority": "someday"})


def test_invalid_request_publishes_nothing_and_leaves_error_rate(product_note):
    events = EventChannel()
    recorder = EventRecorder()
    events.subscribe(recorder, "pipeline_completed")
    monitor = PipelineMonitor(events, settings=Settings(), memory_probe=lambda: 0.1)
    orchestrator = build([product_note], events=events)

    for bad in ({"priority": "someday"}, {"templateId": 42}, ["not", "an", "object"]):
        with pytest.raises(InputValidationError):
            orchestrator.execute_pipeline(bad)

    assert recorder.events == []
    metrics = monitor.collect_metrics()
    assert metrics.total_executions == 0
    assert metrics.error_rate == 0.0
    assert monitor.run_cycle().alerts == []


def test_unknown_template_raises():
    with pytest.raises(TemplateNotFound):
        build().execute_pipeline({"templateId": "missing", "useAI": False})


def test_gather_data_reports_missing_sources():
    class FlakyStore(InMemoryRecordStore):
        def fetch(self, source_type, ids=None, filters=None):
            if source_type == "competitive_signal":
                raise ConnectionError("signals offline")
            return super().fetch(source_type, ids, filters)

    orchestrator = ContentPipelineOrchestrator(
        FlakyStore([MeetingRecord(id="m1", customer_name="Acme")]),
        provider=UnavailableProvider(),
    )
    request = ContentRequest.model_validate(
        {
            "contentType": "case_study",
            "dataSources": [
                {"type": "meeting"},
                {"type": "competitive_signal"},
                {"type": "product_update"},
            ],
        }
    )
    data = orchestrator.gather_data(request)

    assert [r.id for r in data.records] == ["m1"]
    assert data.missing_sources == ["competitive_signal", "product_update"]
    assert data.data_points == 1
    assert data.data_quality_score == pytest.approx(1 / 20)


def test_derive_insights_from_meetings():
    orchestrator = build(records=[MeetingRecord(id="m1", customer_name="Acme", body="Kickoff call.")])
    request = ContentRequest.model_validate(
        {"contentType": "case_study", "dataSources": [{"type": "meeting"}], "useAI": False}
    )
    insights = orchestrator.derive_insights(orchestrator.gather_data(request), request)

    assert insights.content_opportunities[0]["type"] == "customer_success"
    assert insights.audience_insights[0]["audience"] == "prospects"
    assert insights.recommended_templates[0]["template_id"] == "builtin_case_study"


def test_batch_isolates_failures(product_note, product_note_request):
    orchestrator = build([product_note])
    requests = [
        product_note_request,
        {"templateId": "missing", "useAI": False},
        product_note_request,
    ]

    batch = orchestrator.execute_batch_pipeline(requests, max_workers=3)

    assert batch.total_requests == 3
    assert batch.successful_requests == 2
    assert batch.failed_requests == 1
    assert [item.index for item in batch.items] == [0, 1, 2]
    failed = batch.items[1]
    assert failed.run is None
    assert "missing" in failed.error


def test_batch_rejects_zero_workers():
    with pytest.raises(ValueError):
        build().execute_batch_pipeline([{"contentType": "case_study"}], max_workers=0)


def test_empty_batch():
    batch = build().execute_batch_pipeline([])
    assert batch.total_requests == 0
    assert batch.average_time_per_request == 0.0


def test_unhealthy_monitor_throttles_batch(monkeypatch, product_note, product_note_request):
    seen = []

    class RecordingExecutor(orchestrator_module.ThreadPoolExecutor):
        def __init__(self, max_workers=None, **kwargs):
            seen.append(max_workers)
            super().__init__(max_workers=max_workers, **kwargs)

    monkeypatch.setattr(orchestrator_module, "ThreadPoolExecutor", RecordingExecutor)
    orchestrator = build([product_note])
    orchestrator.attach_monitor(SimpleNamespace(last_status="unhealthy"))

    batch = orchestrator.execute_batch_pipeline([product_note_request] * 3, max_workers=3)

    assert seen == [1]
    assert batch.successful_requests == 3


def test_pipeline_health_flags_missing_provider():
    health = build().pipeline_health()
    assert health["components"]["ai_provider"] == "warning"
    assert health["overall_status"] == "warning"
    assert health["recommendations"] == ["Check ai_provider component - status: warning"]


def test_classifier_runs_on_the_classifier_model():
    settings = Settings(generation_model="writer-model", classifier_model="tagger-model")
    client = SimpleNamespace(responses=SimpleNamespace(create=lambda **kwargs: None))
    orchestrator = ContentPipelineOrchestrator(
        InMemoryRecordStore(),
        provider=OpenAIProvider(client, settings=settings),
        settings=settings,
    )
    assert orchestrator.provider.model == "writer-model"
    assert orchestrator.classifier.provider.model == "tagger-model"
