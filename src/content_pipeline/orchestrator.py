"""Content pipeline orchestrator.

One request moves through a fixed sequence of stages:

    validating_request -> gathering_data -> deriving_insights ->
    selecting_template -> generating_content -> validating_output ->
    (enhancing_content) -> creating_workflow -> done

Any stage may end the run in ``failed``. Every transition is logged and timed.
Once the request parses, a ``pipeline_completed`` event is published whether the
run succeeds or not; a malformed request raises before any event goes out.
Malformed requests, unknown templates, and templates that all fail validation
raise; content that fails validation after one enhancement attempt is returned
as an unsuccessful ``PipelineRun`` carrying the best-effort content.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .cache import TTLCache
from .classifier import TagClassifier, TagDetectionResult
from .config import Settings, get_settings
from .errors import ComponentUnhealthy, InputValidationError, NoViableTemplate, TemplateNotFound
from .events import EventChannel
from .generation import ContentGenerationEngine, GeneratedContent
from .models import ContentRequest, Template
from .providers import AIProvider, for_classification, resolve_provider
from .registry import TemplateRegistry
from .schema import parse_request
from .store import InMemoryWorkflowStore, RecordStore, WorkflowStore
from .validator import TemplateValidator, ValidationResult, unfixable_critical_rules

logger = logging.getLogger(__name__)

PIPELINE_STATES: Tuple[str, ...] = (
    "validating_request",
    "gathering_data",
    "deriving_insights",
    "selecting_template",
    "generating_content",
    "validating_output",
    "enhancing_content",
    "creating_workflow",
    "done",
    "failed",
)

DEFAULT_AUDIENCE = "prospects"

AUDIENCE_TONE = {
    "prospects": "professional and engaging",
    "customers": "helpful and informative",
    "internal_team": "direct and actionable",
    "media": "authoritative and newsworthy",
}
AUDIENCE_MESSAGING = {
    "prospects": ("value proposition", "differentiation", "results"),
    "customers": ("product benefits", "how-to guidance", "support"),
    "internal_team": ("process details", "action items", "metrics"),
    "media": ("news angle", "company impact", "industry significance"),
}
AUDIENCE_PREFERENCES = {
    "prospects": ("case studies", "demo content", "competitive comparisons"),
    "customers": ("tutorials", "best practices", "feature announcements"),
    "internal_team": ("process documentation", "training materials", "reports"),
    "media": ("press releases", "thought leadership", "industry analysis"),
}


@dataclass(frozen=True)
class ApprovalStep:
    stage: str
    reviewer: str
    days_to_complete: int


APPROVAL_STEPS: Dict[str, Tuple[ApprovalStep, ...]] = {
    "press_release": (
        ApprovalStep("content_review", "marketing", 1),
        ApprovalStep("legal_review", "legal", 2),
        ApprovalStep("executive_approval", "executive", 1),
    ),
    "case_study": (
        ApprovalStep("content_review", "marketing", 2),
        ApprovalStep("legal_review", "legal", 3),
    ),
    "battle_card": (ApprovalStep("content_review", "sales", 1),),
    "email_campaign": (ApprovalStep("content_review", "marketing", 1),),
}
DEFAULT_APPROVAL_STEPS: Tuple[ApprovalStep, ...] = (ApprovalStep("content_review", "marketing", 2),)


# --- Data containers -------------------------------------------------------

@dataclass
class StateTransition:
    state: str
    started_at: datetime
    duration_ms: int = 0
    detail: str | None = None


@dataclass
class GatheredData:
    records: List[Any]
    by_type: Dict[str, List[Any]]
    missing_sources: List[str]
    data_points: int
    data_quality_score: float


@dataclass
class PipelineInsights:
    content_opportunities: List[Dict[str, Any]]
    audience_insights: List[Dict[str, Any]]
    recommended_templates: List[Dict[str, Any]]
    data_quality_score: float
    tags: TagDetectionResult | None = None


@dataclass
class TemplateSelection:
    template: Template
    validation: ValidationResult
    suggestion_score: float
    scores: Dict[str, float]


@dataclass
class ApprovalInfo:
    required: bool
    workflow_id: str | None = None
    steps: List[Dict[str, Any]] = field(default_factory=list)
    reviewers: List[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class PipelineRun:
    pipeline_id: str
    success: bool
    state: str
    state_history: List[StateTransition]
    performance: Dict[str, int]
    metadata: Dict[str, Any]
    content: GeneratedContent | None = None
    validation: ValidationResult | None = None
    insights: PipelineInsights | None = None
    template: Template | None = None
    approval: ApprovalInfo | None = None
    workflow_id: str | None = None
    reason: str | None = None
    failure_kind: str | None = None


@dataclass
class BatchItemResult:
    index: int
    request: Any
    run: PipelineRun | None
    error: str | None
    duration_ms: int = 0


@dataclass
class BatchResult:
    batch_id: str
    items: List[BatchItemResult]
    total_time_ms: int = 0

    @property
    def total_requests(self) -> int:
        return len(self.items)

    @property
    def successful_requests(self) -> int:
        return sum(1 for item in self.items if item.run is not None and item.run.success)

    @property
    def failed_requests(self) -> int:
        return self.total_requests - self.successful_requests

    @property
    def average_time_per_request(self) -> float:
        if not self.items:
            return 0.0
        return sum(item.duration_ms for item in self.items) / len(self.items)

    @property
    def successes(self) -> List[BatchItemResult]:
        return [item for item in self.items if item.run is not None and item.run.success]

    @property
    def failures(self) -> List[BatchItemResult]:
        return [item for item in self.items if item.run is None or not item.run.success]


# --- State tracking -------------------------------------------------------

class _StateTracker:
    """Record timed state transitions for one pipeline run."""

    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        self.state = "validating_request"
        self.history: List[StateTransition] = []
        self.performance: Dict[str, int] = {}
        self._start = time.perf_counter()

    @contextmanager
    def stage(self, state: str) -> Iterator[None]:
        self.state = state
        transition = StateTransition(state=state, started_at=datetime.now(timezone.utc))
        self.history.append(transition)
        logger.info("[%s] -> %s", self.pipeline_id, state)
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = int((time.perf_counter() - start) * 1000)
            transition.duration_ms = elapsed
            self.performance[state] = elapsed

    def _terminal(self, state: str, detail: str | None = None) -> None:
        self.state = state
        self.history.append(
            StateTransition(state=state, started_at=datetime.now(timezone.utc), detail=detail)
        )
        self.performance["total"] = self.elapsed_ms()

    def finish(self) -> None:
        self._terminal("done")
        logger.info("[%s] -> done in %d ms", self.pipeline_id, self.performance["total"])

    def fail(self, reason: str) -> None:
        failed_stage = self.state
        self._terminal("failed", reason)
        logger.warning("[%s] %s -> failed: %s", self.pipeline_id, failed_stage, reason)

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._start) * 1000)


# --- Helpers --------------------------------------------------------------

def _record_text(record: Any) -> str:
    fields = (
        "title",
        "signal_title",
        "signal_type",
        "challenge",
        "requested_feature",
        "customer_quote",
        "description",
        "body",
    )
    parts = [str(getattr(record, name, "") or "") for name in fields]
    return " ".join(part for part in parts if part)


def audience_insight(audience: str) -> Dict[str, Any]:
    return {
        "audience": audience,
        "recommended_tone": AUDIENCE_TONE.get(audience, "professional"),
        "key_messaging": list(AUDIENCE_MESSAGING.get(audience, ("general information",))),
        "content_preferences": list(AUDIENCE_PREFERENCES.get(audience, ("general content",))),
    }


def approval_steps_for(content_type: str) -> Tuple[ApprovalStep, ...]:
    return APPROVAL_STEPS.get(content_type, DEFAULT_APPROVAL_STEPS)


# --- Orchestrator ---------------------------------------------------------

class ContentPipelineOrchestrator:
    """Drive requests through gathering, generation, validation, and approval."""

    def __init__(
        self,
        record_store: RecordStore,
        *,
        workflow_store: WorkflowStore | None = None,
        registry: TemplateRegistry | None = None,
        provider: AIProvider | None = None,
        validator: TemplateValidator | None = None,
        classifier: TagClassifier | None = None,
        engine: ContentGenerationEngine | None = None,
        events: EventChannel | None = None,
        cache: TTLCache | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or get_settings()
        self.record_store = record_store
        self.workflow_store = workflow_store or InMemoryWorkflowStore()
        self.registry = registry or TemplateRegistry()
        self.provider = provider if provider is not None else resolve_provider(self.settings)
        self.cache = cache or TTLCache(self.settings.cache_ttl_seconds)
        self.validator = validator or TemplateValidator(self.settings, cache=self.cache)
        self.classifier = classifier or TagClassifier(
            for_classification(self.provider, self.settings), self.settings
        )
        self.engine = engine or ContentGenerationEngine(
            self.registry, record_store, self.provider, self.settings
        )
        self.events = events or EventChannel()
        self.monitor = None
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def attach_monitor(self, monitor) -> None:
        """Let batch runs read the monitor's last reported status."""
        self.monitor = monitor

    # --- Stages -----------------------------------------------------------

    def gather_data(self, request: ContentRequest) -> GatheredData:
        records: List[Any] = []
        by_type: Dict[str, List[Any]] = {}
        missing: List[str] = []
        for source in request.data_sources:
            try:
                fetched = self.record_store.fetch(source.type, source.ids, source.filters)
            except Exception as exc:
                logger.warning("Data source %s unavailable: %s", source.type, exc)
                missing.append(source.type)
                continue
            if not fetched:
                missing.append(source.type)
                continue
            by_type.setdefault(source.type, []).extend(fetched)
            records.extend(fetched)

        target = max(1, self.settings.data_quality_target_points)
        return GatheredData(
            records=records,
            by_type=by_type,
            missing_sources=missing,
            data_points=len(records),
            data_quality_score=min(len(records) / target, 1.0),
        )

    def derive_insights(self, data: GatheredData, request: ContentRequest) -> PipelineInsights:
        text = "\n".join(_record_text(record) for record in data.records)
        tags = self.classifier.detect_tags(text, use_ai=request.use_ai) if text.strip() else None

        customer_points = len(data.by_type.get("meeting", [])) + len(
            data.by_type.get("customer_insight", [])
        )
        opportunities: List[Dict[str, Any]] = []
        if customer_points:
            opportunities.append(
                {
                    "type": "customer_success",
                    "priority": "high",
                    "description": "Customer data available for success stories.",
                    "data_points": customer_points,
                }
            )
        if data.by_type.get("competitive_signal"):
            opportunities.append(
                {
                    "type": "competitive_content",
                    "priority": "medium",
                    "description": "Competitive intelligence available for positioning content.",
                    "data_points": len(data.by_type["competitive_signal"]),
                }
            )
        if data.by_type.get("product_update"):
            opportunities.append(
                {
                    "type": "product_announcement",
                    "priority": "medium",
                    "description": "Completed product updates available for announcements.",
                    "data_points": len(data.by_type["product_update"]),
                }
            )
        if tags is not None and tags.has_tag("urgency-detected"):
            opportunities.append(
                {
                    "type": "urgent_response",
                    "priority": "urgent",
                    "description": "Urgent signals detected in source data.",
                    "data_points": data.data_points,
                }
            )

        suggestions = self.registry.suggestions(request.content_type, list(data.by_type))
        return PipelineInsights(
            content_opportunities=opportunities,
            audience_insights=[audience_insight(request.target_audience or DEFAULT_AUDIENCE)],
            recommended_templates=[
                {
                    "template_id": template.id,
                    "template_type": template.template_type,
                    "name": template.name,
                    "score": score,
                }
                for template, score in suggestions
            ],
            data_quality_score=data.data_quality_score,
            tags=tags,
        )

    def select_template(self, request: ContentRequest, insights: PipelineInsights) -> TemplateSelection:
        """Validate candidates and keep the best passing one."""
        if request.template_id:
            candidates = [(self.registry.get(request.template_id), 1.0)]
        else:
            candidates = [(t, 1.0) for t in self.registry.by_type(request.content_type)]
            if not candidates:
                candidates = [
                    (self.registry.get(item["template_id"]), item["score"])
                    for item in insights.recommended_templates
                ]
            if not candidates:
                raise TemplateNotFound(
                    f"No template registered for content type: {request.content_type}"
                )

        best: Optional[TemplateSelection] = None
        scores: Dict[str, float] = {}
        for template, suggestion_score in candidates:
            result = self.validator.validate(template)
            scores[template.id] = result.overall_score
            if not result.passed:
                logger.info("Template %s rejected: %s", template.id, result.reason)
                continue
            if best is None or (result.overall_score, suggestion_score) > (
                best.validation.overall_score,
                best.suggestion_score,
            ):
                best = TemplateSelection(template, result, suggestion_score, scores)

        if best is None:
            raise NoViableTemplate(
                f"No candidate template passed validation ({len(candidates)} evaluated).",
                scores=scores,
            )
        return best

    def enhance_content(
        self,
        content: GeneratedContent,
        validation: ValidationResult,
        *,
        use_ai: bool = True,
    ) -> Tuple[GeneratedContent, ValidationResult, List[str]]:
        """Apply deterministic fixes, optionally polish with AI, and re-validate once."""
        outcome = self.validator.apply_fixes(content, validation.fixable_issues)
        revised = self.engine.revise(
            content, title=outcome.title, body=outcome.content, ai_generated=False
        )
        applied = list(outcome.applied)

        if use_ai:
            issues = [
                issue
                for result in validation.rule_results.values()
                if not result.passed
                for issue in result.issues
            ]
            polished = self.engine.polish(revised, issues)
            if polished:
                revised = self.engine.revise(
                    revised, title=revised.content_title, body=polished, ai_generated=True
                )
                applied.append("ai_polish")

        return revised, self.validator.validate(revised), applied

    def create_approval_workflow(
        self, content_id: str, content: GeneratedContent, request: ContentRequest
    ) -> ApprovalInfo:
        if not request.approval_required:
            return ApprovalInfo(required=False)

        now = self._clock()
        steps = [
            {
                "order": index,
                "stage": step.stage,
                "reviewer": step.reviewer,
                "due_date": (now + timedelta(days=step.days_to_complete)).isoformat(),
                "status": "pending",
            }
            for index, step in enumerate(approval_steps_for(content.content_type), start=1)
        ]
        reviewers = list(dict.fromkeys(step["reviewer"] for step in steps))
        try:
            workflow_id = self.workflow_store.create_workflow(content_id, steps, reviewers)
        except Exception as exc:
            logger.warning("Approval workflow creation failed for %s: %s", content_id, exc)
            return ApprovalInfo(required=True, steps=steps, reviewers=reviewers, error=str(exc))

        self.events.publish(
            "approval_request",
            {
                "workflow_id": workflow_id,
                "content_id": content_id,
                "content_type": content.content_type,
                "content_title": content.content_title,
                "priority": request.priority,
                "steps": len(steps),
                "reviewers": reviewers,
            },
        )
        return ApprovalInfo(required=True, workflow_id=workflow_id, steps=steps, reviewers=reviewers)

    # --- Runs -------------------------------------------------------------

    def _publish_completed(self, run: PipelineRun) -> None:
        content = run.content
        self.events.publish(
            "pipeline_completed",
            {
                "pipeline_id": run.pipeline_id,
                "success": run.success,
                "state": run.state,
                "duration_ms": run.performance.get("total", 0),
                "quality_score": content.quality_metrics.quality_score if content else None,
                "validation_score": run.validation.overall_score if run.validation else None,
                "content_type": content.content_type if content else None,
                "failure_kind": run.failure_kind,
                "reason": run.reason,
            },
        )

    def execute_pipeline(self, request: ContentRequest | Dict[str, Any]) -> PipelineRun:
        """Run one request end to end; see the module docstring for failure modes."""
        pipeline_id = f"pipeline_{uuid.uuid4().hex[:12]}"
        tracker = _StateTracker(pipeline_id)
        metadata: Dict[str, Any] = {}

        def _result(success: bool, **kwargs: Any) -> PipelineRun:
            return PipelineRun(
                pipeline_id=pipeline_id,
                success=success,
                state=tracker.state,
                state_history=tracker.history,
                performance=tracker.performance,
                metadata=metadata,
                **kwargs,
            )

        try:
            with tracker.stage("validating_request"):
                parsed = parse_request(request)
            metadata.update(priority=parsed.priority, use_ai=parsed.use_ai)

            with tracker.stage("gathering_data"):
                data = self.gather_data(parsed)
            metadata.update(
                data_sources_used=sorted(data.by_type),
                missing_sources=data.missing_sources,
                data_points=data.data_points,
                data_quality_score=data.data_quality_score,
            )

            with tracker.stage("deriving_insights"):
                insights = self.derive_insights(data, parsed)

            with tracker.stage("selecting_template"):
                selection = self.select_template(parsed, insights)
            metadata.update(
                template_id=selection.template.id,
                template_score=selection.validation.overall_score,
                template_candidates=selection.scores,
            )

            with tracker.stage("generating_content"):
                generation = self.engine.generate_content(
                    parsed, template=selection.template, records=data.records
                )
            content = generation.content
            if not generation.success or content is None or not content.body.strip():
                reason = generation.error or "Generated content is empty."
                tracker.fail(reason)
                run = _result(
                    False,
                    insights=insights,
                    template=selection.template,
                    reason=reason,
                    failure_kind="generation",
                )
                self._publish_completed(run)
                return run

            with tracker.stage("validating_output"):
                validation = self.validator.validate(content)

            enhancement_applied: List[str] = []
            if not validation.passed and parsed.enhance:
                blocking = unfixable_critical_rules(validation)
                if blocking:
                    logger.info(
                        "[%s] skipping enhancement; unfixable critical rules: %s",
                        pipeline_id,
                        ", ".join(blocking),
                    )
                else:
                    with tracker.stage("enhancing_content"):
                        content, validation, enhancement_applied = self.enhance_content(
                            content, validation, use_ai=parsed.use_ai
                        )

            metadata.update(
                quality_score=content.quality_metrics.quality_score,
                validation_score=validation.overall_score,
                ai_enhanced=content.ai_generated,
                enhancements=enhancement_applied,
            )

            if not validation.passed:
                tracker.fail(validation.reason)
                run = _result(
                    False,
                    content=content,
                    validation=validation,
                    insights=insights,
                    template=selection.template,
                    reason=validation.reason,
                    failure_kind="validation",
                )
                self._publish_completed(run)
                return run

            with tracker.stage("creating_workflow"):
                content_id = self.record_store.persist(content)
                approval = self.create_approval_workflow(content_id, content, parsed)
            metadata["content_id"] = content_id
            if approval.error:
                metadata["workflow_error"] = approval.error

            tracker.finish()
            run = _result(
                True,
                content=content,
                validation=validation,
                insights=insights,
                template=selection.template,
                approval=approval,
                workflow_id=approval.workflow_id,
            )
            self._publish_completed(run)
            return run
        except InputValidationError as exc:
            tracker.fail(str(exc))
            raise
        except Exception as exc:
            tracker.fail(str(exc))
            self._publish_completed(_result(False, reason=str(exc), failure_kind=type(exc).__name__))
            raise

    def execute_batch_pipeline(
        self,
        requests: Sequence[ContentRequest | Dict[str, Any]],
        *,
        max_workers: int | None = None,
    ) -> BatchResult:
        """
        Run requests in parallel; each failure is captured on its own item.

        When an attached monitor last reported ``unhealthy`` the batch runs on a
        single worker.
        """
        workers = max_workers if max_workers is not None else self.settings.batch_max_workers
        if workers < 1:
            raise ValueError("max_workers must be >= 1.")
        batch_id = f"batch_{uuid.uuid4().hex[:12]}"
        if not requests:
            return BatchResult(batch_id=batch_id, items=[])

        if self.monitor is not None and getattr(self.monitor, "last_status", None) == "unhealthy":
            logger.warning("Monitor reports unhealthy; throttling batch %s to 1 worker", batch_id)
            workers = 1

        start = time.perf_counter()
        worker_count = min(workers, len(requests))
        durations = [0] * len(requests)
        outcomes: List[BatchItemResult | None] = [None] * len(requests)

        def _run_single(idx: int, request) -> PipelineRun:
            item_start = time.perf_counter()
            try:
                return self.execute_pipeline(request)
            finally:
                durations[idx] = int((time.perf_counter() - item_start) * 1000)

        with ThreadPoolExecutor(max_workers=worker_count) as executor:
            future_map = {
                executor.submit(_run_single, idx, request): idx
                for idx, request in enumerate(requests)
            }
            for future in as_completed(future_map):
                idx = future_map[future]
                try:
                    run = future.result()
                    outcomes[idx] = BatchItemResult(
                        index=idx, request=requests[idx], run=run, error=run.reason,
                        duration_ms=durations[idx],
                    )
                except Exception as exc:
                    outcomes[idx] = BatchItemResult(
                        index=idx, request=requests[idx], run=None, error=str(exc),
                        duration_ms=durations[idx],
                    )

        result = BatchResult(
            batch_id=batch_id,
            items=[item for item in outcomes if item is not None],
            total_time_ms=int((time.perf_counter() - start) * 1000),
        )
        logger.info(
            "Batch %s finished: %d/%d succeeded",
            batch_id,
            result.successful_requests,
            result.total_requests,
        )
        return result

    # --- Health -----------------------------------------------------------

    def component_probes(self) -> Dict[str, Callable[[], Dict[str, Any]]]:
        """Health probes for the monitor; an unhealthy probe raises ComponentUnhealthy."""

        def _templates() -> Dict[str, Any]:
            count = len(self.registry.all())
            if count == 0:
                raise ComponentUnhealthy("No templates registered.")
            return {"status": "healthy", "templates": count}

        def _provider() -> Dict[str, Any]:
            health = getattr(self.provider, "health", None)
            if callable(health):
                return health()
            return {"status": "healthy" if self.provider.available else "warning"}

        def _cache() -> Dict[str, Any]:
            stats = self.cache.stats()
            return {"status": "healthy", "size": stats.size, "hits": stats.hits}

        return {
            "templates": _templates,
            "validator": self.validator.health,
            "ai_provider": _provider,
            "cache": _cache,
        }

    def pipeline_health(self) -> Dict[str, Any]:
        """Probe each component once and summarize."""
        components: Dict[str, str] = {}
        for name, probe in self.component_probes().items():
            try:
                components[name] = probe().get("status", "healthy")
            except Exception as exc:
                logger.warning("Component %s unhealthy: %s", name, exc)
                components[name] = "unhealthy"

        healthy = sum(1 for status in components.values() if status == "healthy")
        percentage = healthy / len(components) * 100 if components else 0.0
        if percentage >= 80:
            overall = "healthy"
        elif percentage >= 60:
            overall = "warning"
        else:
            overall = "unhealthy"
        return {
            "overall_status": overall,
            "components": components,
            "metrics": {
                "healthy_components": healthy,
                "total_components": len(components),
                "health_percentage": percentage,
            },
            "recommendations": [
                f"Check {name} component - status: {status}"
                for name, status in components.items()
                if status != "healthy"
            ],
        }
