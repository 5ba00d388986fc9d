"""Content generation engine.

Turns a template plus gathered source records into a ``GeneratedContent``:

- resolve the template (by id or content type)
- gather records from the record store
- extract variables per record type, then overlay request custom variables
- render a local draft; optionally ask the AI provider to improve it
- score the result with simple quality heuristics

The engine never writes anywhere; persisting content is the orchestrator's job.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import Settings, get_settings
from .errors import ProviderError
from .models import ContentRequest, DataSourceSpec, Template
from .providers import AIProvider
from .registry import TemplateRegistry
from .store import RecordStore
from .templating import TemplateSyntaxError, render, root_name, used_variables
from .textstats import headings, split_words

logger = logging.getLogger(__name__)

TITLE_FORMATS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "case_study": ("Customer Success Story: {customer_name}", ("customer_name",)),
    "battle_card": ("Battle Card: {competitor_name}", ("competitor_name",)),
    "email_campaign": ("{product_name} Update: {update_title}", ("product_name", "update_title")),
    "changelog_entry": ("Release Notes: Version {version}", ("version",)),
}

# Keyword -> benefit sentence for product updates; first match wins.
BENEFIT_KEYWORDS: Tuple[Tuple[str, str], ...] = (
    ("performance", "Improved performance and faster loading times."),
    ("security", "Stronger security and data protection."),
    ("integration", "Better integration with the tools teams already use."),
)
DEFAULT_BENEFIT = "New functionality and a smoother day-to-day experience."

CHANGELOG_LISTS = {
    "feature": "new_features",
    "improvement": "improvements",
    "bug_fix": "bug_fixes",
    "breaking_change": "breaking_changes",
}
LIST_VARIABLES = frozenset(
    {"results", "new_features", "improvements", "bug_fixes", "breaking_changes", "signal_titles"}
)

PLACEHOLDER_PATTERN = re.compile(r"\[\w+\]")
QUOTE_PATTERN = re.compile(r"\"([^\"]{10,300})\"")
METRIC_PATTERN = re.compile(r"\d+(?:\.\d+)?\s?(?:%|percent\b|x\b)|\$\d", re.IGNORECASE)
RESULT_SENTENCE = re.compile(r"[^.!?\n]*\d[^.!?\n]*[.!?]?")
BULLET_PATTERN = re.compile(r"^\s*(?:[-*]|\d+\.)\s+", re.MULTILINE)
CTA_PHRASES = (
    "learn more",
    "get started",
    "contact",
    "sign up",
    "request a demo",
    "read more",
    "download",
    "register",
    "try it",
)
TRANSCRIPT_EXCERPT_CHARS = 500


# --- Data containers -------------------------------------------------------

@dataclass(frozen=True)
class QualityMetrics:
    quality_score: float
    readability_score: float
    engagement_prediction: float
    word_count: int
    character_count: int
    estimated_reading_time: int


@dataclass(frozen=True)
class GeneratedContent:
    content_title: str
    body: str
    content_type: str
    target_audience: Optional[str]
    quality_metrics: QualityMetrics
    word_count: int
    variables_used: Tuple[str, ...]
    template_id: str
    ai_generated: bool
    keywords: Tuple[str, ...] = ()
    id: str = field(default_factory=lambda: f"content_{uuid.uuid4().hex[:12]}")


@dataclass
class GenerationResult:
    success: bool
    content: GeneratedContent | None = None
    quality_metrics: QualityMetrics | None = None
    error: str | None = None
    variables: Dict[str, Any] = field(default_factory=dict)
    draft: str = ""


# --- Variable extraction --------------------------------------------------

def _date_text(value: Optional[datetime]) -> str:
    return value.date().isoformat() if value else ""


def _first_quote(*texts: str) -> str:
    for text in texts:
        match = QUOTE_PATTERN.search(text or "")
        if match:
            return match.group(1).strip()
    return ""


def _result_sentences(text: str, limit: int = 3) -> List[str]:
    """Sentences that mention a number, as candidate results."""
    found = []
    for match in RESULT_SENTENCE.finditer(text or ""):
        sentence = match.group(0).strip()
        if sentence and len(split_words(sentence)) >= 3:
            found.append(sentence if sentence[-1] in ".!?" else sentence + ".")
        if len(found) >= limit:
            break
    return found


def _meeting_variables(record) -> Dict[str, Any]:
    transcript = record.transcript or ""
    excerpt = transcript[:TRANSCRIPT_EXCERPT_CHARS]
    if len(transcript) > TRANSCRIPT_EXCERPT_CHARS:
        excerpt = excerpt.rstrip() + "..."
    return {
        "customer_name": record.customer_name,
        "meeting_title": record.title,
        "meeting_date": _date_text(record.meeting_date),
        "duration": f"{record.duration_minutes} minutes" if record.duration_minutes else "",
        "customer_contact_name": record.contact_name,
        "customer_contact_title": record.contact_title,
        "transcript_excerpt": excerpt,
        "customer_quote": _first_quote(transcript, record.body),
        "results": _result_sentences(record.body or transcript),
    }


def _insight_variables(record) -> Dict[str, Any]:
    return {
        "customer_name": record.customer_name,
        "challenge_description": record.challenge,
        "requested_feature": record.requested_feature,
        "customer_quote": record.customer_quote or _first_quote(record.body),
        "sentiment": record.sentiment,
        "testimonial_text": record.customer_quote,
    }


def _signal_variables(record) -> Dict[str, Any]:
    return {
        "competitor_name": record.competitor_name,
        "competitor_description": record.body,
        "signal_title": record.signal_title,
        "signal_type": record.signal_type,
        "impact_level": record.impact_level,
        "signal_titles": [record.signal_title] if record.signal_title else [],
        "last_updated": _date_text(record.detected_at or record.created_at),
    }


def _customer_benefit(description: str) -> str:
    lowered = description.lower()
    for keyword, benefit in BENEFIT_KEYWORDS:
        if keyword in lowered:
            return benefit
    return DEFAULT_BENEFIT


def _product_update_variables(record) -> Dict[str, Any]:
    description = record.description or record.body
    change_line = record.title + (f" ({record.jira_key})" if record.jira_key else "")
    return {
        "product_name": record.product_name,
        "update_title": record.title,
        "update_description": description,
        "customer_benefit": _customer_benefit(description) if description else "",
        "jira_key": record.jira_key or "",
        "version": record.version or "",
        "release_date": _date_text(record.completion_date),
        CHANGELOG_LISTS[record.update_kind]: [change_line],
    }


EXTRACTORS: Dict[str, Callable[[Any], Dict[str, Any]]] = {
    "meeting": _meeting_variables,
    "customer_insight": _insight_variables,
    "competitive_signal": _signal_variables,
    "product_update": _product_update_variables,
}


def extract_variables(
    records: Iterable[Any],
    template: Template,
    custom_variables: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    """
    Build template variables from records, then overlay ``custom_variables``.

    Scalar values come from the first record that provides them; list values
    (results, changelog entries) accumulate across records. Every declared
    template variable is present in the result, as ``""`` when unresolved.
    """
    variables: Dict[str, Any] = {}
    for record in records:
        extractor = EXTRACTORS.get(getattr(record, "source_type", ""))
        if extractor is None:
            continue
        for name, value in extractor(record).items():
            if name in LIST_VARIABLES:
                variables.setdefault(name, [])
                variables[name].extend(value)
            elif value and not variables.get(name):
                variables[name] = value

    if variables.get("signal_titles"):
        variables["recent_intelligence"] = "\n".join(f"- {t}" for t in variables["signal_titles"])
    if variables.get("customer_name") and not variables.get("company_name"):
        variables["company_name"] = variables["customer_name"]

    variables.update(custom_variables or {})
    for name in template.variables:
        if name not in variables or variables[name] is None:
            variables[name] = ""
    return variables


# --- Metrics and helpers --------------------------------------------------

def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def clean_rendered(text: str) -> str:
    """Collapse runs of blank lines left by skipped blocks."""
    text = re.sub(r"[ \t]+\n", "\n", text)
    return re.sub(r"\n\s*\n(\s*\n)+", "\n\n", text).strip()


def _duplicate_ratio(text: str) -> float:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines:
        return 0.0
    return (len(lines) - len(set(lines))) / len(lines)


def _has_word(text: str, word: str) -> bool:
    return re.search(rf"(?<!\w){word}(?!\w)", text, re.IGNORECASE) is not None


def calculate_quality_metrics(body: str) -> QualityMetrics:
    words = split_words(body)
    word_count = len(words)
    has_headings = bool(headings(body))

    sentences = [piece for piece in re.split(r"[.!?]+", body) if piece.strip()]
    avg_words = word_count / (len(sentences) or 1)
    if 10 <= avg_words <= 20:
        readability = 0.8
    elif avg_words <= 25:
        readability = 0.6
    else:
        readability = 0.4
    if has_headings:
        readability += 0.2

    quality = 0.5
    if 100 <= word_count <= 2000:
        quality += 0.1
    placeholders = PLACEHOLDER_PATTERN.findall(body)
    if not placeholders:
        quality += 0.2
    else:
        quality -= 0.05 * len(placeholders)
    if has_headings or BULLET_PATTERN.search(body):
        quality += 0.1
    quality -= 0.2 * _duplicate_ratio(body)

    lowered = body.lower()
    engagement = 0.5
    if "?" in body:
        engagement += 0.1
    if '"' in body or "“" in body:
        engagement += 0.1
    if METRIC_PATTERN.search(body):
        engagement += 0.1
    if any(phrase in lowered for phrase in CTA_PHRASES):
        engagement += 0.1
    if _has_word(body, "you") or _has_word(body, "your"):
        engagement += 0.1

    return QualityMetrics(
        quality_score=_clamp(quality),
        readability_score=_clamp(readability),
        engagement_prediction=_clamp(engagement),
        word_count=word_count,
        character_count=len(body),
        estimated_reading_time=max(1, -(-word_count // 200)),
    )


def extract_keywords(body: str, limit: int = 10) -> List[str]:
    """Most frequent words longer than three letters, ties in first-seen order."""
    words = [w for w in re.sub(r"[^\w\s]", " ", body.lower()).split() if len(w) > 3]
    frequency: Dict[str, int] = {}
    for word in words:
        frequency[word] = frequency.get(word, 0) + 1
    ranked = sorted(frequency.items(), key=lambda item: -item[1])
    return [word for word, _ in ranked[:limit]]


def content_title(template: Template, variables: Dict[str, Any]) -> str:
    fmt = TITLE_FORMATS.get(template.template_type)
    if fmt is None:
        return template.name
    pattern, required = fmt
    if not all(str(variables.get(name) or "").strip() for name in required):
        return template.name
    return pattern.format(**{name: variables[name] for name in required})


def _build_generation_prompt(
    template: Template,
    variables: Dict[str, Any],
    audience: str | None,
    draft: str,
) -> str:
    visible = {k: v for k, v in variables.items() if v not in ("", [], None)}
    return (
        "You are an expert marketing content writer. Improve the draft below using the "
        "template and the variables provided.\n"
        "Keep the template's section structure and Markdown headings.\n"
        "Use every variable that has a value, and do not invent facts, numbers, or dates.\n"
        "Keep sentences under 20 words and keep a professional tone.\n"
        "Return only the finished content.\n\n"
        f"TEMPLATE TYPE: {template.template_type}\n"
        f"TARGET AUDIENCE: {audience or template.target_audience or 'general'}\n\n"
        f"TEMPLATE:\n{template.content}\n\n"
        f"VARIABLES:\n{json.dumps(visible, indent=2, ensure_ascii=False, default=str)}\n\n"
        f"DRAFT:\n{draft}"
    )


def _build_polish_prompt(content: GeneratedContent, issues: Sequence[str]) -> str:
    issue_lines = "\n".join(f"- {issue}" for issue in issues) or "- General clarity."
    return (
        "Revise the content below to resolve the listed issues.\n"
        "Keep its structure, facts, and headings. Return only the revised content.\n\n"
        f"ISSUES:\n{issue_lines}\n\n"
        f"TITLE: {content.content_title}\n\n"
        f"CONTENT:\n{content.body}"
    )


# --- Engine ---------------------------------------------------------------

class ContentGenerationEngine:
    """Render templates from source records, with an optional AI pass."""

    def __init__(
        self,
        registry: TemplateRegistry,
        record_store: RecordStore | None = None,
        provider: AIProvider | None = None,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.record_store = record_store
        self.provider = provider
        self.settings = settings or get_settings()

    def gather_records(self, data_sources: Sequence[DataSourceSpec]) -> List[Any]:
        if self.record_store is None:
            return []
        records: List[Any] = []
        for source in data_sources:
            try:
                records.extend(self.record_store.fetch(source.type, source.ids, source.filters))
            except Exception as exc:
                logger.warning("Skipping data source %s: %s", source.type, exc)
        return records

    def _ai_available(self, request: ContentRequest) -> bool:
        return bool(request.use_ai and self.provider is not None and self.provider.available)

    def _complete(self, prompt: str, *, step: str) -> str | None:
        try:
            text = self.provider.complete(prompt, max_tokens=self.settings.max_tokens)
        except ProviderError as exc:
            logger.warning("%s failed; using local draft: %s", step, exc)
            return None
        return text or None

    def build_content(
        self,
        template: Template,
        body: str,
        variables: Dict[str, Any],
        *,
        audience: str | None = None,
        ai_generated: bool = False,
        title: str | None = None,
    ) -> GeneratedContent:
        metrics = calculate_quality_metrics(body)
        used = tuple(
            name
            for name in used_variables(template.content)
            if variables.get(root_name(name)) not in (None, "", [])
        )
        return GeneratedContent(
            content_title=title or content_title(template, variables),
            body=body,
            content_type=template.template_type,
            target_audience=audience or template.target_audience,
            quality_metrics=metrics,
            word_count=metrics.word_count,
            variables_used=used,
            template_id=template.id,
            ai_generated=ai_generated,
            keywords=tuple(extract_keywords(body)),
        )

    def generate_content(
        self,
        request: ContentRequest,
        *,
        template: Template | None = None,
        records: Sequence[Any] | None = None,
    ) -> GenerationResult:
        """
        Generate content for ``request``.

        ``TemplateNotFound`` propagates; rendering problems are returned as an
        unsuccessful result. Provider failures fall back to the local draft.
        """
        if template is None:
            template = self.registry.resolve(request.template_id, request.content_type)
        if records is None:
            records = self.gather_records(request.data_sources)

        variables = extract_variables(records, template, request.custom_variables)
        try:
            draft = clean_rendered(render(template.content, variables))
        except TemplateSyntaxError as exc:
            logger.warning("Template %s failed to render: %s", template.id, exc)
            return GenerationResult(success=False, error=str(exc), variables=variables)

        body = draft
        ai_generated = False
        if self._ai_available(request):
            prompt = _build_generation_prompt(template, variables, request.target_audience, draft)
            completion = self._complete(prompt, step="AI generation")
            if completion:
                body = completion.strip()
                ai_generated = True

        content = self.build_content(
            template,
            body,
            variables,
            audience=request.target_audience,
            ai_generated=ai_generated,
        )
        logger.info(
            "Generated %s from template %s (%d words, ai=%s)",
            content.content_type,
            template.id,
            content.word_count,
            ai_generated,
        )
        return GenerationResult(
            success=True,
            content=content,
            quality_metrics=content.quality_metrics,
            variables=variables,
            draft=draft,
        )

    def revise(self, content: GeneratedContent, *, title: str, body: str, ai_generated: bool) -> GeneratedContent:
        """Return ``content`` with a new title/body and recomputed metrics."""
        metrics = calculate_quality_metrics(body)
        return dataclasses.replace(
            content,
            content_title=title,
            body=body,
            quality_metrics=metrics,
            word_count=metrics.word_count,
            ai_generated=content.ai_generated or ai_generated,
            keywords=tuple(extract_keywords(body)),
        )

    def polish(self, content: GeneratedContent, issues: Sequence[str]) -> str | None:
        """Ask the provider to resolve ``issues``; ``None`` when unavailable or failed."""
        if self.provider is None or not self.provider.available:
            return None
        completion = self._complete(_build_polish_prompt(content, issues), step="AI polish")
        return completion.strip() if completion else None
