"""Tag and signal classification for business records."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import Settings, get_settings
from .errors import ProviderError
from .providers import AIProvider

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Taxonomy:
    tags: Tuple[str, ...]
    keywords: Tuple[str, ...]
    weight: float


TAXONOMIES: Dict[str, Taxonomy] = {
    "competitive": Taxonomy(
        tags=(
            "competitive-analysis", "competitor-research", "market-positioning",
            "competitive-advantage", "feature-parity", "pricing-strategy",
            "market-share", "benchmarking", "competitive-response",
            "differentiation", "positioning", "competitive-intelligence",
        ),
        keywords=(
            "competitor", "competitive", "rival", "competing", "market leader",
            "market share", "benchmark", "parity", "advantage", "differentiation",
            "positioning", "outperform", "compare", "versus", "alternative",
        ),
        weight=1.0,
    ),
    "customer": Taxonomy(
        tags=(
            "customer-feedback", "customer-request", "user-experience",
            "customer-pain-point", "customer-satisfaction", "customer-retention",
            "customer-journey", "customer-needs", "customer-insights",
            "customer-research", "customer-impact", "customer-value",
        ),
        keywords=(
            "customer", "client", "user", "end-user", "buyer", "consumer",
            "feedback", "request", "pain point", "satisfaction", "experience",
            "journey", "needs", "requirements", "expectations", "retention",
        ),
        weight=0.9,
    ),
    "strategic": Taxonomy(
        tags=(
            "strategic-initiative", "strategic-planning", "roadmap",
            "strategic-goal", "strategic-objective", "strategic-priority",
            "strategic-investment", "strategic-decision", "strategic-analysis",
            "strategic-direction", "strategic-focus", "strategic-alignment",
        ),
        keywords=(
            "strategic", "strategy", "initiative", "roadmap", "vision",
            "goal", "objective", "priority", "investment", "growth",
            "expansion", "transformation", "pivot", "direction", "alignment",
        ),
        weight=0.8,
    ),
    "product": Taxonomy(
        tags=(
            "product-feature", "product-enhancement", "product-launch",
            "product-development", "product-roadmap", "product-strategy",
            "product-improvement", "product-innovation", "product-update",
            "product-release", "product-planning", "product-management",
        ),
        keywords=(
            "feature", "enhancement", "improvement", "functionality",
            "capability", "product", "development", "innovation",
            "launch", "release", "update", "upgrade", "new feature",
        ),
        weight=0.7,
    ),
    "market": Taxonomy(
        tags=(
            "market-analysis", "market-research", "market-trends",
            "market-opportunity", "market-expansion", "market-penetration",
            "market-dynamics", "market-conditions", "market-intelligence",
            "market-insights", "market-segmentation", "market-positioning",
        ),
        keywords=(
            "market", "industry", "sector", "segment", "vertical",
            "trends", "opportunity", "expansion", "penetration",
            "dynamics", "conditions", "intelligence", "insights",
        ),
        weight=0.6,
    ),
    "technology": Taxonomy(
        tags=(
            "technology-trend", "technology-adoption", "technology-stack",
            "technology-innovation", "technology-disruption", "technology-evaluation",
            "technology-migration", "technology-upgrade", "technology-platform",
            "technology-architecture", "technology-decision", "technology-strategy",
        ),
        keywords=(
            "technology", "tech", "platform", "architecture", "stack",
            "framework", "tool", "system", "infrastructure", "innovation",
            "disruption", "adoption", "migration", "upgrade", "integration",
        ),
        weight=0.5,
    ),
}


@dataclass(frozen=True)
class PhraseBank:
    tag: str
    phrases: Tuple[str, ...]
    weight: float


PATTERN_BANKS: Tuple[PhraseBank, ...] = (
    PhraseBank(
        "urgency-detected",
        ("urgent", "immediate", "asap", "priority", "critical", "blocker"),
        1.2,
    ),
    PhraseBank(
        "impact-detected",
        ("impact", "affect", "influence", "consequence", "result", "outcome"),
        1.1,
    ),
    PhraseBank(
        "positive-sentiment",
        ("excellent", "great", "awesome", "love", "amazing", "fantastic"),
        1.0,
    ),
    PhraseBank(
        "negative-sentiment",
        ("terrible", "awful", "hate", "horrible", "disappointing", "frustrating"),
        1.0,
    ),
)

AI_TAG_PROMPT = """Analyze the following content and identify relevant tags for competitive intelligence.

CONTENT:
{content}

Consider these categories: competitive, customer, strategic, product, market, technology.

Return your analysis in this format:
TAGS: [comma-separated list of relevant tags]
CONFIDENCE: [overall confidence score 0-1]
REASONING: [brief explanation of why these tags were selected]
PRIORITY: [high/medium/low]
"""


@dataclass(frozen=True)
class AITagAnalysis:
    tags: Tuple[str, ...]
    confidence: float = 0.5
    reasoning: str = ""
    priority: str = "medium"


@dataclass(frozen=True)
class TagDetectionResult:
    detected_tags: Tuple[str, ...]
    categories: Tuple[str, ...]
    confidence_scores: Dict[str, float]
    overall_score: float
    keyword_matches: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    pattern_matches: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    ai_analysis: Optional[AITagAnalysis] = None

    def has_tag(self, tag: str) -> bool:
        return tag in self.detected_tags


@dataclass(frozen=True)
class SignalMatch:
    record: Any
    tags: TagDetectionResult


# --- Helpers --------------------------------------------------------------

def normalize_content(text: str | None) -> str:
    """Lowercase, replace punctuation (except hyphens) with spaces, collapse whitespace."""
    if not text:
        return ""
    lowered = re.sub(r"[^\w\s-]", " ", text.lower())
    return re.sub(r"\s+", " ", lowered).strip()


def _contains(text: str, phrase: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text) is not None


def _merge(target: Dict[str, float], tag: str, confidence: float) -> None:
    if confidence > target.get(tag, -1.0):
        target[tag] = confidence


def parse_ai_tag_response(text: str) -> AITagAnalysis:
    """Parse the TAGS/CONFIDENCE/REASONING/PRIORITY line format."""
    tags: List[str] = []
    confidence = 0.5
    reasoning = ""
    priority = "medium"
    for raw in text.splitlines():
        line = raw.strip()
        upper = line.upper()
        value = line.split(":", 1)[1].strip() if ":" in line else ""
        if upper.startswith("TAGS:"):
            value = value.strip("[]")
            tags = [
                re.sub(r"\s+", "-", tag.strip().lower())
                for tag in value.split(",")
                if tag.strip()
            ]
        elif upper.startswith("CONFIDENCE:"):
            try:
                confidence = float(value.strip("[]"))
            except ValueError:
                confidence = 0.5
        elif upper.startswith("REASONING:"):
            reasoning = value
        elif upper.startswith("PRIORITY:"):
            priority = value.strip("[]").lower() or "medium"
    confidence = max(0.0, min(1.0, confidence))
    return AITagAnalysis(tuple(tags), confidence, reasoning, priority)


def categorize_tags(tags: Iterable[str]) -> Tuple[str, ...]:
    tags = list(tags)
    return tuple(
        category
        for category, taxonomy in TAXONOMIES.items()
        if any(category in tag or tag in taxonomy.tags for tag in tags)
    )


# --- Classifier -----------------------------------------------------------

class TagClassifier:
    """Merge rule, pattern, and optional AI passes into one tag set."""

    def __init__(self, provider: AIProvider | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.provider = provider

    def rule_pass(self, text: str) -> Tuple[Dict[str, float], Dict[str, Tuple[str, ...]]]:
        scores: Dict[str, float] = {}
        matches: Dict[str, Tuple[str, ...]] = {}
        for category, taxonomy in TAXONOMIES.items():
            explicit = [tag for tag in taxonomy.tags if _contains(text, tag)]
            keywords = [kw for kw in taxonomy.keywords if _contains(text, kw)]
            if not explicit and not keywords:
                continue
            hits = len(explicit) + 0.7 * len(keywords)
            _merge(scores, f"{category}-intelligence", min(1.0, taxonomy.weight * hits / 3))
            for tag in explicit:
                _merge(scores, tag, taxonomy.weight)
            matches[category] = tuple(explicit + keywords)
        return scores, matches

    def pattern_pass(self, text: str) -> Tuple[Dict[str, float], Dict[str, Tuple[str, ...]]]:
        scores: Dict[str, float] = {}
        matches: Dict[str, Tuple[str, ...]] = {}
        for bank in PATTERN_BANKS:
            found = [phrase for phrase in bank.phrases if _contains(text, phrase)]
            if not found:
                continue
            scores[bank.tag] = min(1.0, 0.5 * bank.weight + 0.1 * (len(found) - 1))
            matches[bank.tag] = tuple(found)
        return scores, matches

    def ai_pass(self, text: str) -> Optional[AITagAnalysis]:
        if self.provider is None or not self.provider.available:
            return None
        try:
            reply = self.provider.complete(
                AI_TAG_PROMPT.format(content=text[:6000]), max_tokens=500, temperature=0.2
            )
        except ProviderError as exc:
            logger.info("AI tag detection skipped: %s", exc)
            return None
        if not reply:
            return None
        return parse_ai_tag_response(reply)

    def detect_tags(
        self,
        text: str,
        *,
        use_ai: bool = True,
        confidence_threshold: float | None = None,
    ) -> TagDetectionResult:
        threshold = (
            self.settings.tag_confidence_threshold
            if confidence_threshold is None
            else confidence_threshold
        )
        normalized = normalize_content(text)
        scores, keyword_matches = self.rule_pass(normalized)
        pattern_scores, pattern_matches = self.pattern_pass(normalized)
        for tag, confidence in pattern_scores.items():
            _merge(scores, tag, confidence)

        analysis = self.ai_pass(normalized) if use_ai and normalized else None
        if analysis is not None:
            for tag in analysis.tags:
                _merge(scores, tag, analysis.confidence)

        kept = {tag: round(conf, 4) for tag, conf in scores.items() if conf >= threshold}
        detected = tuple(kept)
        overall = sum(kept.values()) / len(kept) if kept else 0.0
        return TagDetectionResult(
            detected_tags=detected,
            categories=categorize_tags(detected),
            confidence_scores=kept,
            overall_score=overall,
            keyword_matches=keyword_matches,
            pattern_matches=pattern_matches,
            ai_analysis=analysis,
        )

    def filter_signals(
        self,
        records: Iterable[Any],
        *,
        tags: Sequence[str] = (),
        categories: Sequence[str] = (),
        min_confidence: float = 0.0,
        max_results: int = 100,
    ) -> List[SignalMatch]:
        """Keep competitive signals whose detected tags overlap the requested tags/categories."""
        wanted_tags = set(tags)
        wanted_categories = set(categories)
        matched: List[SignalMatch] = []
        for record in records:
            if getattr(record, "source_type", None) != "competitive_signal":
                continue
            text = " ".join(
                part
                for part in (record.signal_title, record.signal_type, record.body)
                if part
            )
            result = self.detect_tags(text, use_ai=False)
            if wanted_tags and not wanted_tags & set(result.detected_tags):
                continue
            if wanted_categories and not wanted_categories & set(result.categories):
                continue
            if result.overall_score < min_confidence:
                continue
            matched.append(SignalMatch(record=record, tags=result))

        matched.sort(
            key=lambda m: (m.record.detected_at or m.record.created_at or _EPOCH).timestamp(),
            reverse=True,
        )
        return matched[:max_results]


def tag_analytics(results: Iterable[TagDetectionResult]) -> Dict[str, Any]:
    """Tag frequency, average confidence per tag, and category distribution."""
    frequency: Dict[str, int] = {}
    confidences: Dict[str, List[float]] = {}
    total = 0
    for result in results:
        total += 1
        for tag in result.detected_tags:
            frequency[tag] = frequency.get(tag, 0) + 1
            confidences.setdefault(tag, []).append(result.confidence_scores.get(tag, 0.0))

    distribution: Dict[str, int] = {}
    for category, taxonomy in TAXONOMIES.items():
        count = sum(1 for tag in frequency if category in tag or tag in taxonomy.tags)
        if count:
            distribution[category] = count

    return {
        "total_results": total,
        "unique_tags": sorted(frequency),
        "tag_frequency": frequency,
        "tag_confidence": {
            tag: sum(values) / len(values) for tag, values in confidences.items()
        },
        "category_distribution": distribution,
    }
