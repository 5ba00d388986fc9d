"""Weighted rule engine that scores templates and generated content.

Seven rules run independently against a ``ValidationTarget``; each returns a
score in [0, 1], human-readable issues, and the subset of problems that have an
automatic fix. The overall score is the weight-normalized mean of the rule
scores. A result passes only when:

- the overall score reaches ``required_passing_score``,
- no critical rule failed, and
- the template sub-checks (syntax, variables, security) found no errors.

Complexity is reported as a warning signal and never fails a result.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .cache import TTLCache
from .config import DEFAULT_RULE_WEIGHTS, Settings, get_settings
from .errors import InputValidationError, ProviderError
from .models import VARIABLE_TYPES, Template
from .providers import AIProvider
from .templating import TAG_PATTERN, find_tags, root_name, syntax_errors, used_variables
from .textstats import (
    complex_words,
    flesch_reading_ease,
    headings,
    split_sentences,
    split_words,
)

logger = logging.getLogger(__name__)

# --- Word lists -----------------------------------------------------------

MISSPELLINGS: Dict[str, str] = {
    "recieve": "receive",
    "seperate": "separate",
    "definately": "definitely",
    "occured": "occurred",
    "neccessary": "necessary",
    "begining": "beginning",
    "sucessful": "successful",
    "managment": "management",
    "beleive": "believe",
    "acheive": "achieve",
}

CASUAL_WORDS = ("gonna", "wanna", "yeah", "ok", "awesome", "super", "really")

PERSON_INDICATORS: Dict[str, Tuple[str, ...]] = {
    "first": ("we", "us", "our"),
    "second": ("you", "your"),
    "third": ("they", "their", "them"),
}

PREFERRED_TERMS: Dict[str, str] = {
    "AI": "artificial intelligence",
    "ML": "machine learning",
    "API": "application programming interface",
    "UI": "user interface",
    "UX": "user experience",
}

AVOIDED_WORDS: Dict[str, str] = {
    "utilize": "use",
    "leverage": "use",
    "synergy": "collaboration",
    "paradigm": "model",
    "disruptive": "innovative",
}

PRIVACY_KEYWORDS = ("personal data", "privacy", "gdpr", "data protection", "cookies")
DISCLAIMER_MARKERS = ("disclaimer", "terms of service", "privacy policy")

RESERVED_VARIABLES = frozenset({"id", "created_at", "updated_at", "deleted_at"})
DANGEROUS_VARIABLES = frozenset({"script", "eval", "function", "onclick", "onload"})
VARIABLE_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)*$")
SECRET_NAME = re.compile(r"password|passwd|secret|token|api_?key", re.IGNORECASE)

FORBIDDEN_MARKUP: Tuple[Tuple[str, re.Pattern], ...] = (
    ("script tag", re.compile(r"<\s*script", re.IGNORECASE)),
    ("javascript: URL", re.compile(r"javascript\s*:", re.IGNORECASE)),
    ("vbscript: URL", re.compile(r"vbscript\s*:", re.IGNORECASE)),
    ("inline event handler", re.compile(r"\bon[a-z]+\s*=", re.IGNORECASE)),
    ("embedded frame or object", re.compile(r"<\s*(iframe|object|embed)\b", re.IGNORECASE)),
    ("eval call", re.compile(r"\beval\s*\(", re.IGNORECASE)),
    ("document access", re.compile(r"\bdocument\.[a-z]", re.IGNORECASE)),
)

EXPECTED_VARIABLES: Dict[str, Tuple[str, ...]] = {
    "case_study": ("customer_name", "challenge_description", "solution_description"),
    "battle_card": ("competitor_name", "our_advantages"),
    "email_campaign": ("customer_name", "update_title"),
    "press_release": ("headline", "company_name"),
    "changelog_entry": ("version", "release_date"),
}

KNOWN_AUDIENCES = frozenset({"prospects", "customers", "internal_team", "media", "general"})

# Wording that reads wrong for a given audience.
AUDIENCE_AVOIDED_TERMS: Dict[str, Tuple[str, ...]] = {
    "prospects": ("internal process", "sprint", "backlog", "jira"),
    "customers": ("buy now", "limited time", "act now", "upsell"),
    "internal_team": ("game-changing", "revolutionary", "world-class", "best-in-class"),
    "media": ("confidential", "internal only", "off the record"),
    "general": ("api", "sdk", "latency", "endpoint", "backend", "refactor"),
}

DATE_PATTERN = re.compile(
    r"\b(\d{1,2}/\d{1,2}/\d{4}|\d{4}-\d{2}-\d{2}|"
    r"(?:January|February|March|April|May|June|July|August|September|October|"
    r"November|December) \d{1,2}, \d{4})\b"
)
_DATE_FORMATS = ("%m/%d/%Y", "%Y-%m-%d", "%B %d, %Y")
PERCENT_PATTERN = re.compile(r"(-?\d+(?:\.\d+)?)\s?%")
PASSIVE_PATTERN = re.compile(r"\b(was|were|is|are|been|being)\s+\w+ed\b", re.IGNORECASE)
DOUBLE_SPACE = re.compile(r"(?<=\S) {2,}(?=\S)")
MISSING_SPACE = re.compile(r"[.!?][A-Za-z]")
REPEATED_WORD = re.compile(r"\b(\w+)(\s+\1\b)+", re.IGNORECASE)
URL_PATTERN = re.compile(r"https?://\S+|\]\([^)]*\)")
LINK_PATTERN = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
IMAGE_PATTERN = re.compile(r"!\[([^\]]*)\]\([^)]+\)")
LIST_ITEM_PATTERN = re.compile(r"^([ \t]*)[-*+]\s+", re.MULTILINE)
DUPLICATE_MIN_SENTENCE_CHARS = 10

KEYWORD_DENSITY_MIN_WORDS = 100
LONG_CONTENT_CHARS = 500
DISCLAIMER_CONTENT_CHARS = 1000

RULE_SUGGESTIONS: Dict[str, str] = {
    "content_structure": "Use a clear title, keep length in range, and add section headings.",
    "grammar_spelling": "Proofread spelling, spacing, and punctuation; keep sentences short.",
    "fact_accuracy": "Verify dates, percentages, and other factual claims.",
    "brand_consistency": "Keep tone professional and consistent; use preferred terminology.",
    "accessibility": "Simplify language, fix heading levels, and add image alt text.",
    "seo_optimization": "Keep titles 30-60 characters and avoid keyword stuffing.",
    "legal_compliance": "Add required disclaimers and remove unsafe markup.",
}


# --- Data containers -------------------------------------------------------

@dataclass(frozen=True)
class FixableIssue:
    type: str
    rule_id: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RuleOutcome:
    score: float
    issues: Tuple[str, ...] = ()
    fixable_issues: Tuple[FixableIssue, ...] = ()


@dataclass(frozen=True)
class RuleResult:
    rule_id: str
    score: float
    passed: bool
    critical: bool
    weight: float
    issues: Tuple[str, ...]
    fixable_issues: Tuple[FixableIssue, ...]


@dataclass(frozen=True)
class TemplateFindings:
    syntax_errors: Tuple[str, ...] = ()
    variable_errors: Tuple[str, ...] = ()
    security_errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    complexity_score: float = 0.0

    @property
    def structural_errors(self) -> Tuple[str, ...]:
        return self.syntax_errors + self.variable_errors

    @property
    def errors(self) -> Tuple[str, ...]:
        return self.syntax_errors + self.variable_errors + self.security_errors


@dataclass(frozen=True)
class ValidationTarget:
    """What the rules inspect: a template or a generated content artifact."""

    title: str
    content: str
    variables: Mapping[str, str] = field(default_factory=dict)
    content_type: str = "general"
    audience: Optional[str] = None
    is_template: bool = False

    @classmethod
    def from_template(cls, template: Template) -> "ValidationTarget":
        return cls(
            title=template.name,
            content=template.content,
            variables=dict(template.variables),
            content_type=template.template_type,
            audience=template.target_audience,
            is_template=True,
        )

    @classmethod
    def from_content(cls, content: Any) -> "ValidationTarget":
        return cls(
            title=getattr(content, "content_title", "") or "",
            content=getattr(content, "body", "") or "",
            variables={},
            content_type=getattr(content, "content_type", "general") or "general",
            audience=getattr(content, "target_audience", None),
            is_template=False,
        )


@dataclass(frozen=True)
class ValidationResult:
    rule_results: Dict[str, RuleResult]
    overall_score: float
    passed: bool
    critical_issues: Tuple[str, ...]
    syntax_errors: Tuple[str, ...] = ()
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    complexity_score: float = 0.0
    recommendations: Tuple[str, ...] = ()
    validation_id: str = ""
    duration_ms: int = 0

    @property
    def fixable_issues(self) -> List[FixableIssue]:
        return [issue for result in self.rule_results.values() for issue in result.fixable_issues]

    @property
    def failed_rules(self) -> List[str]:
        return [rule_id for rule_id, result in self.rule_results.items() if not result.passed]

    @property
    def reason(self) -> str:
        if self.passed:
            return "Validation passed."
        parts: List[str] = []
        if self.errors:
            parts.append(f"{len(self.errors)} template error(s): {self.errors[0]}")
        if self.critical_issues:
            parts.append(f"critical rule(s) failed: {', '.join(self.critical_issues)}")
        parts.append(f"overall score {self.overall_score:.2f}")
        return "Validation failed: " + "; ".join(parts) + "."


@dataclass(frozen=True)
class FixOutcome:
    title: str
    content: str
    applied: Tuple[str, ...]
    skipped: Tuple[str, ...]


@dataclass
class ValidatorStats:
    total_validations: int = 0
    passed: int = 0
    failed: int = 0
    average_score: float = 0.0
    critical_issues_found: int = 0
    auto_fixes_applied: int = 0


@dataclass(frozen=True)
class _CheckContext:
    settings: Settings
    findings: TemplateFindings
    provider: Optional[AIProvider] = None


RuleCheck = Callable[[ValidationTarget, _CheckContext], RuleOutcome]


@dataclass(frozen=True)
class ValidationRule:
    id: str
    weight: float
    critical: bool
    check: RuleCheck


# --- Shared helpers -------------------------------------------------------

def _prose(target: ValidationTarget) -> str:
    """Text the language rules read; block tags are dropped from templates."""
    if not target.is_template:
        return target.content

    def _strip_block(match: re.Match) -> str:
        inner = match.group(1).strip()
        return "" if inner.startswith(("#", "/")) else match.group(0)

    return TAG_PATTERN.sub(_strip_block, target.content)


def _word_pattern(word: str) -> re.Pattern:
    return re.compile(rf"(?<!\w){re.escape(word)}(?!\w)", re.IGNORECASE)


def _has_word(text: str, word: str) -> bool:
    return _word_pattern(word).search(text) is not None


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, score))


def duplicate_sentence_ratio(text: str) -> float:
    """Share of sentences (over ten characters) that repeat an earlier one."""
    sentences = [
        s.lower() for s in split_sentences(text) if len(s) > DUPLICATE_MIN_SENTENCE_CHARS
    ]
    if len(sentences) < 2:
        return 0.0
    return 1 - len(set(sentences)) / len(sentences)


def _parse_date(text: str) -> Optional[date]:
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


# --- Template sub-checks --------------------------------------------------

def check_template_syntax(text: str) -> List[str]:
    """Balanced blocks plus malformed brace tokens."""
    errors = syntax_errors(text)
    if re.search(r"\{\{\{|\}\}\}", text):
        errors.append("Malformed triple-brace token.")
    if text.count("{{") != text.count("}}"):
        errors.append("Unbalanced '{{' and '}}' delimiters.")
    return errors


def check_template_variables(
    target: ValidationTarget, settings: Settings
) -> Tuple[List[str], List[str]]:
    """
    Return (errors, warnings) from comparing used and declared variables.

    A dotted reference such as ``customer.name`` is declared through its root
    variable ``customer``.
    """
    errors: List[str] = []
    warnings: List[str] = []
    used = used_variables(target.content)
    used_roots = {root_name(name) for name in used}
    declared = dict(target.variables)

    if len(used_roots) > settings.max_template_variables:
        errors.append(
            f"Too many variables ({len(used_roots)}, maximum {settings.max_template_variables})."
        )

    for name in used:
        root = root_name(name)
        if not VARIABLE_NAME.match(name):
            errors.append(f"Invalid variable name '{name}'.")
        elif root in RESERVED_VARIABLES or root in DANGEROUS_VARIABLES:
            errors.append(f"Variable '{name}' uses a reserved or dangerous name.")
        elif root not in declared:
            errors.append(f"Variable '{name}' is used but not declared.")

    for name, declared_type in declared.items():
        if name in RESERVED_VARIABLES or name in DANGEROUS_VARIABLES:
            if name not in used_roots:
                errors.append(f"Variable '{name}' uses a reserved or dangerous name.")
        if declared_type not in VARIABLE_TYPES:
            errors.append(f"Variable '{name}' has unsupported type '{declared_type}'.")
        if name not in used_roots:
            warnings.append(f"Variable '{name}' is declared but never used.")

    for name in EXPECTED_VARIABLES.get(target.content_type, ()):
        if name not in declared:
            warnings.append(f"{target.content_type} templates usually declare '{name}'.")

    if target.audience and target.audience not in KNOWN_AUDIENCES:
        warnings.append(f"Unknown target audience '{target.audience}'.")
    return errors, warnings


def check_security(target: ValidationTarget) -> List[str]:
    errors = [
        f"Forbidden markup: {label}."
        for label, pattern in FORBIDDEN_MARKUP
        if pattern.search(target.content)
    ]
    if target.is_template:
        names = set(used_variables(target.content)) | set(target.variables)
        for name in sorted(names):
            if SECRET_NAME.search(name):
                errors.append(f"Variable '{name}' looks like a secret and must not be templated.")
    return errors


def template_complexity(text: str) -> Tuple[float, bool]:
    """Return (complexity score, has nested loops)."""
    tags = find_tags(text)
    conditionals = sum(1 for tag in tags if tag.kind == "open" and tag.keyword == "if")
    loops = sum(1 for tag in tags if tag.kind == "open" and tag.keyword == "each")
    max_depth = max((tag.depth for tag in tags if tag.kind == "open"), default=0)

    nested_loops = False
    open_each = 0
    for tag in tags:
        if tag.keyword != "each":
            continue
        if tag.kind == "open":
            if open_each:
                nested_loops = True
            open_each += 1
        elif tag.kind == "close":
            open_each = max(0, open_each - 1)

    variables = len(used_variables(text))
    score = variables + 2 * conditionals + 3 * loops + 2 * max(0, max_depth - 1)
    return float(score), nested_loops


def inspect_template(target: ValidationTarget, settings: Settings) -> TemplateFindings:
    security = tuple(check_security(target))
    if not target.is_template:
        return TemplateFindings(security_errors=security)

    syntax = check_template_syntax(target.content)
    variable_errors, warnings = check_template_variables(target, settings)
    complexity, nested_loops = template_complexity(target.content)
    if complexity > settings.complexity_warning_threshold:
        warnings.append(
            f"Template complexity {complexity:.0f} exceeds {settings.complexity_warning_threshold}."
        )
    if nested_loops:
        warnings.append("Nested loops may render slowly with large lists.")
    return TemplateFindings(
        syntax_errors=tuple(syntax),
        variable_errors=tuple(variable_errors),
        security_errors=security,
        warnings=tuple(warnings),
        complexity_score=complexity,
    )


# --- Rules ----------------------------------------------------------------

def check_content_structure(target: ValidationTarget, ctx: _CheckContext) -> RuleOutcome:
    settings = ctx.settings
    issues: List[str] = []
    fixable: List[FixableIssue] = []
    score = 1.0
    rule_id = "content_structure"

    if not target.title.strip():
        issues.append("Content is missing a title.")
        fixable.append(FixableIssue("add_title", rule_id, "Add a title."))
        score -= 0.3

    if target.is_template:
        min_length, max_length = settings.template_min_length, settings.template_max_length
    else:
        min_length, max_length = settings.content_min_length, settings.content_max_length
    length = len(target.content)
    if length < min_length:
        issues.append(f"Content is too short ({length} chars, minimum {min_length}).")
        score -= 0.2
    elif length > max_length:
        issues.append(f"Content is too long ({length} chars, maximum {max_length}).")
        fixable.append(
            FixableIssue("trim_content", rule_id, "Trim content.", {"max_length": max_length})
        )
        score -= 0.1

    if length > LONG_CONTENT_CHARS and not headings(target.content):
        issues.append("Long content should have section headings.")
        fixable.append(FixableIssue("add_headings", rule_id, "Add a top-level heading."))
        score -= 0.1

    deepest_heading = max((level for level, _ in headings(target.content)), default=0)
    if deepest_heading > settings.max_heading_level:
        issues.append(
            f"Headings nest too deeply (level {deepest_heading}, "
            f"maximum {settings.max_heading_level})."
        )
        score -= 0.1

    list_depth = max(
        (len(indent.expandtabs(4)) // 2 for indent in LIST_ITEM_PATTERN.findall(target.content)),
        default=0,
    )
    if list_depth > settings.max_list_depth:
        issues.append(
            f"Lists nest too deeply (depth {list_depth}, maximum {settings.max_list_depth})."
        )
        score -= 0.1

    ratio = duplicate_sentence_ratio(_prose(target))
    if ratio > settings.max_duplicate_ratio:
        issues.append(f"High duplicate content ratio ({ratio:.0%}).")
        score -= 0.2

    if ctx.findings.structural_errors:
        issues.append(f"Template has {len(ctx.findings.structural_errors)} structural error(s).")
        score -= 0.3
    return RuleOutcome(_clamp(score), tuple(issues), tuple(fixable))


def check_grammar_spelling(target: ValidationTarget, ctx: _CheckContext) -> RuleOutcome:
    text = _prose(target)
    issues: List[str] = []
    fixable: List[FixableIssue] = []
    score = 1.0
    rule_id = "grammar_spelling"

    grammar: List[str] = []
    if DOUBLE_SPACE.search(text):
        grammar.append("Found double spaces.")
        fixable.append(FixableIssue("fix_double_spaces", rule_id, "Collapse double spaces."))
    if MISSING_SPACE.search(URL_PATTERN.sub(" ", TAG_PATTERN.sub(" ", text))):
        grammar.append("Missing space after punctuation.")
    repeated = [match.group(0) for match in REPEATED_WORD.finditer(text)]
    if repeated:
        grammar.append(f"Found repeated words: {', '.join(repeated)}.")
        fixable.append(FixableIssue("remove_repeated_words", rule_id, "Remove repeated words."))
    issues.extend(grammar)
    score -= min(len(grammar) * 0.05, 0.3)

    misspelled = {wrong: right for wrong, right in MISSPELLINGS.items() if _has_word(text, wrong)}
    for wrong, right in misspelled.items():
        issues.append(f'Possible misspelling: "{wrong}" should be "{right}".')
    if misspelled:
        fixable.append(
            FixableIssue("fix_spelling", rule_id, "Correct misspellings.", {"words": misspelled})
        )
        score -= min(len(misspelled) * 0.05, 0.3)

    punctuation: List[str] = []
    stripped = text.strip().rstrip("\"')*_")
    if stripped and stripped[-1] not in ".!?":
        punctuation.append("Missing punctuation at end of content.")
        fixable.append(FixableIssue("fix_punctuation", rule_id, "End with a period."))
    exclamations = text.count("!")
    if exclamations > 3:
        punctuation.append(f"Too many exclamation marks ({exclamations}).")
    issues.extend(punctuation)
    score -= min(len(punctuation) * 0.03, 0.2)

    limit = ctx.settings.max_sentence_words
    long_sentences = [s for s in split_sentences(text) if len(split_words(s)) > limit]
    if long_sentences:
        issues.append(f"{len(long_sentences)} sentence(s) longer than {limit} words.")
        score -= min(len(long_sentences) * 0.03, 0.2)

    return RuleOutcome(_clamp(score), tuple(issues), tuple(fixable))


def check_fact_accuracy(target: ValidationTarget, ctx: _CheckContext) -> RuleOutcome:
    text = _prose(target)
    issues: List[str] = []
    score = 1.0
    today = datetime.now(timezone.utc).date()

    for raw in DATE_PATTERN.findall(text):
        parsed = _parse_date(raw)
        if parsed is None:
            issues.append(f"Invalid date: {raw}.")
            score -= 0.1
        elif parsed > today:
            issues.append(f"Date appears to be in the future: {raw}.")
            score -= 0.1

    percentages = [float(value) for value in PERCENT_PATTERN.findall(text)]
    if any(value > 100 or value < 0 for value in percentages):
        issues.append("Unrealistic percentage values found.")
        score -= 0.2

    if ctx.provider is not None and ctx.provider.available and not target.is_template:
        ai_issues = _ai_fact_check(ctx.provider, text)
        issues.extend(ai_issues)
        score -= min(len(ai_issues) * 0.1, 0.3)

    return RuleOutcome(_clamp(score), tuple(issues))


def _ai_fact_check(provider: AIProvider, text: str) -> List[str]:
    prompt = (
        "Review the content below for factual problems such as unsupported claims, "
        "impossible numbers, or inconsistent dates.\n"
        "Reply with one line per problem, each starting with 'ISSUE:'. "
        "Reply with 'NONE' if there are no problems.\n\n"
        f"CONTENT:\n{text[:4000]}"
    )
    try:
        reply = provider.complete(prompt, max_tokens=400, temperature=0.0)
    except ProviderError as exc:
        logger.info("AI fact check skipped: %s", exc)
        return []
    return [
        line.split(":", 1)[1].strip()
        for line in reply.splitlines()
        if line.strip().upper().startswith("ISSUE:") and line.split(":", 1)[1].strip()
    ]


def check_brand_consistency(target: ValidationTarget, ctx: _CheckContext) -> RuleOutcome:
    text = _prose(target)
    issues: List[str] = []
    fixable: List[FixableIssue] = []
    score = 1.0
    rule_id = "brand_consistency"

    tone: List[str] = []
    casual = [word for word in CASUAL_WORDS if _has_word(text, word)]
    if casual:
        tone.append(f"Found casual language: {', '.join(casual)}.")
    persons = [
        person
        for person, indicators in PERSON_INDICATORS.items()
        if any(_has_word(text, indicator) for indicator in indicators)
    ]
    if len(persons) > 1:
        tone.append(f"Mixed person usage: {', '.join(persons)}.")
    issues.extend(tone)
    score -= min(len(tone) * 0.05, 0.2)

    terminology = [
        f'Use the full term "{full}" alongside "{abbreviation}".'
        for abbreviation, full in PREFERRED_TERMS.items()
        if re.search(rf"\b{abbreviation}\b", text) and full not in text.lower()
    ]
    issues.extend(terminology)
    score -= min(len(terminology) * 0.05, 0.2)

    avoided = {word: AVOIDED_WORDS[word] for word in AVOIDED_WORDS if _has_word(text, word)}
    if avoided:
        issues.append(f"Found avoided words: {', '.join(avoided)}.")
        fixable.append(
            FixableIssue("replace_avoided_words", rule_id, "Replace avoided words.", {"words": avoided})
        )
        score -= len(avoided) * 0.05

    avoided_for_audience = AUDIENCE_AVOIDED_TERMS.get(target.audience or "", ())
    off_audience = [term for term in avoided_for_audience if _has_word(text, term)]
    if off_audience:
        issues.append(
            f"Wording may not suit the {target.audience} audience: {', '.join(off_audience)}."
        )
        score -= min(len(off_audience) * 0.05, 0.15)

    sentences = split_sentences(text)
    passive = PASSIVE_PATTERN.findall(text)
    ratio = len(passive) / len(sentences) if sentences else 0.0
    if ratio > 0.3:
        issues.append(f"High passive voice usage ({ratio:.0%}).")
        score -= 0.1

    return RuleOutcome(_clamp(score), tuple(issues), tuple(fixable))


def check_accessibility(target: ValidationTarget, ctx: _CheckContext) -> RuleOutcome:
    text = _prose(target)
    issues: List[str] = []
    score = 1.0

    readability = flesch_reading_ease(text)
    if readability < ctx.settings.min_readability:
        issues.append(f"Low readability score: {readability:.1f}.")
        score -= 0.3

    levels = [level for level, _ in headings(text)]
    if any(current > previous + 1 for previous, current in zip(levels, levels[1:])):
        issues.append("Heading hierarchy skips levels.")
        score -= 0.1

    missing_alt = [alt for alt in IMAGE_PATTERN.findall(text) if not alt.strip()]
    if missing_alt:
        issues.append(f"{len(missing_alt)} image(s) missing alt text.")
        score -= 0.2

    words = split_words(text)
    complex_found = complex_words(text)
    if words and len(complex_found) > len(words) * 0.1:
        issues.append(f"High usage of complex words ({len(complex_found)}).")
        score -= 0.1

    return RuleOutcome(_clamp(score), tuple(issues))


def check_seo_optimization(target: ValidationTarget, ctx: _CheckContext) -> RuleOutcome:
    text = _prose(target)
    issues: List[str] = []
    score = 1.0

    title_length = len(target.title.strip())
    if title_length < 30:
        issues.append(f"Title is too short ({title_length} chars).")
        score -= 0.2
    elif title_length > 60:
        issues.append(f"Title is too long ({title_length} chars).")
        score -= 0.1

    words = [re.sub(r"[^\w-]", "", word.lower()) for word in split_words(text)]
    words = [word for word in words if word]
    if len(words) >= KEYWORD_DENSITY_MIN_WORDS:
        frequency: Dict[str, int] = {}
        for word in words:
            if len(word) > 3:
                frequency[word] = frequency.get(word, 0) + 1
        stuffed = [
            word
            for word, count in frequency.items()
            if count / len(words) * 100 > ctx.settings.max_keyword_density
        ]
        if stuffed:
            issues.append(f"Potential keyword stuffing: {', '.join(sorted(stuffed)[:5])}.")
            score -= 0.2

    internal_links = [url for _, url in LINK_PATTERN.findall(text) if "http" not in url]
    if len(text) > LONG_CONTENT_CHARS and not internal_links:
        issues.append("Consider adding internal links.")
        score -= 0.1

    return RuleOutcome(_clamp(score), tuple(issues))


def check_legal_compliance(target: ValidationTarget, ctx: _CheckContext) -> RuleOutcome:
    text = _prose(target)
    lowered = text.lower()
    issues: List[str] = []
    fixable: List[FixableIssue] = []
    score = 1.0
    rule_id = "legal_compliance"

    if len(text) > DISCLAIMER_CONTENT_CHARS and not any(m in lowered for m in DISCLAIMER_MARKERS):
        issues.append("Long content should include a disclaimer.")
        fixable.append(
            FixableIssue(
                "add_disclaimer", rule_id, "Append a disclaimer.",
                {"content_type": target.content_type},
            )
        )
        score -= 0.2

    if "©" in text or "copyright" in lowered:
        if not re.search(r"(©|copyright)\s*\d{4}", lowered):
            issues.append("Copyright notice should include a year.")
            fixable.append(FixableIssue("fix_copyright_notice", rule_id, "Add the year."))
            score -= 0.1

    if any(keyword in lowered for keyword in PRIVACY_KEYWORDS):
        if "privacy policy" not in lowered and "data protection" not in lowered:
            issues.append("Privacy-related content should reference the privacy policy.")
            fixable.append(
                FixableIssue("add_privacy_disclaimer", rule_id, "Reference the privacy policy.")
            )
            score -= 0.3

    if ctx.findings.security_errors:
        issues.extend(ctx.findings.security_errors)
        score = 0.0

    return RuleOutcome(_clamp(score), tuple(issues), tuple(fixable))


RULES: Tuple[ValidationRule, ...] = (
    ValidationRule("content_structure", DEFAULT_RULE_WEIGHTS["content_structure"], False, check_content_structure),
    ValidationRule("grammar_spelling", DEFAULT_RULE_WEIGHTS["grammar_spelling"], True, check_grammar_spelling),
    ValidationRule("fact_accuracy", DEFAULT_RULE_WEIGHTS["fact_accuracy"], True, check_fact_accuracy),
    ValidationRule("brand_consistency", DEFAULT_RULE_WEIGHTS["brand_consistency"], True, check_brand_consistency),
    ValidationRule("accessibility", DEFAULT_RULE_WEIGHTS["accessibility"], False, check_accessibility),
    ValidationRule("seo_optimization", DEFAULT_RULE_WEIGHTS["seo_optimization"], False, check_seo_optimization),
    ValidationRule("legal_compliance", DEFAULT_RULE_WEIGHTS["legal_compliance"], True, check_legal_compliance),
)


# --- Scoring --------------------------------------------------------------

def weighted_score(rule_results: Mapping[str, RuleResult]) -> float:
    """Weight-normalized mean of rule scores (0 when no weight)."""
    total_weight = sum(result.weight for result in rule_results.values())
    if total_weight <= 0:
        return 0.0
    return sum(result.score * result.weight for result in rule_results.values()) / total_weight


def critical_failures(rule_results: Mapping[str, RuleResult]) -> Tuple[str, ...]:
    return tuple(
        rule_id for rule_id, result in rule_results.items() if result.critical and not result.passed
    )


def unfixable_critical_rules(result: ValidationResult) -> List[str]:
    """Critical rules that failed without any automatic fix; these need a human."""
    return [
        rule_id
        for rule_id in result.critical_issues
        if not result.rule_results[rule_id].fixable_issues
    ]


# --- Auto-fix -------------------------------------------------------------

def _match_case(original: str, replacement: str) -> str:
    return replacement[:1].upper() + replacement[1:] if original[:1].isupper() else replacement


def _replace_words(content: str, words: Mapping[str, str]) -> str:
    for wrong, right in words.items():
        content = _word_pattern(wrong).sub(lambda m, r=right: _match_case(m.group(0), r), content)
    return content


def _fix_add_title(title, content, issue, target):
    found = headings(content)
    if found:
        return found[0][1], content
    first_line = next((line.strip() for line in content.splitlines() if line.strip()), "")
    words = split_words(first_line)[:8]
    fallback = f"{target.content_type.replace('_', ' ').title()} Update"
    return (" ".join(words).rstrip(".,;:") or fallback), content


def _fix_trim_content(title, content, issue, target):
    limit = int(issue.data.get("max_length", len(content)))
    if len(content) <= limit:
        return title, content
    cut = content[:limit]
    boundary = max(cut.rfind(". "), cut.rfind(".\n"))
    return title, (cut[: boundary + 1] if boundary > 0 else cut).rstrip()


def _fix_add_headings(title, content, issue, target):
    if headings(content):
        return title, content
    return title, f"# {title or target.content_type.replace('_', ' ').title()}\n\n{content}"


def _fix_double_spaces(title, content, issue, target):
    return title, DOUBLE_SPACE.sub(" ", content)


def _fix_repeated_words(title, content, issue, target):
    return title, REPEATED_WORD.sub(r"\1", content)


def _fix_spelling(title, content, issue, target):
    return title, _replace_words(content, issue.data.get("words", MISSPELLINGS))


def _fix_punctuation(title, content, issue, target):
    stripped = content.rstrip()
    if stripped and stripped[-1] not in ".!?":
        return title, stripped + "."
    return title, content


def _fix_avoided_words(title, content, issue, target):
    words = issue.data.get("words", AVOIDED_WORDS)
    return _replace_words(title, words), _replace_words(content, words)


def _fix_add_disclaimer(title, content, issue, target):
    return title, (
        content.rstrip()
        + "\n\nDisclaimer: This content is provided for informational purposes only."
    )


def _fix_privacy_disclaimer(title, content, issue, target):
    return title, (
        content.rstrip()
        + "\n\nSee our privacy policy for details on how personal data is handled."
    )


def _fix_copyright_notice(title, content, issue, target):
    year = datetime.now(timezone.utc).year
    content = re.sub(r"©(?!\s*\d{4})", f"© {year}", content)
    content = re.sub(r"(?i)\bcopyright\b(?!\s*\d{4})", f"Copyright {year}", content)
    return title, content


FIXERS: Dict[str, Callable[..., Tuple[str, str]]] = {
    "add_title": _fix_add_title,
    "trim_content": _fix_trim_content,
    "add_headings": _fix_add_headings,
    "fix_double_spaces": _fix_double_spaces,
    "remove_repeated_words": _fix_repeated_words,
    "fix_spelling": _fix_spelling,
    "fix_punctuation": _fix_punctuation,
    "replace_avoided_words": _fix_avoided_words,
    "add_disclaimer": _fix_add_disclaimer,
    "add_privacy_disclaimer": _fix_privacy_disclaimer,
    "fix_copyright_notice": _fix_copyright_notice,
}

# Content-changing fixes run before those that append text.
_FIX_ORDER = {name: index for index, name in enumerate(FIXERS)}


def apply_fixes(target: ValidationTarget, fixable_issues: Sequence[FixableIssue]) -> FixOutcome:
    """Apply each known fix once; unknown fix types are reported as skipped."""
    title, content = target.title, target.content
    applied: List[str] = []
    skipped: List[str] = []
    seen: set[str] = set()
    ordered = sorted(fixable_issues, key=lambda issue: _FIX_ORDER.get(issue.type, len(_FIX_ORDER)))
    for issue in ordered:
        if issue.type in seen:
            continue
        seen.add(issue.type)
        fixer = FIXERS.get(issue.type)
        if fixer is None:
            skipped.append(issue.type)
            continue
        title, content = fixer(title, content, issue, target)
        applied.append(issue.type)
    return FixOutcome(title=title, content=content, applied=tuple(applied), skipped=tuple(skipped))


# --- Validator ------------------------------------------------------------

def _cache_key(target: ValidationTarget, strict: bool) -> str:
    payload = json.dumps(
        [
            target.title,
            target.content,
            sorted(target.variables.items()),
            target.content_type,
            target.audience,
            target.is_template,
            strict,
        ],
        ensure_ascii=False,
    )
    return "validation:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


class TemplateValidator:
    """Run the rule table against templates and generated content."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        rules: Sequence[ValidationRule] = RULES,
        cache: TTLCache | None = None,
        provider: AIProvider | None = None,
    ):
        self.settings = settings or get_settings()
        self.rules = tuple(rules)
        self.cache = cache
        self.provider = provider
        self.stats = ValidatorStats()
        self._stats_lock = Lock()

    def _coerce(self, target: Any) -> ValidationTarget:
        if target is None:
            raise InputValidationError("Validation target is required.")
        if isinstance(target, ValidationTarget):
            coerced = target
        elif isinstance(target, Template):
            coerced = ValidationTarget.from_template(target)
        elif hasattr(target, "body"):
            coerced = ValidationTarget.from_content(target)
        elif isinstance(target, Mapping):
            coerced = ValidationTarget(
                title=str(target.get("title") or ""),
                content=str(target.get("content") or ""),
                variables=dict(target.get("variables") or {}),
                content_type=str(target.get("type") or target.get("content_type") or "general"),
                audience=target.get("audience"),
                is_template=bool(target.get("is_template", False)),
            )
        else:
            raise InputValidationError(f"Cannot validate {type(target).__name__}.")
        if not coerced.content or not coerced.content.strip():
            raise InputValidationError("Validation target has no content.")
        return coerced

    def validate(
        self,
        target: Any,
        *,
        strict: bool | None = None,
        use_cache: bool = True,
    ) -> ValidationResult:
        """Score ``target``; raises InputValidationError only for a null/empty target."""
        coerced = self._coerce(target)
        strict_mode = self.settings.strict_mode if strict is None else strict
        if self.cache is not None and use_cache:
            key = _cache_key(coerced, strict_mode)
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug("Using cached validation for %r", coerced.title)
                return cached
            result = self._run(coerced, strict_mode)
            self.cache.set(key, result)
            return result
        return self._run(coerced, strict_mode)

    def _run_rule(self, rule: ValidationRule, target: ValidationTarget, ctx: _CheckContext) -> RuleOutcome:
        try:
            return rule.check(target, ctx)
        except Exception as exc:
            logger.exception("Validation rule %s failed", rule.id)
            return RuleOutcome(0.0, (f"Rule {rule.id} could not run: {exc}",))

    def _run(self, target: ValidationTarget, strict: bool) -> ValidationResult:
        start = time.perf_counter()
        settings = self.settings
        threshold = settings.strict_rule_passing_score if strict else settings.rule_passing_score
        findings = inspect_template(target, settings)
        ctx = _CheckContext(settings=settings, findings=findings, provider=self.provider)

        rule_results: Dict[str, RuleResult] = {}
        for rule in self.rules:
            outcome = self._run_rule(rule, target, ctx)
            score = _clamp(outcome.score)
            rule_results[rule.id] = RuleResult(
                rule_id=rule.id,
                score=score,
                passed=score >= threshold,
                critical=rule.critical,
                weight=settings.rule_weights.get(rule.id, rule.weight),
                issues=outcome.issues,
                fixable_issues=outcome.fixable_issues,
            )

        overall = weighted_score(rule_results)
        critical = critical_failures(rule_results)
        passed = (
            overall >= settings.required_passing_score
            and not critical
            and not findings.errors
        )
        recommendations = tuple(
            RULE_SUGGESTIONS[rule_id]
            for rule_id, result in rule_results.items()
            if not result.passed and rule_id in RULE_SUGGESTIONS
        )
        result = ValidationResult(
            rule_results=rule_results,
            overall_score=overall,
            passed=passed,
            critical_issues=critical,
            syntax_errors=findings.syntax_errors,
            errors=findings.errors,
            warnings=findings.warnings,
            complexity_score=findings.complexity_score,
            recommendations=recommendations,
            validation_id=f"val_{uuid.uuid4().hex[:12]}",
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        self._record(result)
        logger.debug(
            "Validated %r: score=%.2f passed=%s", target.title, result.overall_score, result.passed
        )
        return result

    def _record(self, result: ValidationResult) -> None:
        with self._stats_lock:
            stats = self.stats
            stats.total_validations += 1
            if result.passed:
                stats.passed += 1
            else:
                stats.failed += 1
            stats.critical_issues_found += len(result.critical_issues)
            stats.average_score += (
                result.overall_score - stats.average_score
            ) / stats.total_validations

    def apply_fixes(self, target: Any, fixable_issues: Sequence[FixableIssue]) -> FixOutcome:
        outcome = apply_fixes(self._coerce(target), fixable_issues)
        with self._stats_lock:
            self.stats.auto_fixes_applied += len(outcome.applied)
        return outcome

    def health(self) -> dict:
        with self._stats_lock:
            stats = dataclasses.asdict(self.stats)
        return {"status": "healthy", "rules": len(self.rules), **stats}
