"""Template registry: packaged built-ins plus templates registered at runtime."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import TemplateNotFound
from .models import Template

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
BUILTIN_PREFIX = "builtin_"


@dataclass(frozen=True)
class BuiltinSpec:
    name: str
    description: str
    variables: Dict[str, str]
    target_audience: str


BUILTIN_SPECS: Dict[str, BuiltinSpec] = {
    "case_study": BuiltinSpec(
        name="Customer Success Story from Meeting Insights",
        description="Customer success story built from meeting notes and insights.",
        variables={
            "customer_name": "string",
            "challenge_description": "string",
            "impact_area": "string",
            "solution_description": "string",
            "results": "array",
            "customer_quote": "string",
            "customer_contact_name": "string",
            "customer_contact_title": "string",
            "customer_description": "string",
        },
        target_audience="prospects",
    ),
    "battle_card": BuiltinSpec(
        name="Competitive Battle Card for Sales Teams",
        description="Battle card built from competitive intelligence signals.",
        variables={
            "competitor_name": "string",
            "competitor_description": "string",
            "our_advantages": "array",
            "their_advantages": "array",
            "our_pricing": "string",
            "their_pricing": "string",
            "talk_track": "array",
            "recent_intelligence": "string",
            "last_updated": "string",
        },
        target_audience="internal_team",
    ),
    "blog_post": BuiltinSpec(
        name="Thought Leadership Blog Post from Insights",
        description="Blog post built from market and customer insights.",
        variables={
            "post_title": "string",
            "intro_hook": "string",
            "main_points": "array",
            "supporting_data": "string",
            "call_to_action": "string",
            "author_name": "string",
        },
        target_audience="general",
    ),
    "email_campaign": BuiltinSpec(
        name="Product Update Email for Customers",
        description="Customer email announcing a completed product update.",
        variables={
            "product_name": "string",
            "update_title": "string",
            "customer_name": "string",
            "update_description": "string",
            "customer_benefit": "string",
            "getting_started_instructions": "string",
            "support_contact_info": "string",
            "company_name": "string",
        },
        target_audience="customers",
    ),
    "social_media": BuiltinSpec(
        name="Social Media Post for Company Updates",
        description="Short social post for a company update.",
        variables={
            "main_message": "string",
            "call_to_action": "string",
            "hashtags": "array",
            "link_url": "string",
        },
        target_audience="general",
    ),
    "press_release": BuiltinSpec(
        name="Press Release for Major Announcements",
        description="Press release for a major company announcement.",
        variables={
            "headline": "string",
            "dateline": "string",
            "company_name": "string",
            "announcement_summary": "string",
            "details_paragraph_1": "string",
            "quote_1": "string",
            "quote_1_attribution": "string",
            "details_paragraph_2": "string",
            "quote_2": "string",
            "quote_2_attribution": "string",
            "about_company": "string",
            "contact_info": "string",
        },
        target_audience="media",
    ),
    "one_pager": BuiltinSpec(
        name="Product One-Pager from Feature Analysis",
        description="Single-page product overview.",
        variables={
            "product_name": "string",
            "value_proposition": "string",
            "audience_description": "string",
            "key_benefits": "array",
            "use_cases": "array",
            "technical_specs": "string",
            "pricing_info": "string",
            "contact_info": "string",
        },
        target_audience="prospects",
    ),
    "testimonial": BuiltinSpec(
        name="Customer Testimonial from Positive Feedback",
        description="Customer testimonial built from positive feedback.",
        variables={
            "company_name": "string",
            "context": "string",
            "testimonial_text": "string",
            "customer_name": "string",
            "customer_title": "string",
            "outcome_achieved": "string",
            "product_mentioned": "string",
        },
        target_audience="prospects",
    ),
    "changelog_entry": BuiltinSpec(
        name="Product Changelog Entry for Releases",
        description="Changelog entry built from completed product updates.",
        variables={
            "version": "string",
            "release_date": "string",
            "new_features": "array",
            "improvements": "array",
            "bug_fixes": "array",
            "breaking_changes": "array",
        },
        target_audience="customers",
    ),
}

# Source type -> (template type, suggestion score)
SOURCE_SUGGESTIONS: Dict[str, Tuple[Tuple[str, float], ...]] = {
    "customer_insight": (("case_study", 0.9),),
    "meeting": (("case_study", 0.9),),
    "competitive_signal": (("battle_card", 0.9),),
    "product_update": (("email_campaign", 0.8), ("changelog_entry", 0.8)),
}


def _load_template_file(template_type: str) -> str:
    path = TEMPLATES_DIR / f"{template_type}.md"
    return path.read_text(encoding="utf-8")


def load_builtin_templates() -> List[Template]:
    templates = []
    for template_type, spec in BUILTIN_SPECS.items():
        templates.append(
            Template(
                id=f"{BUILTIN_PREFIX}{template_type}",
                name=spec.name,
                template_type=template_type,
                content=_load_template_file(template_type),
                variables=dict(spec.variables),
                target_audience=spec.target_audience,
                description=spec.description,
            )
        )
    return templates


class TemplateRegistry:
    """Thread-safe lookup of templates by id and by type."""

    def __init__(self, templates: Iterable[Template] = (), *, include_builtins: bool = True):
        self._templates: Dict[str, Template] = {}
        self._lock = Lock()
        if include_builtins:
            for template in load_builtin_templates():
                self.register(template)
        for template in templates:
            self.register(template)

    def register(self, template: Template) -> Template:
        with self._lock:
            if template.id in self._templates:
                logger.info("Replacing registered template %s", template.id)
            self._templates[template.id] = template
        return template

    def get(self, template_id: str) -> Template:
        with self._lock:
            template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFound(f"Template not found: {template_id}")
        return template

    def find(self, template_id: str) -> Optional[Template]:
        with self._lock:
            return self._templates.get(template_id)

    def all(self) -> List[Template]:
        with self._lock:
            return list(self._templates.values())

    def by_type(self, template_type: str) -> List[Template]:
        """Templates of ``template_type``; registered templates come before built-ins."""
        matches = [t for t in self.all() if t.template_type == template_type]
        return sorted(matches, key=lambda t: t.id.startswith(BUILTIN_PREFIX))

    def resolve(self, template_id: str | None = None, content_type: str | None = None) -> Template:
        """Return the template by id, else the first template of ``content_type``."""
        if template_id:
            return self.get(template_id)
        if content_type:
            matches = self.by_type(content_type)
            if matches:
                return matches[0]
            raise TemplateNotFound(f"No template registered for content type: {content_type}")
        raise TemplateNotFound("Either a template id or a content type is required.")

    def suggestions(
        self,
        content_type: str | None = None,
        source_types: Sequence[str] = (),
    ) -> List[Tuple[Template, float]]:
        """Rank candidate templates: exact type 1.0, then data-driven suggestions."""
        scores: Dict[str, float] = {}
        if content_type:
            for template in self.by_type(content_type):
                scores[template.id] = 1.0
        for source_type in source_types:
            for template_type, score in SOURCE_SUGGESTIONS.get(source_type, ()):
                for template in self.by_type(template_type):
                    scores[template.id] = max(scores.get(template.id, 0.0), score)
        ranked = [(self.get(template_id), score) for template_id, score in scores.items()]
        ranked.sort(key=lambda pair: pair[1], reverse=True)
        return ranked
