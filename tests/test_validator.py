import random

import pytest

from content_pipeline.cache import TTLCache
from content_pipeline.config import Settings
from content_pipeline.errors import InputValidationError
from content_pipeline.models import Template
from content_pipeline.registry import load_builtin_templates
from content_pipeline.validator import (
    RULES,
    RuleOutcome,
    TemplateValidator,
    ValidationRule,
    ValidationTarget,
    duplicate_sentence_ratio,
    unfixable_critical_rules,
)

GOOD_BODY = (
    "The search team shipped faster filters this week. "
    "Teams can now find records in less time. "
    "Read the guide to get started."
)


def make_template(content, variables=None, **overrides):
    data = {
        "id": "tpl_test",
        "name": "Product Note for Customer Announcements",
        "template_type": "product_note",
        "content": content,
        "variables": variables or {},
        "target_audience": "customers",
    }
    data.update(overrides)
    return Template(**data)


def content_target(body, title="Search Filters Now Faster for Every Team"):
    return ValidationTarget(title=title, content=body, content_type="product_note")


def test_rule_table_has_expected_weights_and_criticality():
    table = {rule.id: (rule.weight, rule.critical) for rule in RULES}
    assert table == {
        "content_structure": (0.15, False),
        "grammar_spelling": (0.20, True),
        "fact_accuracy": (0.25, True),
        "brand_consistency": (0.15, True),
        "accessibility": (0.10, False),
        "seo_optimization": (0.10, False),
        "legal_compliance": (0.05, True),
    }


def test_overall_score_is_weight_normalized_mean():
    rng = random.Random(7)
    for _ in range(25):
        scores = [rng.random() for _ in range(4)]
        weights = [rng.uniform(0.05, 1.0) for _ in range(4)]
        rules = [
            ValidationRule(f"r{i}", weights[i], False, lambda t, c, s=scores[i]: RuleOutcome(s))
            for i in range(4)
        ]
        result = TemplateValidator(rules=rules).validate(content_target(GOOD_BODY))
        expected = sum(s * w for s, w in zip(scores, weights)) / sum(weights)
        assert result.overall_score == pytest.approx(expected)


def test_failed_critical_rule_fails_regardless_of_score():
    rules = [
        ValidationRule("always_fine", 1.0, False, lambda t, c: RuleOutcome(1.0)),
        ValidationRule("gate", 0.01, True, lambda t, c: RuleOutcome(0.0, ("Gate closed.",))),
    ]
    result = TemplateValidator(rules=rules).validate(content_target(GOOD_BODY))
    assert result.overall_score > 0.95
    assert result.passed is False
    assert result.critical_issues == ("gate",)
    assert "gate" in result.reason


def test_rule_exception_degrades_to_zero_score():
    def broken(target, ctx):
        raise RuntimeError("rule exploded")

    rules = [ValidationRule("broken", 1.0, False, broken)]
    result = TemplateValidator(rules=rules).validate(content_target(GOOD_BODY))
    assert result.rule_results["broken"].score == 0.0
    assert result.passed is False


@pytest.mark.parametrize("target", [None, "", content_target("   ")])
def test_empty_target_is_an_input_error(target):
    with pytest.raises(InputValidationError):
        TemplateValidator().validate(target)


def test_clean_content_passes_all_rules():
    result = TemplateValidator().validate(content_target(GOOD_BODY))
    assert result.passed, result.reason
    assert result.failed_rules == []


def test_builtin_templates_pass_validation():
    validator = TemplateValidator()
    for template in load_builtin_templates():
        result = validator.validate(template)
        assert result.passed, f"{template.id}: {result.reason}"
        assert result.syntax_errors == ()


def test_unbalanced_template_is_rejected():
    template = make_template("{{#if greeting}}" + GOOD_BODY, {"greeting": "string"})
    result = TemplateValidator().validate(template)
    assert result.passed is False
    assert result.syntax_errors


def test_variable_cross_reference():
    template = make_template(
        "{{greeting}}, " + GOOD_BODY + " {{signoff}}.",
        {"greeting": "string", "unused": "string"},
    )
    result = TemplateValidator().validate(template)
    assert any("'signoff' is used but not declared" in err for err in result.errors)
    assert any("'unused' is declared but never used" in w for w in result.warnings)
    assert result.passed is False


@pytest.mark.parametrize("name", ["id", "created_at", "script", "function"])
def test_reserved_and_dangerous_names_are_errors_even_when_declared(name):
    template = make_template("{{" + name + "}} " + GOOD_BODY, {name: "string"})
    result = TemplateValidator().validate(template)
    assert any("reserved or dangerous" in err for err in result.errors)


def test_security_scan_flags_markup_and_secret_names():
    template = make_template(
        GOOD_BODY + ' <a onclick="x()">{{api_key}}</a> <script>run()</script>',
        {"api_key": "string"},
    )
    result = TemplateValidator().validate(template)
    joined = " ".join(result.errors)
    assert "inline event handler" in joined
    assert "script tag" in joined
    assert "looks like a secret" in joined
    assert result.rule_results["legal_compliance"].score == 0.0


def test_complexity_is_only_a_warning():
    settings = Settings(complexity_warning_threshold=0)
    template = make_template("{{greeting}}, " + GOOD_BODY, {"greeting": "string"})
    result = TemplateValidator(settings).validate(template)
    assert result.complexity_score == 1.0
    assert any("complexity" in warning for warning in result.warnings)
    assert result.passed, result.reason


def test_fixable_issues_are_applied():
    body = "We will  utilize the new recieve flow so teams find records in less time"
    validator = TemplateValidator()
    result = validator.validate(content_target(body))
    fix_types = {issue.type for issue in result.fixable_issues}
    assert {"fix_double_spaces", "fix_spelling", "replace_avoided_words", "fix_punctuation"} <= fix_types

    outcome = validator.apply_fixes(content_target(body), result.fixable_issues)
    assert outcome.content == "We will use the new receive flow so teams find records in less time."
    assert validator.stats.auto_fixes_applied == len(outcome.applied)


def test_unknown_fix_types_are_skipped():
    from content_pipeline.validator import FixableIssue, apply_fixes

    outcome = apply_fixes(
        content_target(GOOD_BODY),
        [FixableIssue("add_citation", "fact_accuracy", "Needs a source.")],
    )
    assert outcome.applied == ()
    assert outcome.skipped == ("add_citation",)
    assert outcome.content == GOOD_BODY


def test_unfixable_critical_rules_are_reported():
    rules = [
        ValidationRule("facts", 1.0, True, lambda t, c: RuleOutcome(0.2, ("Unsupported claim.",))),
    ]
    result = TemplateValidator(rules=rules).validate(content_target(GOOD_BODY))
    assert unfixable_critical_rules(result) == ["facts"]


def test_results_are_cached_per_target():
    cache = TTLCache(60)
    validator = TemplateValidator(cache=cache)
    first = validator.validate(content_target(GOOD_BODY))
    second = validator.validate(content_target(GOOD_BODY))
    assert first is second
    assert validator.stats.total_validations == 1
    third = validator.validate(content_target(GOOD_BODY), use_cache=False)
    assert third is not first


def test_dotted_variables_are_declared_through_their_root():
    template = make_template(
        "{{customer.name}}, " + GOOD_BODY + " Ask {{customer.owner.email}} for help.",
        {"customer": "object"},
    )
    result = TemplateValidator().validate(template)
    assert result.errors == ()
    assert not any("never used" in warning for warning in result.warnings)


def test_dotted_variable_with_undeclared_root_is_an_error():
    template = make_template("{{account.owner}}, " + GOOD_BODY)
    result = TemplateValidator().validate(template)
    assert any("'account.owner' is used but not declared" in err for err in result.errors)
    assert result.passed is False


def test_malformed_dotted_variable_is_an_error():
    template = make_template("{{customer..name}}, " + GOOD_BODY, {"customer": "object"})
    result = TemplateValidator().validate(template)
    assert any("Invalid variable name 'customer..name'" in err for err in result.errors)


def test_variable_count_limit():
    def many(count):
        names = [f"field_{i}" for i in range(count)]
        content = " ".join("{{" + name + "}}" for name in names) + " " + GOOD_BODY
        return make_template(content, {name: "string" for name in names})

    validator = TemplateValidator(Settings(complexity_warning_threshold=1000))
    over = validator.validate(many(51))
    assert "Too many variables (51, maximum 50)." in over.errors
    assert over.passed is False
    at_limit = validator.validate(many(50))
    assert not any("Too many variables" in err for err in at_limit.errors)


def test_duplicate_sentence_ratio():
    assert duplicate_sentence_ratio(GOOD_BODY) == 0.0
    repeated = "Teams can now find records in less time. " * 3 + "Read the guide to get started."
    assert duplicate_sentence_ratio(repeated) == pytest.approx(0.5)
    assert duplicate_sentence_ratio("Short. Short. Short.") == 0.0


def test_repeated_sentences_lower_structure_score():
    repeated = GOOD_BODY + " " + GOOD_BODY + " " + GOOD_BODY
    result = TemplateValidator().validate(content_target(repeated))
    structure = result.rule_results["content_structure"]
    assert any("duplicate content ratio (67%)" in issue for issue in structure.issues)
    clean = TemplateValidator().validate(content_target(GOOD_BODY))
    assert clean.rule_results["content_structure"].score > structure.score


def structure_issues(body, settings=None):
    result = TemplateValidator(settings).validate(content_target(body))
    return result.rule_results["content_structure"].issues


def test_deep_heading_is_flagged():
    body = "##### Filter Details\n" + GOOD_BODY
    assert "Headings nest too deeply (level 5, maximum 4)." in structure_issues(body)
    relaxed = structure_issues(body, Settings(max_heading_level=6))
    assert not any("Headings nest" in issue for issue in relaxed)


def test_deep_list_is_flagged():
    nested = "".join("  " * depth + f"- Step {depth}\n" for depth in range(7))
    assert "Lists nest too deeply (depth 6, maximum 5)." in structure_issues(nested + GOOD_BODY)
    shallow = "- Filters\n  - Saved views\n" + GOOD_BODY
    assert not any("Lists nest" in issue for issue in structure_issues(shallow))


@pytest.mark.parametrize(
    "audience, phrase, flagged",
    [
        ("customers", "Buy now while this limited time offer lasts.", True),
        ("general", "The new endpoint cuts latency in half.", True),
        ("media", "This detail is confidential.", True),
        ("internal_team", "Buy now while this limited time offer lasts.", False),
        (None, "The new endpoint cuts latency in half.", False),
    ],
)
def test_wording_is_checked_against_the_audience(audience, phrase, flagged):
    target = ValidationTarget(
        title="Search Filters Now Faster for Every Team",
        content=GOOD_BODY + " " + phrase,
        content_type="product_note",
        audience=audience,
    )
    issues = TemplateValidator().validate(target).rule_results["brand_consistency"].issues
    assert any(f"may not suit the {audience} audience" in issue for issue in issues) is flagged
