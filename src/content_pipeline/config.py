"""Configuration helpers for the content pipeline."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_RULE_WEIGHTS = {
    "content_structure": 0.15,
    "grammar_spelling": 0.20,
    "fact_accuracy": 0.25,
    "brand_consistency": 0.15,
    "accessibility": 0.10,
    "seo_optimization": 0.10,
    "legal_compliance": 0.05,
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    The scoring constants below are hand-tuned defaults; treat them as knobs,
    not business rules.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # --- AI provider ---
    openai_api_key: str | None = Field(None, alias="OPENAI_API_KEY")
    generation_model: str = Field(
        "gpt-5-mini", description="Model used to draft and polish content."
    )
    classifier_model: str = Field(
        "gpt-5-mini", description="Model used for the optional AI tagging pass."
    )
    max_tokens: int = Field(
        4000, description="Max output tokens for each completion request."
    )
    temperature: float = Field(0.7, description="Generation temperature.")
    ai_timeout_seconds: float = Field(
        30.0,
        description="Client timeout for provider calls; slow calls fall back locally.",
    )

    # --- Validation ---
    required_passing_score: float = Field(
        0.8, description="Minimum weighted score for a validation to pass."
    )
    rule_passing_score: float = Field(
        0.8, description="Minimum score for an individual rule to pass."
    )
    strict_rule_passing_score: float = Field(
        0.9, description="Per-rule passing score when strict mode is on."
    )
    strict_mode: bool = Field(False, description="Use the strict per-rule threshold.")
    rule_weights: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_RULE_WEIGHTS),
        description="Weight per validation rule id (JSON object in the environment).",
    )
    content_min_length: int = Field(100, description="Minimum body length in characters.")
    content_max_length: int = Field(2000, description="Maximum body length in characters.")
    template_min_length: int = Field(50, description="Minimum template length.")
    template_max_length: int = Field(50000, description="Maximum template length.")
    max_sentence_words: int = Field(
        20, description="Sentences longer than this are flagged."
    )
    min_readability: float = Field(
        60.0, description="Minimum Flesch reading ease before accessibility is penalized."
    )
    max_keyword_density: float = Field(
        3.0, description="Keyword density (percent) above which SEO flags stuffing."
    )
    complexity_warning_threshold: int = Field(
        100, description="Template complexity above this produces a warning."
    )
    max_template_variables: int = Field(
        50, description="Distinct variables a template may reference."
    )
    max_duplicate_ratio: float = Field(
        0.3, description="Share of repeated sentences above which structure is penalized."
    )
    max_heading_level: int = Field(4, description="Deepest Markdown heading level allowed.")
    max_list_depth: int = Field(5, description="Deepest list indentation level allowed.")

    # --- Classification ---
    tag_confidence_threshold: float = Field(
        0.6, description="Tags below this confidence are dropped."
    )

    # --- Orchestration ---
    cache_ttl_seconds: float = Field(
        300.0, description="TTL for cached template and validation results."
    )
    batch_max_workers: int = Field(
        5, description="Parallel requests allowed in a batch run."
    )
    data_quality_target_points: int = Field(
        20, description="Data points needed for a data quality score of 1.0."
    )

    # --- Monitoring ---
    monitor_interval_seconds: float = Field(
        30.0, description="Seconds between monitor health-check cycles."
    )
    alert_error_rate: float = Field(0.05, description="Error rate alert threshold.")
    alert_response_time_ms: float = Field(
        5000.0, description="Component response time alert threshold."
    )
    alert_memory_utilization: float = Field(
        0.8, description="Memory utilization alert threshold."
    )
    alert_health_score: float = Field(
        0.6, description="Overall health score alert threshold."
    )
    alert_history_limit: int = Field(100, description="Alerts retained in memory.")

    log_level: str = Field("INFO", description="Root log level for the CLI and server.")


def get_settings() -> Settings:
    """Return a settings instance built from the current environment."""
    return Settings()
