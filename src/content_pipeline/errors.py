"""Exception taxonomy for the content pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for errors raised by the content pipeline."""


class InputValidationError(PipelineError, ValueError):
    """A request or validation target is structurally invalid."""

    def __init__(self, message: str, *, details: list[str] | None = None):
        super().__init__(message)
        self.details = details or []


class TemplateNotFound(PipelineError, LookupError):
    """No template matches the requested id or content type."""


class NoViableTemplate(PipelineError):
    """Every candidate template failed validation."""

    def __init__(self, message: str, *, scores: dict[str, float] | None = None):
        super().__init__(message)
        self.scores = scores or {}


class ProviderError(PipelineError, RuntimeError):
    """The AI provider failed or is unavailable."""


class ComponentUnhealthy(PipelineError):
    """Raised by health probes; handled inside the monitor only."""
