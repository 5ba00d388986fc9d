"""Generate, validate, and route marketing content built from product and customer records."""

__all__ = ["config", "models", "orchestrator", "validator", "classifier", "monitor"]
