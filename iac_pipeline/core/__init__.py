"""Core domain: models, errors, cancellation, process runner and orchestrator."""
