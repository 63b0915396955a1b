"""Configuration, errors and the analysis orchestrator."""
