"""Market analysis: statistics pipeline, result models and insight prose."""
