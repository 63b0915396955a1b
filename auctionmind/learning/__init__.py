"""Learned patterns: models, extraction and storage."""
