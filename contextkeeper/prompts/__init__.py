"""Prompt templates for the summarization and enrichment collaborators."""
