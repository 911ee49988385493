"""Shared utilities: HTTP client, errors, logging and small helpers."""
