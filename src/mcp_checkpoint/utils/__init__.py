"""Shared utilities: logging, errors, configuration and formatting."""
