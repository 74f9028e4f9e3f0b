"""Shared utilities: logging, errors, validation and time helpers."""
