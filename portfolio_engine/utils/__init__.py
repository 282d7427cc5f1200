"""Shared utilities: logging, caching and rate limiting."""
