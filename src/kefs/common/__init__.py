"""Shared infrastructure: logging helpers, HTTP client and TTL cache."""
