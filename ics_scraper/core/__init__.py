"""Shared infrastructure: errors, config, retries, caching and HTTP."""
