"""LLM-backed event extraction."""
