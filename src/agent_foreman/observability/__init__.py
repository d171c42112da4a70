"""Observability: structured JSON-lines logging and correlation fields."""
