"""Shared helpers (errors, audit, time, API keys)."""
