"""Pydantic models exposed by the HTTP API."""
