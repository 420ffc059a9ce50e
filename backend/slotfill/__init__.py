"""Conversational slot filling for externally bound capabilities."""
