"""Core settings, persistence and domain types."""
