"""Agent-facing retrieval tools."""
