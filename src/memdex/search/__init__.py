"""Query-time ranking."""
