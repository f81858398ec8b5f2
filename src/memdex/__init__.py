"""memdex: durable agent memory as an incremental hybrid index over markdown files."""

__version__ = "0.1.0"
