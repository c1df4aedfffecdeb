"""Error types and logging setup."""
