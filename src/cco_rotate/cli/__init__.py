"""Command-line interface for cco-rotate."""
