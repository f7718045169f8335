"""Command-line interface for Tomos."""
