"""Command-line interface for ollama-remote."""
