"""Local configuration for ollama-remote."""
