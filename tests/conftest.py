"""Pytest configuration for ollama-remote tests."""

from __future__ import annotations

import os

import pytest

_PROXY_ENV_NAMES = (
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "ALL_PROXY",
    "NO_PROXY",
    "http_proxy",
    "https_proxy",
    "all_proxy",
    "no_proxy",
)


@pytest.fixture(scope="session", autouse=True)
def _disable_ansi_colors() -> None:
    """Disable ANSI colors in CLI output for consistent test assertions."""
    os.environ["TERM"] = "dumb"


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path) -> None:
    """Keep tests away from the real home directory, host override, and proxies."""
    monkeypatch.setenv("OLLAMA_REMOTE_HOME", str(tmp_path / "ollama-remote-home"))
    monkeypatch.delenv("OLLAMA_HOST", raising=False)
    for name in _PROXY_ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
