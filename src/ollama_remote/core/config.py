"""Persistent ollama-remote configuration and effective-setting resolution."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
)

from ollama_remote.client.http import DEFAULT_BASE_URL, DEFAULT_TIMEOUT_SECONDS
from ollama_remote.client.retry import DEFAULT_RETRY_POLICY, RetryPolicy

HOST_ENV_NAME = "OLLAMA_HOST"
HOME_ENV_NAME = "OLLAMA_REMOTE_HOME"

HostSource = Literal["flag", "env", "config", "default"]


@dataclass(frozen=True)
class RemotePaths:
    """Filesystem layout for local ollama-remote state."""

    base_dir: Path

    @classmethod
    def default(cls) -> RemotePaths:
        override = os.environ.get(HOME_ENV_NAME)
        if override:
            return cls(base_dir=Path(override).expanduser())
        return cls(base_dir=Path.home() / ".ollama-remote")

    @property
    def config_path(self) -> Path:
        return self.base_dir / "config.json"


class RetryDefaults(BaseModel):
    """Retry tuning applied to non-streaming API calls."""

    model_config = ConfigDict(extra="forbid", strict=True)

    max_retries: StrictInt = Field(default=DEFAULT_RETRY_POLICY.max_retries, ge=0)
    initial_backoff: float = Field(default=DEFAULT_RETRY_POLICY.initial_backoff, ge=0)
    max_backoff: float = Field(default=DEFAULT_RETRY_POLICY.max_backoff, ge=0)
    multiplier: float = Field(default=DEFAULT_RETRY_POLICY.multiplier, ge=1)
    jitter: StrictBool = DEFAULT_RETRY_POLICY.jitter

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            initial_backoff=self.initial_backoff,
            max_backoff=self.max_backoff,
            multiplier=self.multiplier,
            jitter=self.jitter,
        )


class RemoteConfig(BaseModel):
    """Top-level persisted ollama-remote config."""

    model_config = ConfigDict(extra="forbid", strict=True)

    version: StrictInt = 1
    host: StrictStr | None = None
    no_proxy_auto: StrictBool = False
    timeout: float | None = Field(default=None, gt=0)
    retry: RetryDefaults = Field(default_factory=RetryDefaults)


CONFIG_KEY_DESCRIPTIONS: dict[str, str] = {
    "host": "Ollama base URL, e.g. http://127.0.0.1:11434.",
    "no_proxy_auto": "Connect to the configured host directly, bypassing HTTP(S)_PROXY.",
    "timeout": "Read timeout in seconds for non-streaming API calls.",
    "retry.max_retries": "Extra attempts for transient failures (0 disables retries).",
    "retry.initial_backoff": "Seconds to wait before the first retry.",
    "retry.max_backoff": "Upper bound in seconds for any single retry wait.",
    "retry.multiplier": "Growth factor applied to the wait after each retry.",
    "retry.jitter": "Randomize each wait by up to 25% in either direction.",
}


class ConfigFileError(RuntimeError):
    """Raised when the persisted config cannot be parsed or validated."""


@dataclass(frozen=True, slots=True)
class EffectiveSettings:
    """Settings handed to the client after merging flags, env, and config."""

    host: str
    host_source: HostSource
    no_proxy_auto: bool
    timeout: float
    retry_policy: RetryPolicy


def get_config_path(paths: RemotePaths) -> Path:
    """Resolve config file path for one ollama-remote home."""
    return paths.config_path


def load_config(paths: RemotePaths) -> RemoteConfig:
    """Load config file or return defaults when missing."""
    config_path = get_config_path(paths)
    if not config_path.exists():
        return RemoteConfig()

    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigFileError(f"invalid JSON in {config_path}: {exc.msg}") from exc
    except OSError as exc:
        raise ConfigFileError(f"unable to read {config_path}: {exc}") from exc

    try:
        return RemoteConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigFileError(f"invalid config in {config_path}: {exc}") from exc


def save_config(paths: RemotePaths, config: RemoteConfig) -> None:
    """Atomically persist config using a .tmp file then rename."""
    config_path = get_config_path(paths)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = config_path.with_name(f"{config_path.name}.tmp")
    payload = config.model_dump(mode="json")
    temp_path.write_text(
        json.dumps(payload, indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    temp_path.replace(config_path)


def update_config(paths: RemotePaths, updates: dict[str, Any]) -> RemoteConfig:
    """Apply partial updates and persist the resulting config."""
    current = load_config(paths)
    merged = current.model_dump(mode="json")
    _deep_merge_dict(merged, updates)
    try:
        updated = RemoteConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigFileError(f"invalid config update: {exc}") from exc
    save_config(paths, updated)
    return updated


def resolve_effective(
    config: RemoteConfig,
    *,
    host_flag: str | None = None,
    no_proxy_auto_flag: bool | None = None,
    retries_flag: int | None = None,
    timeout_flag: float | None = None,
    environ: Mapping[str, str] | None = None,
) -> EffectiveSettings:
    """Merge flags, environment, and persisted config into client settings.

    Host precedence is flag, then ``OLLAMA_HOST``, then config, then the default.
    """
    env = os.environ if environ is None else environ

    host: str
    source: HostSource
    env_host = (env.get(HOST_ENV_NAME) or "").strip()
    if host_flag is not None and host_flag.strip():
        host, source = host_flag.strip(), "flag"
    elif env_host:
        host, source = env_host, "env"
    elif config.host is not None and config.host.strip():
        host, source = config.host.strip(), "config"
    else:
        host, source = DEFAULT_BASE_URL, "default"

    policy = config.retry.to_policy()
    if retries_flag is not None:
        policy = replace(policy, max_retries=retries_flag)

    no_proxy_auto = config.no_proxy_auto if no_proxy_auto_flag is None else no_proxy_auto_flag
    timeout = timeout_flag or config.timeout or DEFAULT_TIMEOUT_SECONDS
    return EffectiveSettings(
        host=host,
        host_source=source,
        no_proxy_auto=no_proxy_auto,
        timeout=timeout,
        retry_policy=policy,
    )


def _deep_merge_dict(target: dict[str, Any], updates: dict[str, Any]) -> None:
    for key, value in updates.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            _deep_merge_dict(existing, value)
            continue
        target[key] = value
