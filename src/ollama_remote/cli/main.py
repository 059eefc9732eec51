"""Typer-based CLI for talking to an Ollama daemon over its HTTP API."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, NoReturn, TypeVar

import typer

from ollama_remote.client import (
    NO_RETRY,
    OllamaClient,
    OllamaClientError,
    RequestContext,
    RetryPolicy,
    parse_base_url,
)
from ollama_remote.core.config import (
    CONFIG_KEY_DESCRIPTIONS,
    ConfigFileError,
    EffectiveSettings,
    RemotePaths,
    get_config_path,
    load_config,
    resolve_effective,
    update_config,
)

from .format import format_running, format_tags

app = typer.Typer(help="Ollama-style command-line client using the daemon's HTTP API.")
config_app = typer.Typer(help="Manage local defaults in ~/.ollama-remote/config.json.")
app.add_typer(config_app, name="config")

_BOOL_CONFIG_KEYS = {"no_proxy_auto", "retry.jitter"}
_INT_CONFIG_KEYS = {"retry.max_retries"}
_FLOAT_CONFIG_KEYS = {"timeout", "retry.initial_backoff", "retry.max_backoff", "retry.multiplier"}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_INTERRUPTED_EXIT_CODE = 130
_DOCTOR_TIMEOUT_SECONDS = 7.0

_COLOR_ERROR = typer.colors.RED
_COLOR_WARNING = typer.colors.YELLOW

T = TypeVar("T")


@dataclass(slots=True)
class _GlobalOptions:
    host: str | None = None
    no_proxy_auto: bool | None = None
    retries: int | None = None
    timeout: float | None = None


class _EchoSink:
    """Text sink that forwards streamed output to stdout as it arrives."""

    def __init__(self) -> None:
        self.ends_with_newline = True

    def write(self, text: str) -> int:
        if text:
            typer.echo(text, nl=False)
            self.ends_with_newline = text.endswith("\n")
        return len(text)


def _exit_with_message(message: str, *, code: int = 2) -> NoReturn:
    typer.echo(typer.style(message, fg=_COLOR_ERROR), err=True)
    raise typer.Exit(code=code)


def _exit_with_runtime_error(exc: RuntimeError, *, code: int = 1) -> NoReturn:
    typer.echo(typer.style(f"Error: {exc}", fg=_COLOR_ERROR), err=True)
    hint = getattr(exc, "hint", None)
    if isinstance(hint, str) and hint.strip():
        typer.echo(typer.style(f"Hint: {hint.strip()}", fg=_COLOR_WARNING), err=True)
    raise typer.Exit(code=code) from exc


@app.callback()
def main(
    ctx: typer.Context,
    host: str | None = typer.Option(
        None,
        "--host",
        help="Ollama base URL. Overrides OLLAMA_HOST and the config file.",
    ),
    no_proxy_auto: bool | None = typer.Option(
        None,
        "--no-proxy-auto/--proxy-auto",
        help="Bypass HTTP(S)_PROXY for the Ollama host only.",
    ),
    retries: int | None = typer.Option(
        None,
        "--retries",
        min=0,
        help="Extra attempts for transient failures on non-streaming calls.",
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        min=0.1,
        help="Read timeout in seconds for non-streaming calls.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging and collect global connection options."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = _GlobalOptions(
        host=host,
        no_proxy_auto=no_proxy_auto,
        retries=retries,
        timeout=timeout,
    )


@app.command("version")
def version(ctx: typer.Context) -> None:
    """Print the daemon version via GET /api/version."""
    with _make_client(ctx) as client:
        value = _run_cancellable(lambda context: client.version(context=context))
    typer.echo(value)


@app.command("list")
def list_models(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Print JSON output."),
) -> None:
    """List installed models via GET /api/tags."""
    with _make_client(ctx) as client:
        models = _run_cancellable(lambda context: client.list_tags(context=context))
    if json_output:
        payload = [model.model_dump(mode="json") for model in models]
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return
    typer.echo(format_tags(models), nl=False)


@app.command("ps")
def ps(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Print JSON output."),
) -> None:
    """Show loaded models via GET /api/ps."""
    with _make_client(ctx) as client:
        models = _run_cancellable(lambda context: client.list_running(context=context))
    if json_output:
        payload = [model.model_dump(mode="json") for model in models]
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return
    typer.echo(format_running(models), nl=False)


@app.command("show")
def show(
    ctx: typer.Context,
    model: str = typer.Argument(..., help="Model name to inspect."),
) -> None:
    """Show model metadata via POST /api/show."""
    with _make_client(ctx) as client:
        response = _run_cancellable(lambda context: client.show_model(model, context=context))
    typer.echo(json.dumps(response, indent=2, sort_keys=True))


@app.command("run")
def run(
    ctx: typer.Context,
    model: str = typer.Argument(..., help="Model name to run."),
    prompt: list[str] = typer.Argument(..., help="Prompt text; words are joined by spaces."),
) -> None:
    """Stream a completion via POST /api/generate."""
    sink = _EchoSink()
    text = " ".join(prompt)
    with _make_client(ctx) as client:
        _run_cancellable(lambda context: client.generate(model, text, sink, context=context))
    if not sink.ends_with_newline:
        typer.echo("")


@app.command("pull")
def pull(
    ctx: typer.Context,
    model: str = typer.Argument(..., help="Model name to pull."),
) -> None:
    """Pull a model via POST /api/pull, printing progress lines."""
    sink = _EchoSink()
    with _make_client(ctx) as client:
        _run_cancellable(lambda context: client.pull_model(model, sink, context=context))


@app.command("rm")
def rm(
    ctx: typer.Context,
    model: str = typer.Argument(..., help="Installed model name to remove."),
) -> None:
    """Delete a model via DELETE /api/delete."""
    with _make_client(ctx) as client:
        _run_cancellable(lambda context: client.remove_model(model, context=context))
    typer.echo(f"deleted {model.strip()!r}")


@app.command("cp")
def cp(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Existing model name."),
    destination: str = typer.Argument(..., help="New model name."),
) -> None:
    """Copy a model via POST /api/copy."""
    with _make_client(ctx) as client:
        _run_cancellable(
            lambda context: client.copy_model(source, destination, context=context),
        )
    typer.echo(f"copied {source.strip()!r} to {destination.strip()!r}")



@app.command("doctor")
def doctor(ctx: typer.Context) -> None:
    """Report the effective host and check that its API answers."""
    settings = _resolve_settings(ctx, RemotePaths.default())
    try:
        parse_base_url(settings.host)
    except OllamaClientError as exc:
        _exit_with_runtime_error(exc, code=exc.exit_code)

    typer.echo(f"host: {settings.host} ({settings.host_source})")
    typer.echo(f"no_proxy_auto: {_render_value(settings.no_proxy_auto)}")

    context = RequestContext.with_timeout(_DOCTOR_TIMEOUT_SECONDS)
    with _make_client(ctx, settings=settings, retry=NO_RETRY) as client:
        try:
            value = client.version(context=context)
        except KeyboardInterrupt:
            context.cancel()
            typer.echo("Interrupted", err=True)
            raise typer.Exit(code=_INTERRUPTED_EXIT_CODE) from None
        except OllamaClientError as exc:
            typer.echo(typer.style(f"api: unreachable ({exc})", fg=_COLOR_ERROR), err=True)
            raise typer.Exit(code=1) from exc
    typer.echo(f"api version: {value}")

@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Print JSON output."),
) -> None:
    """Show effective connection settings and where they came from."""
    paths = RemotePaths.default()
    settings = _resolve_settings(ctx, paths)
    payload: dict[str, Any] = {
        "config_path": str(get_config_path(paths)),
        "host": settings.host,
        "host_source": settings.host_source,
        "no_proxy_auto": settings.no_proxy_auto,
        "timeout": settings.timeout,
        "retry": {
            "max_retries": settings.retry_policy.max_retries,
            "initial_backoff": settings.retry_policy.initial_backoff,
            "max_backoff": settings.retry_policy.max_backoff,
            "multiplier": settings.retry_policy.multiplier,
            "jitter": settings.retry_policy.jitter,
        },
    }
    if json_output:
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return
    typer.echo(f"config: {payload['config_path']}")
    typer.echo(f"host: {settings.host} ({settings.host_source})")
    typer.echo(f"no_proxy_auto: {str(settings.no_proxy_auto).lower()}")
    typer.echo(f"timeout: {settings.timeout:g}s")
    for key, value in payload["retry"].items():
        typer.echo(f"retry.{key}: {_render_value(value)}")


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Dotted config key, see `config keys`."),
    value: str = typer.Argument(..., help="New value."),
) -> None:
    """Persist one config value."""
    if key not in CONFIG_KEY_DESCRIPTIONS:
        _exit_with_message(f"unknown config key: {key}")
    parsed = _parse_config_value(key, value)
    if key == "host":
        try:
            parse_base_url(parsed)
        except OllamaClientError as exc:
            _exit_with_runtime_error(exc, code=exc.exit_code)
    try:
        update_config(RemotePaths.default(), _nested_update(key, parsed))
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc, code=2)
    typer.echo(f"{key} = {_render_value(parsed)}")


@config_app.command("keys")
def config_keys() -> None:
    """List settable config keys."""
    width = max(len(key) for key in CONFIG_KEY_DESCRIPTIONS)
    for key, description in CONFIG_KEY_DESCRIPTIONS.items():
        typer.echo(f"{key.ljust(width)}  {description}")


def _resolve_settings(ctx: typer.Context, paths: RemotePaths) -> EffectiveSettings:
    options = ctx.find_object(_GlobalOptions) or _GlobalOptions()
    try:
        config = load_config(paths)
    except ConfigFileError as exc:
        _exit_with_runtime_error(exc, code=2)
    return resolve_effective(
        config,
        host_flag=options.host,
        no_proxy_auto_flag=options.no_proxy_auto,
        retries_flag=options.retries,
        timeout_flag=options.timeout,
    )


def _make_client(
    ctx: typer.Context,
    *,
    settings: EffectiveSettings | None = None,
    retry: RetryPolicy | None = None,
) -> OllamaClient:
    if settings is None:
        settings = _resolve_settings(ctx, RemotePaths.default())
    try:
        return OllamaClient(
            settings.host,
            no_proxy_auto=settings.no_proxy_auto,
            retry=settings.retry_policy if retry is None else retry,
            timeout=settings.timeout,
        )
    except OllamaClientError as exc:
        _exit_with_runtime_error(exc, code=exc.exit_code)


def _run_cancellable(call: Callable[[RequestContext], T]) -> T:
    context = RequestContext.background()
    try:
        return call(context)
    except KeyboardInterrupt:
        context.cancel()
        typer.echo("Interrupted", err=True)
        raise typer.Exit(code=_INTERRUPTED_EXIT_CODE) from None
    except OllamaClientError as exc:
        _exit_with_runtime_error(exc, code=exc.exit_code)


def _parse_config_value(key: str, raw: str) -> Any:
    value = raw.strip()
    if key in _BOOL_CONFIG_KEYS:
        lowered = value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        _exit_with_message(f"invalid boolean for {key}: {raw!r}")
    if key in _INT_CONFIG_KEYS:
        try:
            return int(value)
        except ValueError:
            _exit_with_message(f"invalid integer for {key}: {raw!r}")
    if key in _FLOAT_CONFIG_KEYS:
        try:
            return float(value)
        except ValueError:
            _exit_with_message(f"invalid number for {key}: {raw!r}")
    return value


def _nested_update(key: str, value: Any) -> dict[str, Any]:
    head, _, tail = key.partition(".")
    if not tail:
        return {head: value}
    return {head: _nested_update(tail, value)}


def _render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


if __name__ == "__main__":
    app()
