"""Plain-text table rendering for model listings."""

from __future__ import annotations

from datetime import UTC, datetime

from ollama_remote.client.types import RunningModel, TagModel

_TABLE_MAX_COL_WIDTH = 48
_TABLE_DEFAULT_GAP = 2
_DIGEST_WIDTH = 12
_BYTE_UNITS = ("KB", "MB", "GB", "TB")


def format_tags(models: list[TagModel]) -> str:
    """Render installed models as NAME / ID / SIZE / MODIFIED."""
    rows = [
        (
            model.name,
            short_digest(model.digest),
            format_bytes(model.size),
            format_time(model.modified_at),
        )
        for model in models
    ]
    return render_table(("NAME", "ID", "SIZE", "MODIFIED"), rows)


def format_running(models: list[RunningModel]) -> str:
    """Render loaded models as NAME / ID / SIZE / UNTIL."""
    rows = [
        (
            model.name or model.model,
            short_digest(model.digest),
            format_bytes(model.size),
            format_time(model.expires_at),
        )
        for model in models
    ]
    return render_table(("NAME", "ID", "SIZE", "UNTIL"), rows)


def short_digest(digest: str) -> str:
    value = digest.strip()
    return value[:_DIGEST_WIDTH]


def format_bytes(size: int) -> str:
    if size < 0:
        return "?"
    value = float(size)
    unit = ""
    for candidate in _BYTE_UNITS:
        if value < 1024:
            break
        value /= 1024
        unit = candidate
    if not unit:
        return f"{size} B"
    return f"{value:.1f} {unit}"


def format_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%SZ")


def render_table(headers: tuple[str, ...], rows: list[tuple[str, ...]]) -> str:
    normalized_rows = [
        tuple(_truncate_cell(str(value), max_width=_TABLE_MAX_COL_WIDTH) for value in row)
        for row in rows
    ]
    widths = [len(header) for header in headers]
    for row in normalized_rows:
        for index, value in enumerate(row):
            widths[index] = max(widths[index], len(value))

    gap = " " * _TABLE_DEFAULT_GAP
    lines = [gap.join(header.ljust(widths[idx]) for idx, header in enumerate(headers))]
    for row in normalized_rows:
        lines.append(gap.join(value.ljust(widths[idx]) for idx, value in enumerate(row)))
    return "\n".join(line.rstrip() for line in lines) + "\n"


def _truncate_cell(value: str, *, max_width: int) -> str:
    if max_width < 4:
        return value[:max_width]
    if len(value) <= max_width:
        return value
    return f"{value[: max_width - 3]}..."
