"""Request, response, and stream-chunk schemas for the Ollama HTTP API."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

_FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")
_ZERO_TIME_PREFIX = "0001-01-01"


def _normalize_timestamp(value: Any) -> Any:
    # The daemon emits nanosecond precision and zero-value times for "unset".
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text or text.startswith(_ZERO_TIME_PREFIX):
        return None
    return _FRACTION_PATTERN.sub(r"\1", text)


def _none_to_empty(value: Any) -> Any:
    return "" if value is None else value


def _none_to_zero(value: Any) -> Any:
    return 0 if value is None else value


def _none_to_false(value: Any) -> Any:
    return False if value is None else value


Timestamp = Annotated[datetime | None, BeforeValidator(_normalize_timestamp)]
# JSON null reads as the zero value, the same as an omitted field.
OptionalText = Annotated[str, BeforeValidator(_none_to_empty)]
OptionalCount = Annotated[int, BeforeValidator(_none_to_zero)]
OptionalFlag = Annotated[bool, BeforeValidator(_none_to_false)]


class ApiModel(BaseModel):
    """Lenient base for daemon payloads; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")


class VersionResponse(ApiModel):
    version: OptionalText = ""


class TagModel(ApiModel):
    name: OptionalText = ""
    digest: OptionalText = ""
    size: OptionalCount = 0
    modified_at: Timestamp = None


class TagsResponse(ApiModel):
    models: list[TagModel] = Field(default_factory=list)


class RunningModel(ApiModel):
    name: OptionalText = ""
    model: OptionalText = ""
    digest: OptionalText = ""
    size: OptionalCount = 0
    expires_at: Timestamp = None
    modified_at: Timestamp = None
    details: Any = None


class RunningResponse(ApiModel):
    models: list[RunningModel] = Field(default_factory=list)


class ShowRequest(ApiModel):
    name: str


class GenerateRequest(ApiModel):
    model: str
    prompt: str
    stream: bool = True


class PullRequest(ApiModel):
    name: str
    stream: bool = True


class DeleteRequest(ApiModel):
    name: str


class CopyRequest(ApiModel):
    source: str
    destination: str


class GenerateChunk(ApiModel):
    """One streamed generation fragment."""

    response: OptionalText = ""
    done: OptionalFlag = False
    error: OptionalText = ""


class PullChunk(ApiModel):
    """One streamed pull progress event."""

    status: OptionalText = ""
    digest: OptionalText = ""
    total: OptionalCount = 0
    completed: OptionalCount = 0
    error: OptionalText = ""

    def render(self) -> str | None:
        """Human-readable progress line, or None when there is nothing to show."""
        status = self.status.strip()
        if self.digest and self.total > 0:
            return f"{status} {self.digest} {self.completed}/{self.total}"
        if status:
            return status
        return None
