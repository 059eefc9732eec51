"""Incremental decoding of newline-delimited JSON stream bodies."""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from typing import Any, Protocol, TypeVar

from pydantic import ValidationError

from .exceptions import APIError, DecodeError
from .types import ApiModel, GenerateChunk, PullChunk

GENERATE_ENDPOINT = "/api/generate"
PULL_ENDPOINT = "/api/pull"

_JSON_WHITESPACE = " \t\r\n"

ChunkT = TypeVar("ChunkT", bound=ApiModel)


class TextSink(Protocol):
    def write(self, text: str, /) -> Any: ...


class NDJSONDecoder:
    """Split a text stream into JSON values without relying on line framing.

    Values may be separated by any JSON whitespace. A value that fails to parse
    is held back until more text arrives, unless a newline already follows the
    failure point (the offending token is complete) or the input has ended.
    """

    def __init__(self) -> None:
        self._decoder = json.JSONDecoder()
        self._buffer = ""

    def feed(self, text: str) -> list[Any]:
        self._buffer += text
        return self._drain(final=False)

    def close(self) -> list[Any]:
        return self._drain(final=True)

    def _drain(self, *, final: bool) -> list[Any]:
        buffer = self._buffer
        values: list[Any] = []
        pos = 0
        while True:
            while pos < len(buffer) and buffer[pos] in _JSON_WHITESPACE:
                pos += 1
            if pos >= len(buffer):
                break
            try:
                value, pos = self._decoder.raw_decode(buffer, pos)
            except json.JSONDecodeError as exc:
                if values:
                    # Deliver what decoded cleanly; the failure resurfaces on the next drain.
                    break
                if final or "\n" in buffer[exc.pos :]:
                    self._buffer = ""
                    raise
                break
            values.append(value)
        self._buffer = buffer[pos:]
        return values


def iter_json_objects(body: Iterable[str], *, stream_name: str) -> Iterator[dict[str, Any]]:
    """Yield JSON objects from ``body`` as soon as each one is complete."""
    decoder = NDJSONDecoder()
    action = f"{stream_name} stream decode"
    try:
        for text in body:
            for value in decoder.feed(text):
                yield _require_object(value, action=action)
        for value in decoder.close():
            yield _require_object(value, action=action)
    except json.JSONDecodeError as exc:
        raise DecodeError(action=action, detail=str(exc)) from exc


def decode_generate(
    body: Iterable[str],
    sink: TextSink,
    *,
    endpoint: str = GENERATE_ENDPOINT,
) -> None:
    """Forward generated text fragments to ``sink`` until the stream finishes.

    End of input without a ``done`` chunk is a normal finish. A chunk carrying
    ``error`` raises ``APIError`` with ``status_code == 0``.
    """
    for payload in iter_json_objects(body, stream_name=endpoint):
        chunk = _parse_chunk(GenerateChunk, payload, endpoint=endpoint)
        if chunk.error:
            raise APIError(endpoint=endpoint, message=chunk.error)
        if chunk.response:
            _emit(sink, chunk.response)
        if chunk.done:
            return


def decode_pull(
    body: Iterable[str],
    sink: TextSink,
    *,
    endpoint: str = PULL_ENDPOINT,
) -> None:
    """Render pull progress events to ``sink``, one line per event."""
    for payload in iter_json_objects(body, stream_name=endpoint):
        chunk = _parse_chunk(PullChunk, payload, endpoint=endpoint)
        if chunk.error:
            raise APIError(endpoint=endpoint, message=chunk.error)
        line = chunk.render()
        if line is not None:
            _emit(sink, f"{line}\n")


def _require_object(value: Any, *, action: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise DecodeError(action=action, detail="expected a JSON object per chunk")
    return value


def _parse_chunk(model: type[ChunkT], payload: dict[str, Any], *, endpoint: str) -> ChunkT:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise DecodeError(action=f"{endpoint} stream decode", detail=str(exc)) from exc


def _emit(sink: TextSink, text: str) -> None:
    sink.write(text)
    flush = getattr(sink, "flush", None)
    if callable(flush):
        flush()
