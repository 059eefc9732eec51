"""Tests for Ollama HTTP client behavior, retries, and error mapping."""

from __future__ import annotations

import io
import json
import socket
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from typing import Any

import httpx
import pytest

from ollama_remote.client import (
    APIError,
    DecodeError,
    InvalidHostError,
    InvalidRequestError,
    ModelMissingError,
    OllamaClient,
    RequestCancelledError,
    RequestContext,
    RequestTimeoutError,
    RetryPolicy,
    TransportError,
    api_error_status,
)

_FAST_RETRY = RetryPolicy(max_retries=3, initial_backoff=0.0, max_backoff=0.0, jitter=False)


def _client(handler: httpx.MockTransport, *, retry: RetryPolicy | None = None) -> OllamaClient:
    return OllamaClient(
        "http://daemon.test:11434",
        timeout=3.0,
        retry=retry or RetryPolicy(),
        transport=handler,
    )


def _ndjson(*chunks: dict[str, Any]) -> bytes:
    return "".join(json.dumps(chunk) + "\n" for chunk in chunks).encode("utf-8")


def test_version_reads_api_version() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/api/version"
        assert request.content == b""
        return httpx.Response(200, json={"version": "0.1.0"})

    client = _client(httpx.MockTransport(handler))

    assert client.version() == "0.1.0"


def test_version_empty_string_is_decode_error() -> None:
    client = _client(httpx.MockTransport(lambda request: httpx.Response(200, json={"version": ""})))

    with pytest.raises(DecodeError):
        client.version()


def test_list_tags_parses_models_with_nanosecond_timestamps() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tags"
        return httpx.Response(
            200,
            json={
                "models": [
                    {
                        "name": "llama3:8b",
                        "digest": "a" * 64,
                        "size": 4_000_000_000,
                        "modified_at": "2026-01-01T10:00:00.123456789+02:00",
                    }
                ]
            },
        )

    models = _client(httpx.MockTransport(handler)).list_tags()

    assert len(models) == 1
    assert models[0].name == "llama3:8b"
    assert models[0].size == 4_000_000_000
    assert models[0].modified_at is not None
    assert models[0].modified_at.microsecond == 123456


def test_list_running_treats_zero_time_as_unset() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/ps"
        return httpx.Response(
            200,
            json={
                "models": [
                    {
                        "name": "llama3:8b",
                        "model": "llama3:8b",
                        "size": 1234,
                        "expires_at": "0001-01-01T00:00:00Z",
                        "details": {"family": "llama"},
                    }
                ]
            },
        )

    models = _client(httpx.MockTransport(handler)).list_running()

    assert models[0].expires_at is None
    assert models[0].details == {"family": "llama"}


def test_show_posts_trimmed_name_and_returns_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/api/show"
        assert request.headers["content-type"] == "application/json"
        assert json.loads(request.content) == {"name": "llama3:8b"}
        return httpx.Response(200, json={"name": "llama3:8b", "license": "MIT"})

    response = _client(httpx.MockTransport(handler)).show_model("  llama3:8b ")

    assert response["license"] == "MIT"


def test_show_empty_name_fails_before_any_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = _client(httpx.MockTransport(handler))

    with pytest.raises(InvalidRequestError) as exc_info:
        client.show_model("   ")

    assert exc_info.value.exit_code == 2


def test_show_404_maps_to_model_missing_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "model 'missing' not found"})

    client = _client(httpx.MockTransport(handler))

    with pytest.raises(ModelMissingError) as exc_info:
        client.show_model("missing")

    assert exc_info.value.status_code == 404
    assert exc_info.value.message == "model 'missing' not found"
    assert exc_info.value.endpoint == "/api/show"
    assert exc_info.value.exit_code == 4
    assert api_error_status(exc_info.value) == 404


def test_error_body_without_error_field_falls_back_to_status_text() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="<html>bad request</html>")

    client = _client(httpx.MockTransport(handler))

    with pytest.raises(APIError) as exc_info:
        client.list_tags()

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == ""
    assert exc_info.value.status_text == "400 Bad Request"
    assert "400 Bad Request" in str(exc_info.value)


def test_delete_sends_body_and_skips_decoding() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        return httpx.Response(200)

    _client(httpx.MockTransport(handler)).remove_model("llama3:8b")

    assert seen == {"method": "DELETE", "body": {"name": "llama3:8b"}}


def test_copy_posts_source_and_destination() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200)

    _client(httpx.MockTransport(handler)).copy_model("llama3:8b", "llama3:backup")

    assert seen == {
        "path": "/api/copy",
        "body": {"source": "llama3:8b", "destination": "llama3:backup"},
    }


def test_copy_requires_destination() -> None:
    client = _client(httpx.MockTransport(lambda request: httpx.Response(200)))

    with pytest.raises(InvalidRequestError, match="destination"):
        client.copy_model("llama3:8b", " ")


def test_connect_error_maps_to_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(httpx.MockTransport(handler))

    with pytest.raises(TransportError) as exc_info:
        client.list_tags()

    assert exc_info.value.exit_code == 3
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


def test_timeout_error_maps_to_request_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = _client(httpx.MockTransport(handler))

    with pytest.raises(RequestTimeoutError) as exc_info:
        client.list_tags()

    assert exc_info.value.exit_code == 6


def test_non_json_response_is_decode_error() -> None:
    client = _client(httpx.MockTransport(lambda request: httpx.Response(200, text="not json")))

    with pytest.raises(DecodeError):
        client.show_model("llama3")


@pytest.mark.parametrize("max_retries", [0, 1, 3])
def test_retryable_failure_runs_max_retries_plus_one_attempts(max_retries: int) -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(503, json={"error": "loading"})

    policy = RetryPolicy(max_retries=max_retries, initial_backoff=0.0, jitter=False)
    client = _client(httpx.MockTransport(handler), retry=policy)

    with pytest.raises(APIError) as exc_info:
        client.list_tags()

    assert attempts["count"] == max_retries + 1
    assert exc_info.value.status_code == 503


def test_non_retryable_failure_runs_single_attempt() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(404, json={"error": "not found"})

    client = _client(httpx.MockTransport(handler), retry=_FAST_RETRY)

    with pytest.raises(ModelMissingError):
        client.show_model("missing")

    assert attempts["count"] == 1


def test_decode_error_is_not_retried() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(200, text="{broken")

    client = _client(httpx.MockTransport(handler), retry=_FAST_RETRY)

    with pytest.raises(DecodeError):
        client.list_tags()

    assert attempts["count"] == 1


def test_transient_connection_failure_recovers_on_retry() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise httpx.ConnectError("[Errno 111] Connection refused", request=request)
        return httpx.Response(200, json={"version": "0.5.1"})

    client = _client(httpx.MockTransport(handler), retry=_FAST_RETRY)

    assert client.version() == "0.5.1"
    assert attempts["count"] == 3


def test_cancel_during_retry_wait_returns_preceding_failure() -> None:
    context = RequestContext.background()
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        context.cancel()
        return httpx.Response(502, json={"error": "upstream down"})

    policy = RetryPolicy(max_retries=5, initial_backoff=30.0, max_backoff=30.0, jitter=False)
    client = _client(httpx.MockTransport(handler), retry=policy)

    with pytest.raises(APIError) as exc_info:
        client.list_tags(context=context)

    assert not isinstance(exc_info.value, RequestCancelledError)
    assert exc_info.value.status_code == 502
    assert attempts["count"] == 1


def test_context_cancelled_before_first_attempt_raises_cancellation() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    context = RequestContext.background()
    context.cancel()
    client = _client(httpx.MockTransport(handler), retry=_FAST_RETRY)

    with pytest.raises(RequestCancelledError) as exc_info:
        client.list_tags(context=context)

    assert exc_info.value.exit_code == 130


def test_generate_streams_fragments_in_order() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/generate"
        assert json.loads(request.content) == {
            "model": "llama3:8b",
            "prompt": "hello",
            "stream": True,
        }
        return httpx.Response(
            200,
            content=b'{"response":"Hi","done":false}\n{"response":"!","done":true}\n',
        )

    sink = io.StringIO()
    _client(httpx.MockTransport(handler)).generate("llama3:8b", "hello", sink)

    assert sink.getvalue() == "Hi!"


def test_generate_handles_objects_split_across_reads() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        parts = [b'{"respo', b'nse":"Hel', b'lo"}\n{"response":" world",', b'"done":true}\n']
        return httpx.Response(200, content=iter(parts))

    sink = io.StringIO()
    _client(httpx.MockTransport(handler)).generate("llama3", "hi", sink)

    assert sink.getvalue() == "Hello world"


def test_generate_embedded_error_is_api_error_with_status_zero() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        chunk = {"response": "", "done": False, "error": "model not found"}
        return httpx.Response(200, content=_ndjson(chunk))

    sink = io.StringIO()
    client = _client(httpx.MockTransport(handler))

    with pytest.raises(APIError) as exc_info:
        client.generate("nonexistent", "hello", sink)

    assert "model not found" in str(exc_info.value)
    assert exc_info.value.status_code == 0
    assert exc_info.value.endpoint == "/api/generate"
    assert sink.getvalue() == ""


def test_generate_rejects_blank_prompt() -> None:
    client = _client(httpx.MockTransport(lambda request: httpx.Response(200)))

    with pytest.raises(InvalidRequestError, match="prompt"):
        client.generate("llama3", "   ", io.StringIO())


def test_stream_non_2xx_raises_api_error_without_writing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "model 'x' not found, try pulling it first"})

    sink = io.StringIO()
    client = _client(httpx.MockTransport(handler))

    with pytest.raises(ModelMissingError) as exc_info:
        client.generate("x", "hello", sink)

    assert "try pulling it first" in exc_info.value.message
    assert sink.getvalue() == ""


def test_stream_calls_are_never_retried() -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        return httpx.Response(503, json={"error": "busy"})

    client = _client(httpx.MockTransport(handler), retry=_FAST_RETRY)

    with pytest.raises(APIError):
        client.pull_model("llama3", io.StringIO())

    assert attempts["count"] == 1


def test_generate_mid_stream_garbage_is_decode_error_after_partial_output() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'{"response":"Hi","done":false}\nnot-json\n')

    sink = io.StringIO()
    client = _client(httpx.MockTransport(handler))

    with pytest.raises(DecodeError) as exc_info:
        client.generate("llama3", "hello", sink)

    assert "/api/generate" in str(exc_info.value)
    assert sink.getvalue() == "Hi"


def test_pull_renders_progress_lines() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/pull"
        assert json.loads(request.content) == {"name": "llama3:8b", "stream": True}
        return httpx.Response(
            200,
            content=_ndjson(
                {"status": "pulling manifest"},
                {
                    "status": "downloading",
                    "digest": "sha256:abc123",
                    "total": 1000,
                    "completed": 500,
                },
                {"status": "success"},
            ),
        )

    sink = io.StringIO()
    _client(httpx.MockTransport(handler)).pull_model("llama3:8b", sink)

    assert sink.getvalue().splitlines() == [
        "pulling manifest",
        "downloading sha256:abc123 500/1000",
        "success",
    ]


def test_pull_embedded_error_stops_stream() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_ndjson(
                {"status": "pulling manifest"},
                {"error": "pull model manifest: file does not exist"},
                {"status": "never rendered"},
            ),
        )

    sink = io.StringIO()
    client = _client(httpx.MockTransport(handler))

    with pytest.raises(APIError, match="file does not exist"):
        client.pull_model("missing", sink)

    assert sink.getvalue() == "pulling manifest\n"


def test_stream_read_failure_maps_to_transport_error() -> None:
    def broken_body():
        yield b'{"response":"partial","done":false}\n'
        raise httpx.ReadError("connection reset by peer")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=broken_body())

    sink = io.StringIO()
    client = _client(httpx.MockTransport(handler), retry=_FAST_RETRY)

    with pytest.raises(TransportError):
        client.generate("llama3", "hello", sink)

    assert sink.getvalue() == "partial"


def test_client_rejects_invalid_base_url() -> None:
    with pytest.raises(InvalidHostError):
        OllamaClient("127.0.0.1:11434")


def test_client_exposes_proxy_bypass_for_backend_host() -> None:
    with OllamaClient("http://LocalHost:11434", no_proxy_auto=True) as client:
        assert client.proxy_selector.bypass_active
        assert client.proxy_selector.is_direct("http://localhost:11434/api/tags")
        assert client.proxy_selector.backend_host == "localhost"


def test_null_counts_and_flags_read_as_zero_values() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "tiny", "size": None}]})
        return httpx.Response(
            200,
            content=_ndjson(
                {"response": "ok", "done": None},
                {"response": "!", "done": True},
            ),
        )

    client = _client(httpx.MockTransport(handler))
    sink = io.StringIO()

    models = client.list_tags()
    client.generate("tiny", "hello", sink)

    assert models[0].size == 0
    assert sink.getvalue() == "ok!"


_STALL_SECONDS = 10.0
_CANCEL_AFTER_SECONDS = 0.3
_PROMPT_RETURN_SECONDS = 5.0


@contextmanager
def _stalling_server(reply: bytes = b"") -> Iterator[str]:
    """Accept one connection, send ``reply``, then go silent until torn down."""
    listener = socket.create_server(("127.0.0.1", 0))
    listener.settimeout(_STALL_SECONDS)
    port = listener.getsockname()[1]
    release = threading.Event()

    def serve() -> None:
        with suppress(OSError):
            conn, _ = listener.accept()
            with conn:
                conn.recv(65536)
                if reply:
                    conn.sendall(reply)
                release.wait(_STALL_SECONDS)

    worker = threading.Thread(target=serve, daemon=True)
    worker.start()
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        release.set()
        worker.join(timeout=_STALL_SECONDS)
        listener.close()


def _chunked_ndjson_head(*chunks: dict[str, Any]) -> bytes:
    head = (
        b"HTTP/1.1 200 OK\r\n"
        b"Content-Type: application/x-ndjson\r\n"
        b"Transfer-Encoding: chunked\r\n"
        b"\r\n"
    )
    for chunk in chunks:
        data = (json.dumps(chunk) + "\n").encode("utf-8")
        head += f"{len(data):x}\r\n".encode("ascii") + data + b"\r\n"
    return head


def _cancel_after(context: RequestContext, delay: float) -> threading.Timer:
    timer = threading.Timer(delay, context.cancel)
    timer.daemon = True
    timer.start()
    return timer


def test_cancel_unblocks_json_call_waiting_for_headers() -> None:
    context = RequestContext.background()

    with _stalling_server() as base_url, OllamaClient(base_url, timeout=30.0) as client:
        timer = _cancel_after(context, _CANCEL_AFTER_SECONDS)
        started = time.monotonic()
        try:
            with pytest.raises(RequestCancelledError):
                client.version(context=context)
        finally:
            timer.cancel()
        elapsed = time.monotonic() - started

    assert elapsed < _PROMPT_RETURN_SECONDS


def test_cancel_unblocks_stream_waiting_for_headers() -> None:
    context = RequestContext.background()
    sink = io.StringIO()

    with _stalling_server() as base_url, OllamaClient(base_url, timeout=30.0) as client:
        timer = _cancel_after(context, _CANCEL_AFTER_SECONDS)
        started = time.monotonic()
        try:
            with pytest.raises(RequestCancelledError):
                client.generate("llama3", "hello", sink, context=context)
        finally:
            timer.cancel()
        elapsed = time.monotonic() - started

    assert elapsed < _PROMPT_RETURN_SECONDS
    assert sink.getvalue() == ""


def test_cancel_unblocks_stream_stalled_mid_body() -> None:
    context = RequestContext.background()
    sink = io.StringIO()
    reply = _chunked_ndjson_head({"response": "Hi", "done": False})

    with _stalling_server(reply) as base_url, OllamaClient(base_url, timeout=30.0) as client:
        timer = _cancel_after(context, _CANCEL_AFTER_SECONDS)
        started = time.monotonic()
        try:
            with pytest.raises(RequestCancelledError) as exc_info:
                client.generate("llama3", "hello", sink, context=context)
        finally:
            timer.cancel()
        elapsed = time.monotonic() - started

    assert elapsed < _PROMPT_RETURN_SECONDS
    assert sink.getvalue() == "Hi"
    assert exc_info.value.exit_code == 130


def test_cancel_unblocks_stalled_pull_progress() -> None:
    context = RequestContext.background()
    sink = io.StringIO()
    reply = _chunked_ndjson_head({"status": "pulling manifest"})

    with _stalling_server(reply) as base_url, OllamaClient(base_url, timeout=30.0) as client:
        timer = _cancel_after(context, _CANCEL_AFTER_SECONDS)
        started = time.monotonic()
        try:
            with pytest.raises(RequestCancelledError):
                client.pull_model("llama3", sink, context=context)
        finally:
            timer.cancel()
        elapsed = time.monotonic() - started

    assert elapsed < _PROMPT_RETURN_SECONDS
    assert sink.getvalue() == "pulling manifest\n"
