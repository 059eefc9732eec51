"""HTTP client for talking to an Ollama daemon."""

from __future__ import annotations

import json
import logging
import socket
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

import httpx
from pydantic import ValidationError

from .context import RequestContext
from .exceptions import (
    APIError,
    DeadlineExceededError,
    DecodeError,
    InvalidRequestError,
    ModelMissingError,
    OllamaClientError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportError,
)
from .proxy import ProxySelector, parse_base_url
from .retry import NO_RETRY, RetryPolicy, is_retryable, next_delay
from .stream import GENERATE_ENDPOINT, PULL_ENDPOINT, TextSink, decode_generate, decode_pull
from .types import (
    ApiModel,
    CopyRequest,
    DeleteRequest,
    GenerateRequest,
    PullRequest,
    RunningModel,
    RunningResponse,
    ShowRequest,
    TagModel,
    TagsResponse,
    VersionResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_DAEMON_HOST = "127.0.0.1"
DEFAULT_DAEMON_PORT = 11434
DEFAULT_BASE_URL = f"http://{DEFAULT_DAEMON_HOST}:{DEFAULT_DAEMON_PORT}"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_KEEPALIVE_EXPIRY_SECONDS = 90.0
DEFAULT_MAX_CONNECTIONS = 10
DEFAULT_MAX_KEEPALIVE_CONNECTIONS = 5

# httpcore trace events whose return value is the connection's network stream.
_STREAM_TRACE_EVENTS = frozenset(
    {"connection.connect_tcp.complete", "connection.start_tls.complete"}
)

ModelT = TypeVar("ModelT", bound=ApiModel)
StreamDecoder = Callable[..., None]


class OllamaClient:
    """Client for the Ollama JSON API with retries for non-streaming calls.

    JSON calls share a keep-alive pool. Streaming calls go through a second
    ``httpx.Client`` that never keeps connections idle, so each stream holds its
    own connection for its lifetime. The instance is safe to share across
    threads; close it when done (or use it as a context manager).
    """

    def __init__(
        self,
        base_url: str | httpx.URL = DEFAULT_BASE_URL,
        *,
        no_proxy_auto: bool = False,
        retry: RetryPolicy = NO_RETRY,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = parse_base_url(str(base_url))
        self._retry = retry
        self._timeout = timeout
        self._connect_timeout = connect_timeout
        self._proxy = ProxySelector(self._base_url, bypass=no_proxy_auto)
        self._http = self._build_http_client(transport, keepalive=True)
        self._stream_http = self._build_http_client(transport, keepalive=False)

    @property
    def base_url(self) -> httpx.URL:
        return self._base_url

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    @property
    def proxy_selector(self) -> ProxySelector:
        return self._proxy

    def close(self) -> None:
        self._http.close()
        self._stream_http.close()

    def __enter__(self) -> OllamaClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def version(self, *, context: RequestContext | None = None) -> str:
        """Fetch the daemon version string."""
        action = "get version"
        payload = self._request_json("GET", "/api/version", action=action, context=context)
        response = _validate(VersionResponse, payload, action=action)
        if not response.version.strip():
            raise DecodeError(action=action, detail="empty version response")
        return response.version

    def list_tags(self, *, context: RequestContext | None = None) -> list[TagModel]:
        """Fetch locally installed models."""
        action = "list models"
        payload = self._request_json("GET", "/api/tags", action=action, context=context)
        return _validate(TagsResponse, payload, action=action).models

    def list_running(self, *, context: RequestContext | None = None) -> list[RunningModel]:
        """Fetch models currently loaded in memory."""
        action = "list running models"
        payload = self._request_json("GET", "/api/ps", action=action, context=context)
        return _validate(RunningResponse, payload, action=action).models

    def show_model(self, name: str, *, context: RequestContext | None = None) -> dict[str, Any]:
        """Fetch model details as returned by the daemon."""
        model_name = _require_text(name, action="show", field="model name")
        action = f"show model {model_name!r}"
        payload = self._request_json(
            "POST",
            "/api/show",
            json_payload=ShowRequest(name=model_name).model_dump(),
            action=action,
            context=context,
        )
        if not isinstance(payload, dict):
            raise DecodeError(action=action, detail="daemon returned unexpected JSON payload")
        return payload

    def generate(
        self,
        model: str,
        prompt: str,
        sink: TextSink,
        *,
        context: RequestContext | None = None,
    ) -> None:
        """Stream a completion for ``prompt`` into ``sink``."""
        model_name = _require_text(model, action="generate", field="model")
        # The prompt is sent verbatim; only reject prompts with no content.
        if not prompt.strip():
            raise InvalidRequestError(action="generate", detail="empty prompt")
        request = GenerateRequest(model=model_name, prompt=prompt, stream=True)
        self._stream(
            GENERATE_ENDPOINT,
            request.model_dump(),
            sink,
            decode=decode_generate,
            action=f"generate with model {model_name!r}",
            context=context,
        )

    def pull_model(
        self,
        name: str,
        sink: TextSink,
        *,
        context: RequestContext | None = None,
    ) -> None:
        """Pull a model, writing one progress line per event into ``sink``."""
        model_name = _require_text(name, action="pull", field="model name")
        self._stream(
            PULL_ENDPOINT,
            PullRequest(name=model_name, stream=True).model_dump(),
            sink,
            decode=decode_pull,
            action=f"pull model {model_name!r}",
            context=context,
        )

    def remove_model(self, name: str, *, context: RequestContext | None = None) -> None:
        """Delete a model from the daemon."""
        model_name = _require_text(name, action="delete", field="model name")
        self._request_json(
            "DELETE",
            "/api/delete",
            json_payload=DeleteRequest(name=model_name).model_dump(),
            action=f"delete model {model_name!r}",
            expect_body=False,
            context=context,
        )

    def copy_model(
        self,
        source: str,
        destination: str,
        *,
        context: RequestContext | None = None,
    ) -> None:
        """Duplicate ``source`` under the name ``destination``."""
        source_name = _require_text(source, action="copy", field="source model name")
        destination_name = _require_text(
            destination,
            action="copy",
            field="destination model name",
        )
        self._request_json(
            "POST",
            "/api/copy",
            json_payload=CopyRequest(source=source_name, destination=destination_name).model_dump(),
            action=f"copy model {source_name!r} to {destination_name!r}",
            expect_body=False,
            context=context,
        )

    def _build_http_client(
        self,
        transport: httpx.BaseTransport | None,
        *,
        keepalive: bool,
    ) -> httpx.Client:
        limits = httpx.Limits(
            max_connections=DEFAULT_MAX_CONNECTIONS,
            max_keepalive_connections=DEFAULT_MAX_KEEPALIVE_CONNECTIONS if keepalive else 0,
            keepalive_expiry=DEFAULT_KEEPALIVE_EXPIRY_SECONDS,
        )
        mounts: dict[str, httpx.BaseTransport | None] | None = None
        # httpx ignores environment proxies when an explicit transport is supplied.
        pattern = self._proxy.mount_pattern() if transport is None else None
        if pattern is not None:
            mounts = {pattern: httpx.HTTPTransport(limits=limits)}
            logger.debug("bypassing proxies for backend host %s", self._proxy.backend_host)
        return httpx.Client(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._timeout, connect=self._connect_timeout),
            limits=limits,
            transport=transport,
            mounts=mounts,
        )

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None = None,
        action: str,
        expect_body: bool = True,
        context: RequestContext | None = None,
    ) -> Any:
        ctx = context or RequestContext.background()
        ctx.raise_if_done(action)

        last_error: OllamaClientError | None = None
        for attempt in range(self._retry.max_attempts):
            if attempt > 0:
                delay = next_delay(attempt - 1, self._retry)
                logger.warning(
                    "%s failed (%s); retrying in %.2fs (attempt %d of %d)",
                    action,
                    last_error,
                    delay,
                    attempt + 1,
                    self._retry.max_attempts,
                )
                if ctx.wait(delay):
                    # Surface the failure that caused the retry, not the cancellation.
                    logger.debug("%s: retry wait interrupted by context", action)
                    assert last_error is not None
                    raise last_error

            logger.debug("%s %s attempt %d", method, path, attempt + 1)
            try:
                return self._request_json_once(
                    method,
                    path,
                    json_payload=json_payload,
                    action=action,
                    expect_body=expect_body,
                    context=ctx,
                )
            except OllamaClientError as exc:
                last_error = exc
                if not is_retryable(exc):
                    raise

        assert last_error is not None
        raise last_error

    def _request_json_once(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None,
        action: str,
        expect_body: bool,
        context: RequestContext,
    ) -> Any:
        response, canceller = self._send(
            method,
            path,
            json_payload=json_payload,
            action=action,
            context=context,
            streaming=False,
        )
        try:
            with context.on_cancel(canceller.cancel), _map_transport_errors(action, context):
                body = response.read()
            if context.cancelled:
                context.raise_if_done(action)
        finally:
            response.close()

        if not expect_body:
            return None
        try:
            return json.loads(body)
        except ValueError as exc:
            raise DecodeError(action=action, detail="daemon returned non-JSON response") from exc

    def _stream(
        self,
        path: str,
        json_payload: dict[str, Any],
        sink: TextSink,
        *,
        decode: StreamDecoder,
        action: str,
        context: RequestContext | None,
    ) -> None:
        # Single attempt: output may already have reached the sink once reading starts.
        ctx = context or RequestContext.background()
        ctx.raise_if_done(action)
        response, canceller = self._send(
            "POST",
            path,
            json_payload=json_payload,
            action=action,
            context=ctx,
            streaming=True,
        )
        try:
            with ctx.on_cancel(canceller.cancel):
                decode(self._iter_body(response, action=action, context=ctx), sink, endpoint=path)
        finally:
            response.close()

    def _send(
        self,
        method: str,
        path: str,
        *,
        json_payload: dict[str, Any] | None,
        action: str,
        context: RequestContext,
        streaming: bool,
    ) -> tuple[httpx.Response, _SocketCanceller]:
        http = self._stream_http if streaming else self._http
        canceller = _SocketCanceller()
        request = http.build_request(
            method,
            path,
            json=json_payload,
            timeout=self._attempt_timeout(context, streaming=streaming),
            extensions={"trace": canceller.trace},
        )
        with context.on_cancel(canceller.cancel), _map_transport_errors(action, context):
            response = http.send(request, stream=True)
            # Reused keep-alive connections emit no connect event; take the stream here.
            canceller.attach(response.extensions.get("network_stream"))
            if not response.is_success:
                raise _api_error_from_response(response, endpoint=path)
        return response, canceller

    def _iter_body(
        self,
        response: httpx.Response,
        *,
        action: str,
        context: RequestContext,
    ) -> Iterator[str]:
        with _map_transport_errors(action, context):
            for text in response.iter_text():
                context.raise_if_done(action)
                yield text
        # A shut down socket can look like a clean end of a close-delimited body.
        if context.cancelled:
            context.raise_if_done(action)

    def _attempt_timeout(self, context: RequestContext, *, streaming: bool) -> httpx.Timeout:
        read: float | None = None if streaming else self._timeout
        connect: float = self._connect_timeout
        other: float = self._timeout
        remaining = context.remaining()
        if remaining is not None:
            read = remaining if read is None else min(read, remaining)
            connect = min(connect, remaining)
            other = min(other, remaining)
        return httpx.Timeout(connect=connect, read=read, write=other, pool=other)


class _SocketCanceller:
    """Unblocks one request attempt by shutting down its socket.

    Closing an ``httpx.Response`` from another thread does not interrupt a
    thread blocked in ``recv``; shutting the socket down does. The socket is
    learned from httpcore ``trace`` events while connecting and from the
    response's ``network_stream`` extension once headers arrive.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stream: Any = None
        self._cancelled = False

    def trace(self, event_name: str, info: dict[str, Any]) -> None:
        if event_name in _STREAM_TRACE_EVENTS:
            self.attach(info.get("return_value"))

    def attach(self, stream: Any) -> None:
        if stream is None:
            return
        with self._lock:
            self._stream = stream
            cancelled = self._cancelled
        if cancelled:
            _shutdown_stream(stream)

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            stream = self._stream
        if stream is not None:
            _shutdown_stream(stream)


def _shutdown_stream(stream: Any) -> None:
    sock = stream.get_extra_info("socket")
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        logger.debug("socket already closed", exc_info=True)


@contextmanager
def _map_transport_errors(action: str, context: RequestContext) -> Iterator[None]:
    try:
        yield
    except httpx.TimeoutException as exc:
        if context.expired:
            raise DeadlineExceededError(action=action, detail="context deadline exceeded") from exc
        raise RequestTimeoutError(action=action, detail=str(exc) or "request timed out") from exc
    except (httpx.TransportError, httpx.StreamError) as exc:
        if context.cancelled:
            raise RequestCancelledError(action=action, detail="context cancelled") from exc
        raise TransportError(action=action, detail=str(exc) or type(exc).__name__) from exc


def _api_error_from_response(response: httpx.Response, *, endpoint: str) -> APIError:
    try:
        response.read()
    except (httpx.HTTPError, httpx.StreamError):
        logger.debug("unable to read error body from %s", endpoint, exc_info=True)
    finally:
        response.close()

    status_text = f"{response.status_code} {response.reason_phrase}".strip()
    error_cls = ModelMissingError if response.status_code == 404 else APIError
    return error_cls(
        endpoint=endpoint,
        status_code=response.status_code,
        status_text=status_text,
        message=_extract_error_message(response),
    )


def _extract_error_message(response: httpx.Response) -> str:
    # Best effort: fall back to the status text when the body is not {"error": ...}.
    try:
        payload = response.json()
    except (ValueError, httpx.StreamError):
        return ""
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str):
            return error.strip()
    return ""


def _validate(model: type[ModelT], payload: Any, *, action: str) -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise DecodeError(action=action, detail=f"unexpected response shape: {exc}") from exc


def _require_text(value: str, *, action: str, field: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise InvalidRequestError(action=action, detail=f"empty {field}")
    return normalized
