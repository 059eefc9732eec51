"""Typed client-side exception hierarchy for Ollama API calls."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class ErrorMetadata:
    """Structured metadata for mapping errors across interfaces."""

    category: str
    exit_code: int


class OllamaClientError(RuntimeError):
    """Base error for ollama-remote client operations."""

    metadata = ErrorMetadata(category="INTERNAL_ERROR", exit_code=10)

    def __init__(
        self,
        *,
        action: str,
        detail: str,
        status_code: int | None = None,
        hint: str | None = None,
    ) -> None:
        message = f"{action} failed"
        if status_code is not None:
            message = f"{message} with HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.action = action
        self.detail = detail
        self.status_code = status_code
        self.hint = hint

    @property
    def exit_code(self) -> int:
        return self.metadata.exit_code

    @property
    def category(self) -> str:
        return self.metadata.category


class InvalidRequestError(OllamaClientError):
    """Invalid client request payload or parameters."""

    metadata = ErrorMetadata(category="INVALID_REQUEST", exit_code=2)


class InvalidHostError(InvalidRequestError):
    """Backend base URL is not a usable http(s) endpoint."""


class TransportError(OllamaClientError):
    """Backend could not be reached or the connection failed mid-request."""

    metadata = ErrorMetadata(category="DAEMON_UNREACHABLE", exit_code=3)


class RequestTimeoutError(TransportError):
    """Connect, TLS handshake, or read timed out."""

    metadata = ErrorMetadata(category="TIMEOUT", exit_code=6)


class APIError(OllamaClientError):
    """Structured failure reported by the backend.

    ``status_code`` is the HTTP status for non-2xx responses and ``0`` when the
    failure was embedded in a streamed chunk.
    """

    metadata = ErrorMetadata(category="API_ERROR", exit_code=1)

    def __init__(
        self,
        *,
        endpoint: str,
        status_code: int = 0,
        status_text: str = "",
        message: str = "",
        hint: str | None = None,
    ) -> None:
        super().__init__(
            action=f"ollama api {endpoint}",
            detail=message or status_text,
            status_code=status_code or None,
            hint=hint,
        )
        # The base class stores ``None`` for payload errors; keep the raw code.
        self.status_code = status_code
        self.status_text = status_text
        self.message = message
        self.endpoint = endpoint


class ModelMissingError(APIError):
    """Requested model is not installed or not found."""

    metadata = ErrorMetadata(category="MODEL_MISSING", exit_code=4)


class DecodeError(OllamaClientError):
    """Response or stream body did not match the expected JSON shape."""

    metadata = ErrorMetadata(category="DECODE_ERROR", exit_code=7)


class RequestCancelledError(OllamaClientError):
    """Caller cancelled the request context."""

    metadata = ErrorMetadata(category="CANCELLED", exit_code=130)


class DeadlineExceededError(RequestCancelledError):
    """Request context deadline passed."""


def find_api_error(exc: BaseException | None) -> APIError | None:
    """Return the first ``APIError`` in an exception's cause chain."""
    seen: set[int] = set()
    current = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, APIError):
            return current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return None


def api_error_status(exc: BaseException | None) -> int | None:
    """Return the HTTP status carried by an ``APIError`` in the chain, if any."""
    api_error = find_api_error(exc)
    if api_error is None:
        return None
    return api_error.status_code
