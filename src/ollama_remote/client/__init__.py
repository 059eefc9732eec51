"""HTTP client API for the Ollama daemon: retries, streaming, and typed errors."""

from .context import RequestContext
from .exceptions import (
    APIError,
    DeadlineExceededError,
    DecodeError,
    InvalidHostError,
    InvalidRequestError,
    ModelMissingError,
    OllamaClientError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportError,
    api_error_status,
)
from .http import (
    DEFAULT_BASE_URL,
    DEFAULT_DAEMON_HOST,
    DEFAULT_DAEMON_PORT,
    DEFAULT_TIMEOUT_SECONDS,
    OllamaClient,
)
from .proxy import ProxySelector, parse_base_url
from .retry import DEFAULT_RETRY_POLICY, NO_RETRY, RetryPolicy, is_retryable, next_delay
from .stream import decode_generate, decode_pull

__all__ = [
    "DEFAULT_BASE_URL",
    "DEFAULT_DAEMON_HOST",
    "DEFAULT_DAEMON_PORT",
    "DEFAULT_RETRY_POLICY",
    "DEFAULT_TIMEOUT_SECONDS",
    "NO_RETRY",
    "APIError",
    "DeadlineExceededError",
    "DecodeError",
    "InvalidHostError",
    "InvalidRequestError",
    "ModelMissingError",
    "OllamaClient",
    "OllamaClientError",
    "ProxySelector",
    "RequestCancelledError",
    "RequestContext",
    "RequestTimeoutError",
    "RetryPolicy",
    "TransportError",
    "api_error_status",
    "decode_generate",
    "decode_pull",
    "is_retryable",
    "next_delay",
    "parse_base_url",
]
