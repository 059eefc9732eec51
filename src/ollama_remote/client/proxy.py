"""Backend base URL validation and per-request proxy selection."""

from __future__ import annotations

import urllib.request
from collections.abc import Mapping
from urllib.parse import urlsplit

import httpx

from .exceptions import InvalidHostError

_ACTION = "parse host"


def parse_base_url(host: str) -> httpx.URL:
    """Validate ``host`` as an absolute http(s) URL usable as the API base.

    The returned URL has an empty path; API paths are joined onto it.
    """
    value = host.strip()
    if not value:
        raise InvalidHostError(action=_ACTION, detail="empty host")
    try:
        parts = urlsplit(value)
        # Accessing the port validates it.
        _ = parts.port
    except ValueError as exc:
        raise InvalidHostError(action=_ACTION, detail=f"invalid host: {exc}") from exc

    if parts.scheme not in {"http", "https"}:
        raise InvalidHostError(
            action=_ACTION,
            detail=f"invalid host scheme: {parts.scheme or '(none)'}",
            hint="use a full URL such as http://127.0.0.1:11434",
        )
    if not parts.hostname:
        raise InvalidHostError(action=_ACTION, detail="invalid host: missing host")
    if "@" in parts.netloc:
        raise InvalidHostError(action=_ACTION, detail="invalid host: userinfo not allowed")
    if parts.fragment or "#" in value:
        raise InvalidHostError(action=_ACTION, detail="invalid host: fragment not allowed")
    if parts.query or "?" in value:
        raise InvalidHostError(action=_ACTION, detail="invalid host: query not allowed")
    if parts.path not in {"", "/"}:
        raise InvalidHostError(action=_ACTION, detail="invalid host: path not allowed")

    try:
        return httpx.URL(f"{parts.scheme}://{parts.netloc}")
    except httpx.InvalidURL as exc:
        raise InvalidHostError(action=_ACTION, detail=f"invalid host: {exc}") from exc


class ProxySelector:
    """Decide per request whether to go direct or use the ambient proxy.

    When ``bypass`` is enabled, requests whose host equals the backend host
    (case-insensitive, any port) go direct; everything else follows the
    ``*_PROXY`` / ``NO_PROXY`` environment. Process environment is never mutated.
    """

    def __init__(
        self,
        base_url: httpx.URL | None,
        *,
        bypass: bool,
        environ_proxies: Mapping[str, str] | None = None,
    ) -> None:
        host = ""
        if bypass and base_url is not None:
            host = (base_url.host or "").strip().lower()
        self._backend_host = host
        self._environ_proxies = environ_proxies

    @property
    def backend_host(self) -> str:
        return self._backend_host

    @property
    def bypass_active(self) -> bool:
        return bool(self._backend_host)

    def is_direct(self, url: httpx.URL | str) -> bool:
        """True when the request to ``url`` must skip every proxy."""
        if not self._backend_host:
            return False
        target = httpx.URL(url) if isinstance(url, str) else url
        return (target.host or "").strip().lower() == self._backend_host

    def proxy_for(self, url: httpx.URL | str) -> str | None:
        """Proxy URL for one request, ``None`` meaning a direct connection."""
        target = httpx.URL(url) if isinstance(url, str) else url
        if self.is_direct(target):
            return None
        return self._ambient_proxy(target)

    def mount_pattern(self) -> str | None:
        """``httpx`` mount key routing the backend host to a direct transport."""
        if not self._backend_host:
            return None
        host = self._backend_host
        if ":" in host:
            host = f"[{host}]"
        return f"all://{host}"

    def _ambient_proxy(self, url: httpx.URL) -> str | None:
        proxies = (
            dict(self._environ_proxies)
            if self._environ_proxies is not None
            else urllib.request.getproxies_environment()
        )
        host = url.host or ""
        no_proxy = proxies.get("no", "")
        if host and no_proxy and _bypassed_by_no_proxy(host, no_proxy):
            return None
        return proxies.get(url.scheme) or proxies.get("all")


def _bypassed_by_no_proxy(host: str, no_proxy: str) -> bool:
    host = host.lower()
    for raw_entry in no_proxy.split(","):
        entry = raw_entry.strip().lower()
        if not entry:
            continue
        if entry == "*":
            return True
        entry = entry.lstrip(".")
        if host == entry or host.endswith(f".{entry}"):
            return True
    return False
