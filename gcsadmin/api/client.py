"""HTTPS client kernel for the per-endpoint management API.

The management API is served by each endpoint host rather than a central
service, so every client is bound to one hostname and talks to
``https://<hostname>/api/``.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from gcsadmin import __version__
from gcsadmin.api.models import AuditLogPage, AuditQueryParams, AuditRecord
from gcsadmin.api.tls import TLSProfile, build_ssl_context, secure_tls_profile, validate
from gcsadmin.errors import (
    InvalidArgument,
    ProtocolError,
    RemoteError,
    Timeout,
    TransportError,
)

_LOG = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = f"gcsadmin/{__version__}"
MAX_CONNECTIONS = 100
MAX_KEEPALIVE_CONNECTIONS = 10
IDLE_TIMEOUT_SECONDS = 90.0

AUDIT_LOGS_PATH = "audit-logs"

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(slots=True)
class ClientOptions:
    """Construction options for :class:`ApiClient`."""

    access_token: str | None = field(default=None, repr=False)
    http_client: httpx.Client | None = None
    tls_profile: TLSProfile | None = None
    allow_insecure: bool = False
    user_agent: str = DEFAULT_USER_AGENT
    timeout: float = DEFAULT_TIMEOUT_SECONDS


def build_http_client(
    profile: TLSProfile, *, timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> httpx.Client:
    """Return a pooled, HTTP/2-capable client bound to ``profile``."""
    return httpx.Client(
        verify=build_ssl_context(profile),
        http2=True,
        limits=httpx.Limits(
            max_connections=MAX_CONNECTIONS,
            max_keepalive_connections=MAX_KEEPALIVE_CONNECTIONS,
            keepalive_expiry=IDLE_TIMEOUT_SECONDS,
        ),
        timeout=httpx.Timeout(timeout),
        follow_redirects=False,
    )


@contextmanager
def translate_transport_errors(url: str) -> Iterator[None]:
    """Re-raise httpx transport failures as gcsadmin errors."""
    try:
        yield
    except httpx.TimeoutException as exc:
        raise Timeout(f"request to {url} timed out: {exc}") from exc
    except httpx.TransportError as exc:
        raise TransportError(f"request to {url} failed: {exc}") from exc


def deadline_after(timeout: float) -> float:
    """Return the monotonic instant at which a request started now must be finished."""
    return time.monotonic() + timeout


def remaining_seconds(deadline: float, url: str) -> float:
    """Seconds left before ``deadline``; raises :class:`Timeout` once it has passed."""
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise Timeout(f"request to {url} exceeded its total timeout")
    return remaining


def read_body(response: httpx.Response, *, deadline: float | None = None) -> bytes:
    """Read the whole body and close the response.

    With a ``deadline`` the body is streamed and the deadline is checked after
    every chunk, so a server trickling bytes cannot hold the read open.
    """
    url = _redacted_url(response.url)
    chunks: list[bytes] = []
    try:
        with translate_transport_errors(url):
            if deadline is None:
                return response.read()
            for chunk in response.iter_bytes():
                chunks.append(chunk)
                remaining_seconds(deadline, url)
    finally:
        response.close()
    return b"".join(chunks)


def raise_for_remote_error(response: httpx.Response, *, deadline: float | None = None) -> None:
    """Consume and close an error response, raising :class:`RemoteError`."""
    if response.status_code < 400:
        return
    url = _redacted_url(response.url)
    body = read_body(response, deadline=deadline).decode("utf-8", errors="replace")
    raise RemoteError(response.status_code, body, url=url)


def decode_response(
    response: httpx.Response,
    model: type[ModelT] | None = None,
    *,
    deadline: float | None = None,
) -> Any:
    """Read the whole body as JSON, validate it into ``model`` and close the response."""
    url = _redacted_url(response.url)
    raw = read_body(response, deadline=deadline)

    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"response from {url} is not valid JSON: {exc}") from exc

    if model is None:
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolError(
            f"response from {url} does not match {model.__name__}: "
            f"{exc.error_count()} validation error(s)"
        ) from exc


class ApiClient:
    """Authenticated client for one management API endpoint."""

    def __init__(self, hostname: str, options: ClientOptions | None = None) -> None:
        if not hostname or not hostname.strip():
            raise InvalidArgument("endpoint hostname is required")
        opts = options or ClientOptions()

        self._hostname = hostname.strip()
        self._base_url = f"https://{self._hostname}/api/"
        self._access_token = opts.access_token
        self._user_agent = opts.user_agent
        self._timeout = opts.timeout

        self._tls_profile = opts.tls_profile or secure_tls_profile()
        validate(self._tls_profile, allow_insecure=opts.allow_insecure)

        if opts.http_client is not None:
            self._http = opts.http_client
            self._owns_http = False
        else:
            self._http = build_http_client(self._tls_profile, timeout=opts.timeout)
            self._owns_http = True

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def tls_profile(self) -> TLSProfile:
        return self._tls_profile

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        deadline: float | None = None,
    ) -> httpx.Response:
        """Send one request and return the open response.

        The caller owns the returned response and must close it; error
        responses are consumed and closed here. ``deadline`` bounds the whole
        exchange and defaults to the client timeout from now; pass the same
        value to :meth:`decode` so the body read shares it.
        """
        if deadline is None:
            deadline = deadline_after(self._timeout)
        url = self._base_url + path.lstrip("/")
        headers = {"User-Agent": self._user_agent, "Accept": "application/json"}
        content: bytes | None = None
        if json_body is not None:
            content = json.dumps(json_body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"

        extensions: dict[str, Any] = {}
        if self._tls_profile.server_name:
            extensions["sni_hostname"] = self._tls_profile.server_name

        request = self._http.build_request(
            method,
            url,
            params=params,
            content=content,
            headers=headers,
            extensions=extensions or None,
            timeout=httpx.Timeout(remaining_seconds(deadline, url)),
        )
        _LOG.debug("%s %s", method, url)
        with translate_transport_errors(url):
            response = self._http.send(request, stream=True)
        raise_for_remote_error(response, deadline=deadline)
        return response

    def decode(
        self,
        response: httpx.Response,
        model: type[ModelT] | None = None,
        *,
        deadline: float | None = None,
    ) -> Any:
        return decode_response(response, model, deadline=deadline)

    def get_json(
        self, path: str, model: type[ModelT], *, params: dict[str, str] | None = None
    ) -> ModelT:
        deadline = deadline_after(self._timeout)
        response = self.request("GET", path, params=params, deadline=deadline)
        return decode_response(response, model, deadline=deadline)

    def post_json(
        self, path: str, body: BaseModel | dict[str, Any], model: type[ModelT] | None = None
    ) -> Any:
        payload = body
        if isinstance(body, BaseModel):
            payload = body.model_dump(mode="json", exclude_none=True)
        deadline = deadline_after(self._timeout)
        response = self.request("POST", path, json_body=payload, deadline=deadline)
        if model is None:
            read_body(response, deadline=deadline)
            return None
        return decode_response(response, model, deadline=deadline)

    def delete(self, path: str) -> None:
        deadline = deadline_after(self._timeout)
        read_body(self.request("DELETE", path, deadline=deadline), deadline=deadline)

    def get_audit_logs(
        self, params: AuditQueryParams | None = None, *, marker: str | None = None
    ) -> AuditLogPage:
        query = (params or AuditQueryParams()).to_query(marker=marker)
        return self.get_json(AUDIT_LOGS_PATH, AuditLogPage, params=query or None)

    def iter_audit_logs(self, params: AuditQueryParams | None = None) -> Iterator[AuditRecord]:
        """Yield audit records across pages in server order, up to ``params.limit``."""
        query = params or AuditQueryParams()
        limit = query.limit if query.limit and query.limit > 0 else None
        yielded = 0
        marker: str | None = None
        seen_markers: set[str] = set()

        while True:
            page = self.get_audit_logs(query, marker=marker)
            for record in page.data:
                yield record
                yielded += 1
                if limit is not None and yielded >= limit:
                    return
            if not page.has_next_page or not page.marker:
                return
            if page.marker in seen_markers:
                raise ProtocolError(f"audit-logs pagination repeated marker {page.marker!r}")
            seen_markers.add(page.marker)
            marker = page.marker


def _redacted_url(url: httpx.URL) -> str:
    return str(url).split("?", 1)[0]
