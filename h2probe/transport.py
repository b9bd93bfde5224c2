"""HTTP/1.1 and HTTP/2 transports used to send the single request.

HTTP/1.1 goes through a ``requests`` session. HTTP/2 goes through ``httpx``
with HTTP/1.1 disabled, so TLS connections offer only ``h2`` in ALPN and
``http://`` URLs are spoken as HTTP/2 with prior knowledge (h2c) over a plain
TCP connection.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import socket
import ssl
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol
from urllib.parse import urlsplit

import httpx
import requests
import urllib3
import urllib3.connection
from requests import exceptions as requests_exceptions
from requests.adapters import HTTPAdapter
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import InsecureRequestWarning, ReadTimeoutError

from . import __version__
from .core import (
    BodyReadError,
    Deadline,
    OutgoingRequest,
    RequestTimeout,
    TLSError,
    TransportError,
)

LOGGER = logging.getLogger(__name__)

USER_AGENT: str = f"h2probe/{__version__}"
RESPONSE_CHUNK_SIZE = 64 * 1024

_HTTP1_VERSIONS = {9: "HTTP/0.9", 10: "HTTP/1.0", 11: "HTTP/1.1"}


@dataclass(frozen=True)
class ReceivedResponse:
    status_code: int
    http_version: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""


class Transport(Protocol):
    protocol: str

    def send(self, request: OutgoingRequest, deadline: Deadline) -> ReceivedResponse: ...

    def close(self) -> None: ...


class DialMode(str, Enum):
    """How the HTTP/2 transport opens its connection."""

    TLS = "tls"
    PLAINTEXT = "plaintext"


def _drain(chunks: Iterable[bytes], check: Callable[[], None]) -> bytes:
    buffer = bytearray()
    for chunk in chunks:
        buffer.extend(chunk)
        check()
    return bytes(buffer)


def _caused_by_tls(exc: BaseException) -> bool:
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, ssl.SSLError):
            return True
        current = current.__cause__ or current.__context__
    return False


class _DeadlineWatch:
    """Shut down the sockets of an in-flight request once its deadline passes.

    Socket timeouts only bound a single read, so a peer that trickles bytes can
    keep a status line, header block or sized body open indefinitely. The timer
    thread only shuts sockets down; the request itself stays on the caller's
    thread and fails there.
    """

    def __init__(self, deadline: Deadline) -> None:
        self.deadline = deadline
        self.expired = False
        self._connections: list[urllib3.connection.HTTPConnection] = []
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._token: contextvars.Token | None = None

    def __enter__(self) -> "_DeadlineWatch":
        remaining = self.deadline.remaining()
        self._token = _ACTIVE_WATCH.set(self)
        if remaining is not None:
            self._timer = threading.Timer(remaining, self.expire)
            self._timer.daemon = True
            self._timer.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._timer is not None:
            self._timer.cancel()
        if self._token is not None:
            _ACTIVE_WATCH.reset(self._token)
            self._token = None

    def check(self) -> None:
        """Raise ``RequestTimeout`` if the sockets were shut down or the budget is spent."""

        if self.expired:
            raise RequestTimeout(f"Request exceeded the {self.deadline.seconds:g}s timeout")
        self.deadline.check()

    def add(self, connection: urllib3.connection.HTTPConnection) -> None:
        with self._lock:
            self._connections.append(connection)
            expired = self.expired
        if expired:
            _shutdown(connection)

    def expire(self) -> None:
        with self._lock:
            self.expired = True
            connections = list(self._connections)
        LOGGER.debug("Deadline reached, shutting down %d connection(s)", len(connections))
        for connection in connections:
            _shutdown(connection)


_ACTIVE_WATCH: contextvars.ContextVar[_DeadlineWatch | None] = contextvars.ContextVar(
    "h2probe_deadline_watch", default=None
)


def _shutdown(connection: urllib3.connection.HTTPConnection) -> None:
    sock = getattr(connection, "sock", None)
    if sock is None:
        return
    # The socket may already be closed by the reading side.
    with contextlib.suppress(OSError):
        sock.shutdown(socket.SHUT_RDWR)


def _watch_connection(connection: urllib3.connection.HTTPConnection) -> None:
    watch = _ACTIVE_WATCH.get()
    if watch is not None:
        watch.add(connection)


class _WatchedHTTPConnection(urllib3.connection.HTTPConnection):
    def connect(self) -> None:
        super().connect()
        _watch_connection(self)


class _WatchedHTTPSConnection(urllib3.connection.HTTPSConnection):
    def connect(self) -> None:
        super().connect()
        _watch_connection(self)


class _WatchedHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = _WatchedHTTPConnection


class _WatchedHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = _WatchedHTTPSConnection


class DeadlineAdapter(HTTPAdapter):
    """``HTTPAdapter`` whose connections can be shut down by a ``_DeadlineWatch``."""

    def init_poolmanager(self, *args, **kwargs) -> None:
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _WatchedHTTPConnectionPool,
            "https": _WatchedHTTPSConnectionPool,
        }


def create_http_session(*, verify: bool) -> requests.Session:
    """Construct a ``requests`` session that never retries or reads the environment."""

    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    session.verify = verify
    session.trust_env = False

    adapter = DeadlineAdapter(max_retries=0)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class Http1Transport:
    """Keep-alive capable HTTP/1.1 transport backed by ``requests``."""

    protocol = "HTTP/1.1"

    def __init__(self, *, verify: bool = True, session: requests.Session | None = None) -> None:
        self.verify = verify
        self._session = session or create_http_session(verify=verify)
        if not verify:
            urllib3.disable_warnings(InsecureRequestWarning)

    def send(self, request: OutgoingRequest, deadline: Deadline) -> ReceivedResponse:
        remaining = deadline.remaining()
        timeout = None if remaining is None else (remaining, remaining)
        with _DeadlineWatch(deadline) as watch:
            try:
                response = self._session.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    data=request.body,
                    timeout=timeout,
                    verify=self.verify,
                    stream=True,
                    allow_redirects=True,
                )
            except requests_exceptions.RequestException as exc:
                if watch.expired:
                    raise RequestTimeout(f"Request to {request.url} timed out") from exc
                if isinstance(exc, requests_exceptions.SSLError):
                    raise TLSError(f"TLS handshake with {request.url} failed: {exc}") from exc
                if isinstance(exc, requests_exceptions.Timeout):
                    raise RequestTimeout(f"Request to {request.url} timed out: {exc}") from exc
                raise TransportError(f"Request to {request.url} failed: {exc}") from exc
            except ValueError as exc:
                # http.client rejects non-token methods and non latin-1 header values.
                raise TransportError(f"Unable to encode request for {request.url}: {exc}") from exc

            with response:
                try:
                    watch.check()
                    body = _drain(response.iter_content(chunk_size=RESPONSE_CHUNK_SIZE), watch.check)
                    # A shutdown socket reads as a clean end of stream.
                    watch.check()
                except requests_exceptions.RequestException as exc:
                    if watch.expired:
                        raise RequestTimeout(f"Timed out reading response from {request.url}") from exc
                    deadline.check()
                    if isinstance(exc, requests_exceptions.Timeout) or _wraps_read_timeout(exc):
                        raise RequestTimeout(f"Timed out reading response from {request.url}") from exc
                    raise BodyReadError(f"Unable to read response body from {request.url}: {exc}") from exc

                return ReceivedResponse(
                    status_code=response.status_code,
                    http_version=_HTTP1_VERSIONS.get(getattr(response.raw, "version", 11), "HTTP/1.1"),
                    headers=raw_header_pairs(response),
                    body=body,
                )

    def close(self) -> None:
        self._session.close()


def _wraps_read_timeout(exc: BaseException) -> bool:
    return any(isinstance(arg, ReadTimeoutError) for arg in exc.args)


def raw_header_pairs(response: requests.Response) -> list[tuple[str, str]]:
    """Return every received header, keeping repeated headers apart.

    ``response.headers`` folds repeated headers into one comma-joined value,
    so the urllib3 header collection on ``response.raw`` is preferred.
    """

    raw_headers = getattr(getattr(response, "raw", None), "headers", None)
    if raw_headers is None or not hasattr(raw_headers, "getlist"):
        return list(response.headers.items())
    return [(name, value) for name in raw_headers for value in raw_headers.getlist(name)]


class Http2Transport:
    """HTTP/2-only transport backed by ``httpx`` and ``h2``."""

    protocol = "HTTP/2"

    def __init__(
        self,
        *,
        verify: bool = True,
        dial: DialMode = DialMode.TLS,
        allow_http: bool = False,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.verify = verify
        self.dial = dial
        self.allow_http = allow_http
        self._client = httpx.Client(
            transport=transport or self._connection_transport(),
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            trust_env=False,
            timeout=None,
        )

    def _connection_transport(self) -> httpx.HTTPTransport:
        if self.dial is DialMode.PLAINTEXT:
            # Without HTTP/1.1 the connection skips TLS and speaks h2 with prior knowledge.
            return httpx.HTTPTransport(http1=False, http2=True, retries=0)
        return httpx.HTTPTransport(http1=False, http2=True, verify=self.verify, retries=0)

    def send(self, request: OutgoingRequest, deadline: Deadline) -> ReceivedResponse:
        if urlsplit(request.url).scheme.lower() == "http" and not self.allow_http:
            raise TransportError("http2: unencrypted HTTP/2 not enabled")

        remaining = deadline.remaining()
        try:
            outgoing = self._client.build_request(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body,
                timeout=httpx.Timeout(remaining),
            )
        except (httpx.InvalidURL, ValueError) as exc:
            # Header values must encode as ASCII.
            raise TransportError(f"Unable to build request for {request.url}: {exc}") from exc

        try:
            response = self._client.send(outgoing, stream=True)
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"Request to {request.url} timed out: {exc}") from exc
        except httpx.ConnectError as exc:
            if _caused_by_tls(exc):
                raise TLSError(f"TLS handshake with {request.url} failed: {exc}") from exc
            raise TransportError(f"Connection to {request.url} failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Request to {request.url} failed: {exc}") from exc
        except ValueError as exc:
            raise TransportError(f"Unable to encode request for {request.url}: {exc}") from exc

        try:
            deadline.check()
            body = _drain(response.iter_bytes(chunk_size=RESPONSE_CHUNK_SIZE), deadline.check)
        except httpx.TimeoutException as exc:
            raise RequestTimeout(f"Timed out reading response from {request.url}") from exc
        except httpx.HTTPError as exc:
            raise BodyReadError(f"Unable to read response body from {request.url}: {exc}") from exc
        finally:
            response.close()

        encoding = response.headers.encoding
        return ReceivedResponse(
            status_code=response.status_code,
            http_version=response.http_version,
            headers=[(name.decode(encoding), value.decode(encoding)) for name, value in response.headers.raw],
            body=body,
        )

    def close(self) -> None:
        self._client.close()


def build_transport(url: str, *, skip_verify: bool = False, http1: bool = False) -> Transport:
    """Select the transport for ``url``; no connection is opened here."""

    verify = not skip_verify
    if http1:
        LOGGER.debug("Using HTTP/1.1 transport (verify TLS: %s)", verify)
        return Http1Transport(verify=verify)

    dial = DialMode.PLAINTEXT if urlsplit(url).scheme.lower() == "http" else DialMode.TLS
    LOGGER.debug("Using HTTP/2 transport over %s dial (verify TLS: %s)", dial.value, verify)
    return Http2Transport(verify=verify, dial=dial, allow_http=dial is DialMode.PLAINTEXT)


__all__ = [
    "DialMode",
    "Http1Transport",
    "Http2Transport",
    "ReceivedResponse",
    "Transport",
    "USER_AGENT",
    "build_transport",
    "create_http_session",
    "raw_header_pairs",
]
