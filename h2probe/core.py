"""Request execution for h2probe: one request, one response, no retries."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, BinaryIO, Union
from urllib.parse import quote, urlsplit, urlunsplit

from requests.structures import CaseInsensitiveDict

from .config import RequestConfig
from .headers import split_pseudo_headers
from .report import ResponseEnvelope, build_envelope

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .transport import Transport

LOGGER = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 16 * 1024

TimeFunc = Callable[[], float]
RequestBody = Union[bytes, Iterator[bytes], None]


class ProbeError(RuntimeError):
    """Raised when the request cannot be completed."""


class TransportError(ProbeError):
    """Connection establishment or protocol failure."""


class TLSError(TransportError):
    """TLS handshake or certificate validation failure."""


class RequestTimeout(ProbeError):
    """The request did not complete within its wall-clock budget."""


class BodyReadError(ProbeError):
    """Reading the request body source or the response body failed."""


@dataclass
class Deadline:
    """Absolute wall-clock budget measured from construction.

    ``seconds=None`` disables the deadline.
    """

    seconds: float | None
    time_func: TimeFunc = time.monotonic

    def __post_init__(self) -> None:
        self._started = self.time_func()

    @property
    def elapsed(self) -> float:
        return self.time_func() - self._started

    def remaining(self) -> float | None:
        """Return the seconds left, raising ``RequestTimeout`` once exhausted."""

        if self.seconds is None:
            return None
        left = self.seconds - self.elapsed
        if left <= 0:
            raise RequestTimeout(f"Request exceeded the {self.seconds:g}s timeout")
        return left

    def check(self) -> None:
        self.remaining()


@dataclass(frozen=True)
class OutgoingRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: RequestBody = None

    @property
    def streaming(self) -> bool:
        return self.body is not None and not isinstance(self.body, bytes)


def iter_body(source: BinaryIO, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    """Yield ``source`` incrementally without buffering it."""

    read = getattr(source, "read1", source.read)
    while True:
        try:
            chunk = read(chunk_size)
        except OSError as exc:
            raise BodyReadError(f"Unable to read request body: {exc}") from exc
        if not chunk:
            return
        yield chunk


def load_body(source: BinaryIO | None, *, stream: bool) -> RequestBody:
    if source is None:
        return None
    if stream:
        return iter_body(source)
    try:
        return source.read()
    except OSError as exc:
        raise BodyReadError(f"Unable to read request body: {exc}") from exc


PATH_SAFE_CHARS = "/$&+,:;=@"


def _replace_path(url: str, path: str) -> str:
    """Swap in ``path`` as a literal path; ``?`` and ``#`` in it are escaped, not delimiters."""

    parts = urlsplit(url)
    return urlunsplit(parts._replace(path=quote(path, safe=PATH_SAFE_CHARS)))


def prepare_request(config: RequestConfig, body: BinaryIO | None = None) -> OutgoingRequest:
    """Apply pseudo-headers and the body policy to build the outgoing request."""

    overrides = split_pseudo_headers(config.headers)

    method = overrides.method or config.method
    url = config.url
    if overrides.path is not None:
        url = _replace_path(url, overrides.path)

    headers: CaseInsensitiveDict[str] = CaseInsensitiveDict()
    for name, value in overrides.headers.items():
        headers[name] = value
    if overrides.authority is not None:
        headers["Host"] = overrides.authority

    return OutgoingRequest(
        method=method,
        url=url,
        headers=dict(headers.items()),
        body=load_body(body, stream=config.stream),
    )


def execute(
    config: RequestConfig,
    transport: "Transport",
    body: BinaryIO | None = None,
    *,
    time_func: TimeFunc = time.monotonic,
) -> ResponseEnvelope:
    """Send the configured request once and capture the full response."""

    request = prepare_request(config, body)
    deadline = Deadline(config.timeout_seconds, time_func=time_func)

    LOGGER.debug(
        "Sending %s %s over %s (streaming body: %s)",
        request.method,
        request.url,
        transport.protocol,
        request.streaming,
    )
    LOGGER.debug("Request headers: %s", request.headers)

    response = transport.send(request, deadline)

    LOGGER.debug(
        "Received status %s via %s with %d body bytes in %.3fs",
        response.status_code,
        response.http_version,
        len(response.body),
        deadline.elapsed,
    )
    return build_envelope(response.status_code, response.headers, response.body)


__all__ = [
    "BodyReadError",
    "Deadline",
    "OutgoingRequest",
    "ProbeError",
    "RequestTimeout",
    "TLSError",
    "TransportError",
    "execute",
    "iter_body",
    "load_body",
    "prepare_request",
]
