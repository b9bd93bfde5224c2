"""Request configuration assembled once from command-line arguments."""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from .headers import HeaderSpecError, parse_header_spec

DEFAULT_TIMEOUT: int = 5
SUPPORTED_SCHEMES: frozenset[str] = frozenset({"http", "https"})


class ConfigError(ValueError):
    """Raised when arguments cannot be turned into a request configuration."""


@dataclass(frozen=True)
class RequestConfig:
    """Immutable description of the single request to perform."""

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    post: bool = False
    timeout: int = DEFAULT_TIMEOUT
    skip_verify: bool = False
    http1: bool = False
    stream: bool = False

    def __post_init__(self) -> None:
        validate_url(self.url)

    @property
    def timeout_seconds(self) -> float | None:
        """Return the request budget, or ``None`` when the deadline is disabled."""

        if self.timeout <= 0:
            return None
        return float(self.timeout)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "RequestConfig":
        try:
            headers = parse_header_spec(args.headers or "")
        except HeaderSpecError as exc:
            raise ConfigError(str(exc)) from exc

        return cls(
            url=args.url or "",
            method="POST" if args.post else "GET",
            headers=headers,
            post=bool(args.post),
            timeout=args.timeout,
            skip_verify=bool(args.skip_verify),
            http1=bool(args.http1),
            stream=bool(args.stream),
        )


def validate_url(url: str) -> None:
    if not url:
        raise ConfigError("A target URL is required (use -url)")
    try:
        parts = urlsplit(url)
        # Accessing the port validates it.
        _ = parts.port
    except ValueError as exc:
        raise ConfigError(f"Invalid URL {url!r}: {exc}") from exc
    if parts.scheme.lower() not in SUPPORTED_SCHEMES:
        raise ConfigError(f"Unsupported URL scheme {parts.scheme!r}; expected http or https")
    if not parts.hostname:
        raise ConfigError(f"URL {url!r} must include a hostname")


__all__ = ["ConfigError", "DEFAULT_TIMEOUT", "RequestConfig", "validate_url"]
