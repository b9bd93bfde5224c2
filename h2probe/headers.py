"""Parsing of the ``-headers`` flag into request headers and pseudo-headers.

The flag takes a flat ``name=value,name=value`` string. Names may carry the
HTTP/2 ``:`` prefix (``:authority=example.com``); three names are treated as
pseudo-headers and rewrite the request line instead of being sent.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

PSEUDO_HEADERS: frozenset[str] = frozenset({"method", "authority", "path"})


class HeaderSpecError(ValueError):
    """Raised when a ``-headers`` value cannot be split into name/value pairs."""


def parse_header_spec(spec: str) -> dict[str, str]:
    """Split ``spec`` into a mapping of header name to value.

    Segments are separated by ``,`` and split on their first ``=``. A leading
    ``:`` is removed from each name. Later duplicates replace earlier ones.
    """

    headers: dict[str, str] = {}
    if not spec:
        return headers

    for segment in spec.split(","):
        name, sep, value = segment.partition("=")
        if not sep:
            raise HeaderSpecError(f"Header segment {segment!r} is not of the form name=value")
        name = name.strip().removeprefix(":")
        if not name:
            raise HeaderSpecError(f"Header segment {segment!r} has an empty name")
        headers[name] = value
    return headers


def is_pseudo_header(name: str) -> bool:
    return name.lower().removeprefix(":") in PSEUDO_HEADERS


@dataclass(frozen=True)
class HeaderOverrides:
    """Headers split into literal request headers and request-line rewrites."""

    headers: dict[str, str] = field(default_factory=dict)
    method: str | None = None
    authority: str | None = None
    path: str | None = None


def split_pseudo_headers(headers: Mapping[str, str]) -> HeaderOverrides:
    """Separate pseudo-headers (matched case-insensitively) from regular ones."""

    literal: dict[str, str] = {}
    pseudo: dict[str, str] = {}
    for name, value in headers.items():
        if is_pseudo_header(name):
            pseudo[name.lower().removeprefix(":")] = value
        else:
            literal[name] = value
    return HeaderOverrides(
        headers=literal,
        method=pseudo.get("method"),
        authority=pseudo.get("authority"),
        path=pseudo.get("path"),
    )


__all__ = [
    "PSEUDO_HEADERS",
    "HeaderOverrides",
    "HeaderSpecError",
    "is_pseudo_header",
    "parse_header_spec",
    "split_pseudo_headers",
]
