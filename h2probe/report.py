"""Response envelope construction and JSON rendering."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TextIO, Union

STATUS_KEY = "status"


@dataclass(frozen=True)
class SingleValue:
    value: str

    def to_json(self) -> str:
        return self.value


@dataclass(frozen=True)
class MultiValue:
    values: tuple[str, ...]

    def to_json(self) -> list[str]:
        return list(self.values)


HeaderValue = Union[SingleValue, MultiValue]


def header_value(values: Iterable[str]) -> HeaderValue:
    collected = tuple(values)
    if not collected:
        raise ValueError("A header must carry at least one value")
    if len(collected) == 1:
        return SingleValue(collected[0])
    return MultiValue(collected)


@dataclass(frozen=True)
class ResponseEnvelope:
    """Status, headers and decoded body of the received response."""

    status: int
    headers: dict[str, HeaderValue]
    body: str

    def as_dict(self) -> dict[str, object]:
        headers: dict[str, object] = {name: value.to_json() for name, value in self.headers.items()}
        headers[STATUS_KEY] = str(self.status)
        return {"headers": headers, "body": self.body}


def group_headers(pairs: Iterable[tuple[str, str]]) -> dict[str, HeaderValue]:
    """Collapse raw ``(name, value)`` pairs into one entry per header name.

    Names are grouped case-insensitively and keep the spelling of their first
    occurrence. Repeated headers keep their values in receipt order.
    """

    spellings: dict[str, str] = {}
    grouped: dict[str, list[str]] = {}
    for name, value in pairs:
        key = spellings.setdefault(name.lower(), name)
        grouped.setdefault(key, []).append(value)
    return {name: header_value(values) for name, values in grouped.items()}


def decode_body(body: bytes) -> str:
    return body.decode("utf-8", errors="replace")


def build_envelope(status: int, header_pairs: Iterable[tuple[str, str]], body: bytes) -> ResponseEnvelope:
    return ResponseEnvelope(status=status, headers=group_headers(header_pairs), body=decode_body(body))


def render_json(envelope: ResponseEnvelope) -> str:
    """Return the envelope as a single line of JSON."""

    return json.dumps(envelope.as_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def write_envelope(envelope: ResponseEnvelope, stream: TextIO) -> None:
    stream.write(render_json(envelope) + "\n")
    stream.flush()


__all__ = [
    "HeaderValue",
    "MultiValue",
    "ResponseEnvelope",
    "STATUS_KEY",
    "SingleValue",
    "build_envelope",
    "decode_body",
    "group_headers",
    "header_value",
    "render_json",
    "write_envelope",
]
