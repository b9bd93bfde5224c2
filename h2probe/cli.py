"""Command-line interface for h2probe."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import BinaryIO, Iterable, Optional, TextIO

from . import __version__
from .config import DEFAULT_TIMEOUT, ConfigError, RequestConfig
from .core import ProbeError, execute
from .logging_utils import configure_logging
from .report import write_envelope
from .transport import build_transport

EXIT_OK = 0
EXIT_REQUEST_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="h2probe",
        description=(
            "Send one HTTP/2 (or HTTP/1.1) request and print the response status, "
            "headers and body as a JSON document."
        ),
        allow_abbrev=False,
    )
    parser.add_argument("-version", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-url", "--url", default="", help="URL to make request to")
    parser.add_argument("-skip-verify", "--skip-verify", action="store_true", help="Skip TLS verification")
    parser.add_argument(
        "-timeout",
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT,
        help="Timeout in seconds for the whole request (0 disables it)",
    )
    parser.add_argument(
        "-headers",
        "--headers",
        default="",
        help="Headers to set, comma separated name=value pairs; method, authority and path rewrite the request line",
    )
    parser.add_argument("-http1", "--http1", action="store_true", help="Use HTTP/1.1 instead of HTTP/2")
    parser.add_argument(
        "-post",
        "--post",
        action="store_true",
        help="Use POST, body is read from standard input",
    )
    parser.add_argument(
        "-stream",
        "--stream",
        action="store_true",
        help="Send the body as a stream, so the request has no Content-Length header",
    )
    parser.add_argument("-log-json", "--log-json", action="store_true", help="Emit structured JSON logs to the log file")
    parser.add_argument("-log-file", "--log-file", help="Write logs to the specified path")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-verbose", "--verbose", action="store_true", help="Enable debug logging on stderr")
    verbosity.add_argument("-quiet", "--quiet", action="store_true", help="Only log errors")
    return parser


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(None if argv is None else list(argv))


def configure_cli_logging(args: argparse.Namespace) -> None:
    level = logging.WARNING
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.ERROR
    configure_logging(level=level, json_logs=args.log_json, logfile=args.log_file)


def main(
    argv: Optional[Iterable[str]] = None,
    *,
    stdin: Optional[BinaryIO] = None,
    stdout: Optional[TextIO] = None,
) -> int:
    args = parse_args(argv)

    configure_cli_logging(args)
    logger = logging.getLogger("h2probe.cli")

    try:
        config = RequestConfig.from_args(args)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    body = (stdin or sys.stdin.buffer) if config.post else None
    transport = build_transport(config.url, skip_verify=config.skip_verify, http1=config.http1)
    try:
        envelope = execute(config, transport, body)
    except ProbeError as exc:
        logger.error("Request failed: %s", exc)
        return EXIT_REQUEST_FAILED
    finally:
        transport.close()

    write_envelope(envelope, stdout or sys.stdout)
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
