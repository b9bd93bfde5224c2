"""h2probe package: issue one HTTP/1.1 or HTTP/2 request and print it as JSON."""

from __future__ import annotations

__all__ = ["__version__"]

# Semantic version for package consumers.
__version__ = "0.3.0"
