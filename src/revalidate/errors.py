"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Error taxonomy for the coalescer and cache client.

Failures raised by caller-supplied fetch operations are never wrapped; they
propagate verbatim to every caller attached to the same key.
"""

from __future__ import annotations


class RevalidateError(Exception):
    """Base class for errors raised by the library itself."""


class InvalidKeyError(RevalidateError, ValueError):
    """Raised when a cache or coalescing key is empty or not a string."""


class ConfigurationError(RevalidateError, ValueError):
    """Raised when options or settings carry out-of-range values."""


class UnknownKeyError(RevalidateError, KeyError):
    """Raised when an operation needs a registered fetch for a key that has none."""

    def __str__(self) -> str:
        # KeyError repr-quotes its message; keep it readable.
        return str(self.args[0]) if self.args else ""


class ClientClosedError(RevalidateError, RuntimeError):
    """Raised when a closed cache client is used."""
