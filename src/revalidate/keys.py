"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Helpers for building stable cache keys from an endpoint and its parameters.
"""

from __future__ import annotations

from collections.abc import Mapping
from urllib.parse import urlencode

from .errors import InvalidKeyError
from .utils import ensure_key

KeyParam = str | int | float | bool | None


def _format_param(value: KeyParam) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def make_key(resource: str, params: Mapping[str, KeyParam] | None = None) -> str:
    """
    Build `resource?k1=v1&k2=v2` with parameters sorted by name.

    Booleans render as `true`/`false` and `None` values are dropped, so two
    calls describing the same request always produce the same key:

        >>> make_key("/api/rates", {"days": 7, "applyRules": True})
        '/api/rates?applyRules=true&days=7'
    """
    resource = ensure_key(resource).strip()
    pairs = sorted(
        (name, _format_param(value))
        for name, value in (params or {}).items()
        if value is not None
    )
    if not pairs:
        return resource
    separator = "&" if "?" in resource else "?"
    return f"{resource}{separator}{urlencode(pairs)}"


def scoped_key(scope: str, *parts: KeyParam) -> str:
    """Join a scope and its non-empty parts with `:` (e.g. `status-summary:prop_1:true`)."""
    scope = ensure_key(scope).strip()
    rendered = [_format_param(part) for part in parts if part is not None]
    if any(not item.strip() for item in rendered):
        raise InvalidKeyError("Key parts must be non-empty")
    return ":".join([scope, *rendered])
