#!/usr/bin/env python3
"""
Proxy URL construction.

Maps a target URL to the URL actually requested, given a proxy base string.
Four base conventions are recognized, checked in order:

- ``...?url=``          query-parameter opener: append the encoded target
- ``.../raw?url=``      raw-passthrough endpoint: append the encoded target
- ``.../``              path-style proxy: append the target unencoded
- anything else         add ``?url=`` (or ``&url=``) and the encoded target

The builder is pure and never raises; malformed bases still yield a string.
"""

from typing import Optional
from urllib.parse import quote

from config import config

QUERY_OPENER = "?url="
RAW_PASSTHROUGH_SUFFIXES = ("/raw?url=",)

# Characters left alone by JavaScript's encodeURIComponent
_COMPONENT_SAFE = "-_.!~*'()"


def encode_component(value: str) -> str:
    """Percent-encode ``value`` the way encodeURIComponent does."""
    return quote(value, safe=_COMPONENT_SAFE, errors="replace")


def build_proxy_url(target: str, base: Optional[str] = None) -> str:
    """Return the URL to request for ``target`` through proxy ``base``.

    Args:
        target: The feed or article URL to fetch.
        base: Proxy base string; falls back to the configured default when empty.
    """
    base = base or config.PROXY_BASE or ""
    target = target or ""
    if base.endswith(QUERY_OPENER):
        return base + encode_component(target)
    if base.endswith(RAW_PASSTHROUGH_SUFFIXES):
        return base + encode_component(target)
    if base.endswith("/"):
        return base + target
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}url={encode_component(target)}"
