"""Canonicalize known-jurisdiction URL quirks.

The rules run in a fixed order and each one only fires when its pattern
matches, so a URL on an unrecognized domain only ever sees the scheme upgrade
and the bare ``?`` strip:

1. ``http://`` becomes ``https://``.
2. Consolidated-text views that need a trailing path segment get one.
3. Bare government apex hosts are rewritten to their canonical host.
4. A trailing ``?`` with no query string is dropped.

Every rule is idempotent on its own output and none of them undoes another,
so ``normalize(normalize(u)) == normalize(u)``.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Tuple
from urllib.parse import SplitResult, urlsplit, urlunsplit

from .reflinks_config import CANONICAL_HOSTS, TRAILING_SLASH_PATHS
from .reflinks_utils import idna_normalize

logger = logging.getLogger(__name__)


def _force_https(url: str) -> str:
    if url[:7].lower() == "http://":
        return "https://" + url[7:]
    return url


def _host_of(parts: SplitResult) -> str:
    return idna_normalize(parts.hostname or "")


def _needs_trailing_slash(host: str, path: str, table: Dict[str, Tuple[str, ...]]) -> bool:
    prefixes = table.get(host)
    if not prefixes or not path or path.endswith("/"):
        return False
    for prefix in prefixes:
        if prefix == "":
            # single segment such as "/ustg_1980", never a file like "/erv/index.html"
            segment = path[1:]
            if segment and "/" not in segment and "." not in segment:
                return True
            continue
        if path.startswith(prefix) and len(path) > len(prefix) and "/" not in path[len(prefix):]:
            return True
    return False


def _fix_canonical_path(url: str) -> str:
    parts = urlsplit(url)
    host = _host_of(parts)
    if not _needs_trailing_slash(host, parts.path, TRAILING_SLASH_PATHS):
        return url
    return urlunsplit(parts._replace(path=parts.path + "/"))


def _canonicalize_host(url: str) -> str:
    parts = urlsplit(url)
    host = _host_of(parts)
    canonical = CANONICAL_HOSTS.get(host)
    if not canonical:
        return url
    netloc = canonical
    if parts.port is not None:
        netloc = f"{canonical}:{parts.port}"
    userinfo, sep, _ = parts.netloc.rpartition("@")
    if sep:
        netloc = f"{userinfo}@{netloc}"
    return urlunsplit(parts._replace(netloc=netloc))


def _strip_bare_query(url: str) -> str:
    if not url.endswith("?"):
        return url
    parts = urlsplit(url)
    if parts.query or parts.fragment:
        return url
    return url[:-1]


_RULES: Tuple[Callable[[str], str], ...] = (
    _force_https,
    _fix_canonical_path,
    _canonicalize_host,
    _strip_bare_query,
)


def normalize(url: str) -> str:
    """Return the canonical form of ``url``; the input unchanged on any error."""

    if not isinstance(url, str):
        return url
    try:
        out = url
        for rule in _RULES:
            out = rule(out)
        return out
    except (ValueError, TypeError, UnicodeError) as exc:
        logger.debug("normalize: leaving %r unchanged (%s)", url, exc)
        return url


__all__ = ["normalize"]
