"""Shared helper functions used by the reflinks workflows."""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Set


def idna_normalize(host: str) -> str:
    """Return a lowercase, IDNA-normalized host name."""

    h = (host or "").strip().rstrip(".").lower()
    if not h:
        return ""
    try:
        h = h.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return h


def is_http_url(value: object) -> bool:
    """Return True for strings that start with an http(s) scheme."""

    if not isinstance(value, str):
        return False
    lowered = value.strip().lower()
    return lowered.startswith("http://") or lowered.startswith("https://")


def http_urls(values: Iterable[object]) -> Set[str]:
    """Keep the http(s) strings of an iterable, stripped."""

    return {v.strip() for v in values if is_http_url(v)}  # type: ignore[union-attr]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat_z(moment: datetime) -> str:
    """Serialize a datetime as ISO-8601 UTC with a ``Z`` suffix."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO date/datetime (or pass a datetime through) as aware UTC.

    Naive values are taken to be UTC. Returns None for empty or unparseable input.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        raw = str(value).strip()
        if not raw:
            return None
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write ``payload`` as JSON via a temp file + ``os.replace``.

    Readers either see the previous file or the complete new one.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def sanity_check() -> None:
    assert idna_normalize("BOE.es.") == "boe.es"
    assert is_http_url("HTTP://example.com")
    assert not is_http_url("mailto:someone@example.com")
    assert parse_timestamp("2024-12-15") == datetime(2024, 12, 15, tzinfo=timezone.utc)
    assert parse_timestamp("not a date") is None


sanity_check()

__all__ = [
    "idna_normalize",
    "is_http_url",
    "http_urls",
    "utc_now",
    "isoformat_z",
    "parse_timestamp",
    "atomic_write_json",
    "sanity_check",
]
