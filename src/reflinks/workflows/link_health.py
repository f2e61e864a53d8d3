"""Best-effort reachability checks for reference links, with a shared cache.

A probe is a HEAD request; when that cannot be classified (unexpected status,
network failure, timeout) one GET probe follows that never reads the body.
Every outcome collapses to a :class:`Classification`; nothing here raises to
the caller. Results are cached by normalized URL, last check wins.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

import aiohttp

from .reflinks_config import NOT_FOUND_STATUS_CODES, ProbeSettings
from .reflinks_utils import atomic_write_json, isoformat_z, parse_timestamp, utc_now
from .url_normalizer import normalize

logger = logging.getLogger(__name__)


class Classification(str, Enum):
    OK = "ok"
    NOT_FOUND = "not-found"
    UNKNOWN = "unknown"


@dataclass
class LinkStatus:
    """Last known classification of one normalized URL."""

    normalized_url: str
    classification: Classification
    checked_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "classification": self.classification.value,
            "checkedAt": isoformat_z(self.checked_at),
        }


def classify_status(status: int) -> Optional[Classification]:
    """Map an HTTP status to a classification; None when it proves nothing."""

    if 200 <= status < 300:
        return Classification.OK
    if status in NOT_FOUND_STATUS_CODES:
        return Classification.NOT_FOUND
    return None


class LinkHealthCache:
    """Probe links concurrently and remember the last classification per URL."""

    def __init__(
        self,
        settings: Optional[ProbeSettings] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or ProbeSettings()
        self.cache_path = self.settings.cache_path
        self._clock = clock
        self._statuses: Dict[str, LinkStatus] = {}
        self._cache_lock: asyncio.Lock = asyncio.Lock()
        self._cache_dirty = False
        if self.cache_path and self.cache_path.exists():
            self._statuses = _load_statuses(self.cache_path)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_cached(self, url: str) -> Optional[Classification]:
        """Return the cached classification, or None when never checked."""

        status = self._statuses.get(normalize(url))
        return status.classification if status else None

    def get_status(self, url: str) -> Optional[LinkStatus]:
        return self._statuses.get(normalize(url))

    def snapshot(self) -> Dict[str, Classification]:
        return {key: status.classification for key, status in self._statuses.items()}

    def __len__(self) -> int:
        return len(self._statuses)

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    def _open_session(self) -> aiohttp.ClientSession:
        connector = aiohttp.TCPConnector(limit=self.settings.concurrency)
        headers = {
            "User-Agent": self.settings.user_agent,
            "Accept-Language": self.settings.accept_language,
        }
        return aiohttp.ClientSession(connector=connector, headers=headers)

    async def _request(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
    ) -> Optional[Classification]:
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout)
        try:
            async with session.request(method, url, allow_redirects=True, timeout=timeout) as resp:
                status = resp.status
        except asyncio.TimeoutError:
            logger.debug("%s %s timed out after %.1fs", method, url, self.settings.timeout)
            return None
        except (aiohttp.ClientError, OSError, ValueError) as exc:
            logger.debug("%s %s failed: %s", method, url, exc)
            return None
        verdict = classify_status(status)
        logger.debug("%s %s -> %s (%s)", method, url, status, verdict.value if verdict else "unclassified")
        return verdict

    async def _probe(self, session: aiohttp.ClientSession, url: str) -> Classification:
        verdict = await self._request(session, "HEAD", url)
        if verdict is not None:
            return verdict
        # Servers that reject HEAD or answer opaquely get one GET; the body is never read.
        verdict = await self._request(session, "GET", url)
        return verdict or Classification.UNKNOWN

    async def _record(self, normalized: str, verdict: Classification) -> None:
        async with self._cache_lock:
            self._statuses[normalized] = LinkStatus(
                normalized_url=normalized,
                classification=verdict,
                checked_at=self._clock(),
            )
            self._cache_dirty = True

    async def check_one(
        self,
        url: str,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> Classification:
        """Classify one URL and record it. Never raises."""

        normalized = normalize(url) if isinstance(url, str) else ""
        if not normalized.strip():
            return Classification.UNKNOWN
        try:
            if session is None:
                async with self._open_session() as own_session:
                    verdict = await self._probe(own_session, normalized)
            else:
                verdict = await self._probe(session, normalized)
        except Exception as exc:  # noqa: BLE001
            logger.warning("probe of %s failed unexpectedly: %s", normalized, exc)
            verdict = Classification.UNKNOWN
        await self._record(normalized, verdict)
        return verdict

    async def check_batch(self, urls: Iterable[str]) -> Dict[str, Classification]:
        """Probe every URL concurrently and return the merged cache map.

        Concurrency is bounded by ``settings.concurrency``; URLs that normalize
        identically are probed once.
        """

        targets = sorted({normalize(u) for u in urls if isinstance(u, str) and u.strip()})
        if targets:
            semaphore = asyncio.Semaphore(self.settings.concurrency)
            async with self._open_session() as session:

                async def _bounded(target: str) -> Classification:
                    async with semaphore:
                        return await self.check_one(target, session=session)

                await asyncio.gather(*(_bounded(t) for t in targets))
            counts: Dict[str, int] = {}
            for target in targets:
                verdict = self._statuses[target].classification.value
                counts[verdict] = counts.get(verdict, 0) + 1
            logger.info("checked %d link(s): %s", len(targets), counts)
        if self.cache_path and self._cache_dirty:
            await self._flush_cache_to_disk()
        return self.snapshot()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _flush_cache_to_disk(self) -> None:
        async with self._cache_lock:
            try:
                self.save()
            except OSError as exc:
                logger.warning("could not persist link cache to %s: %s", self.cache_path, exc)

    def save(self) -> None:
        """Write the cache to ``cache_path`` (no-op without one)."""

        if not self.cache_path:
            return
        payload = {key: status.to_dict() for key, status in sorted(self._statuses.items())}
        atomic_write_json(self.cache_path, payload)
        self._cache_dirty = False


def _load_statuses(path: Path) -> Dict[str, LinkStatus]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("ignoring unreadable link cache %s: %s", path, exc)
        return {}
    statuses: Dict[str, LinkStatus] = {}
    if not isinstance(data, dict):
        return statuses
    for key, item in data.items():
        if not isinstance(item, dict):
            continue
        try:
            verdict = Classification(item.get("classification"))
        except ValueError:
            continue
        checked_at = parse_timestamp(item.get("checkedAt")) or utc_now()
        statuses[key] = LinkStatus(normalized_url=key, classification=verdict, checked_at=checked_at)
    return statuses


__all__ = [
    "Classification",
    "LinkStatus",
    "LinkHealthCache",
    "classify_status",
]
