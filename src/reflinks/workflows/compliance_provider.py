"""Compliance record provider interface, a static catalog, and URL extraction.

The orchestrator treats records as opaque mappings; the only thing it reads out
of them is the set of reference URLs (legislation and format specifications)
that the link checker should re-validate.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Set

from ..core.keys import (
    K_CHANNELS,
    K_COUNTRY_ID,
    K_COUNTRY_NAME,
    K_DATA_SOURCES_LAST_CHECKED,
    K_E_INVOICING,
    K_FORMATS,
    K_ISO_CODE3,
    K_LAST_UPDATED,
    K_LEGISLATION,
    K_NAME,
    K_OFFICIAL_LINK,
    K_REFERENCE_URLS,
    K_SOURCES,
    K_SPEC_URL,
    K_SPECIFICATION_LINK,
    K_SPECIFICATIONS,
    K_TIMELINE,
    K_URL,
)
from .reflinks_utils import http_urls, isoformat_z, utc_now

logger = logging.getLogger(__name__)

ComplianceRecord = Dict[str, Any]
ProviderProgress = Callable[[int, str], None]


class ComplianceProvider(Protocol):
    def get_record(self, country_id: str) -> Optional[ComplianceRecord]: ...

    def generate_fallback(self, name: str, country_id: str) -> ComplianceRecord: ...

    async def refresh(
        self,
        country_id: str,
        on_progress: Optional[ProviderProgress] = None,
    ) -> ComplianceRecord: ...

    def list_all_known_ids(self) -> Set[str]: ...


def extract_reference_urls(record: Optional[Mapping[str, Any]]) -> Set[str]:
    """Collect the http(s) reference URLs of one compliance record."""

    if not isinstance(record, Mapping):
        return set()
    found: List[Any] = []
    extra = record.get(K_REFERENCE_URLS)
    if isinstance(extra, list):
        found.extend(extra)
    e_invoicing = record.get(K_E_INVOICING)
    if isinstance(e_invoicing, Mapping):
        for channel in K_CHANNELS:
            data = e_invoicing.get(channel)
            if not isinstance(data, Mapping):
                continue
            legislation = data.get(K_LEGISLATION)
            if isinstance(legislation, Mapping):
                found.append(legislation.get(K_OFFICIAL_LINK))
                found.append(legislation.get(K_SPECIFICATION_LINK))
                for spec in legislation.get(K_SPECIFICATIONS) or []:
                    if isinstance(spec, Mapping):
                        found.append(spec.get(K_URL))
            for fmt in data.get(K_FORMATS) or []:
                if isinstance(fmt, Mapping):
                    found.append(fmt.get(K_SPEC_URL))
    return http_urls(found)


def extract_all_reference_urls(records: Iterable[Optional[Mapping[str, Any]]]) -> Set[str]:
    urls: Set[str] = set()
    for record in records:
        urls |= extract_reference_urls(record)
    return urls


def _record_id(record: Mapping[str, Any]) -> str:
    return str(record.get(K_COUNTRY_ID) or record.get(K_ISO_CODE3) or "").strip().upper()


def load_catalog(path: Path) -> Dict[str, ComplianceRecord]:
    """Load a JSON list of compliance records keyed by ``countryId``/``isoCode3``."""

    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError("compliance catalog must be a list")
    catalog: Dict[str, ComplianceRecord] = {}
    for item in data:
        if not isinstance(item, dict):
            continue
        rid = _record_id(item)
        if not rid:
            continue
        catalog[rid] = item
    logger.info("loaded %d compliance record(s) from %s", len(catalog), path)
    return catalog


class StaticComplianceProvider:
    """In-memory catalog whose refresh re-stamps a record as freshly checked."""

    def __init__(
        self,
        records: Optional[Mapping[str, ComplianceRecord]] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        refresh_delay: float = 0.0,
    ) -> None:
        self._records: Dict[str, ComplianceRecord] = {
            str(k).upper(): copy.deepcopy(v) for k, v in (records or {}).items()
        }
        self._cache: Dict[str, ComplianceRecord] = {}
        self._clock = clock
        self.refresh_delay = refresh_delay
        self.last_refresh: Optional[datetime] = None

    @classmethod
    def from_path(cls, path: Path, **kwargs: Any) -> "StaticComplianceProvider":
        return cls(load_catalog(path), **kwargs)

    def get_record(self, country_id: str) -> Optional[ComplianceRecord]:
        key = str(country_id).upper()
        record = self._cache.get(key) or self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    def generate_fallback(self, name: str, country_id: str) -> ComplianceRecord:
        now = self._clock()
        year = now.year
        stamp = isoformat_z(now)
        return {
            K_COUNTRY_ID: str(country_id).upper(),
            K_COUNTRY_NAME: name,
            K_TIMELINE: [
                {
                    "date": f"{year - 2}-01-01",
                    "description": "E-invoicing to public sector became mandatory",
                    "status": "mandated",
                    "category": "B2G",
                },
                {
                    "date": f"{year + 1}-01-01",
                    "description": "Large businesses must implement e-invoicing",
                    "threshold": "Subject to local size thresholds",
                    "status": "planned",
                    "category": "B2B",
                },
                {
                    "date": f"{year + 3}-01-01",
                    "description": "All businesses must implement e-invoicing",
                    "status": "planned",
                    "category": "B2B",
                },
            ],
            K_LAST_UPDATED: stamp,
            K_SOURCES: ["Local Tax Authority", "Government Publications", "GENA Network Updates"],
            K_DATA_SOURCES_LAST_CHECKED: stamp,
        }

    async def refresh(
        self,
        country_id: str,
        on_progress: Optional[ProviderProgress] = None,
    ) -> ComplianceRecord:
        key = str(country_id).upper()
        base = self._records.get(key)
        if base is None:
            raise KeyError(f"unknown country id: {country_id}")
        if on_progress is not None:
            on_progress(0, f"Refreshing {key}")
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        now = self._clock()
        refreshed = copy.deepcopy(base)
        refreshed[K_LAST_UPDATED] = isoformat_z(now)
        refreshed[K_DATA_SOURCES_LAST_CHECKED] = isoformat_z(now)
        self._cache[key] = refreshed
        self.last_refresh = now
        if on_progress is not None:
            on_progress(100, f"Refreshed {key}")
        return copy.deepcopy(refreshed)

    def list_all_known_ids(self) -> Set[str]:
        return set(self._records)

    def display_names(self) -> Dict[str, str]:
        names: Dict[str, str] = {}
        for key, record in self._records.items():
            name = record.get(K_COUNTRY_NAME) or record.get(K_NAME)
            if name:
                names[key] = str(name)
        return names


__all__ = [
    "ComplianceRecord",
    "ComplianceProvider",
    "StaticComplianceProvider",
    "extract_reference_urls",
    "extract_all_reference_urls",
    "load_catalog",
]
