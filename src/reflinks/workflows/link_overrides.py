"""Curated link overrides keyed by (country, original URL, link kind).

Curators register a replacement URL for a reference link that moved or died.
Entries are never physically removed: deleting one flips ``is_active`` off and
keeps it as history. Resolution prefers the override unless the caller knows
the underlying source changed after the override was provided.

Storage sits behind a tiny repository interface (``load``/``save`` of the
whole collection); the default writes one JSON file atomically. All
read-modify-write cycles in a process go through one writer lock, so two
curators in the same process cannot lose each other's update.
"""

from __future__ import annotations

import copy
import json
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple, Union

from ..core.keys import (
    K_COUNTRY_CODE,
    K_CUSTOM_URL,
    K_DATE_PROVIDED,
    K_ID,
    K_IS_ACTIVE,
    K_LAST_UPDATED,
    K_LINK_TYPE,
    K_NOTES,
    K_ORIGINAL_URL,
    K_TITLE,
)
from .reflinks_utils import atomic_write_json, isoformat_z, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


class LinkKind(str, Enum):
    LEGISLATION = "legislation"
    SPECIFICATION = "specification"
    NEWS = "news"
    STANDARD = "standard"


class PersistenceError(RuntimeError):
    """The override collection could not be read or written."""


class OverrideValidationError(ValueError):
    """An override request is missing fields or names an unknown link kind."""


OverrideKey = Tuple[str, str, str]
Timestamp = Union[str, datetime]


def _kind_value(kind: Union[str, LinkKind]) -> str:
    if isinstance(kind, LinkKind):
        return kind.value
    return str(kind or "").strip().lower()


def _country_value(code: str) -> str:
    return str(code or "").strip().upper()


@dataclass
class OverrideRequest:
    country_code: str
    link_kind: Union[str, LinkKind]
    original_url: str
    custom_url: str
    title: str
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OverrideRequest":
        """Build a request from the camelCase wire format."""

        return cls(
            country_code=data.get(K_COUNTRY_CODE) or "",
            link_kind=data.get(K_LINK_TYPE) or "",
            original_url=data.get(K_ORIGINAL_URL) or "",
            custom_url=data.get(K_CUSTOM_URL) or "",
            title=data.get(K_TITLE) or "",
            notes=data.get(K_NOTES),
        )

    def validated(self) -> "OverrideRequest":
        """Return a cleaned copy or raise :class:`OverrideValidationError`."""

        fields = {
            "countryCode": self.country_code,
            "linkType": self.link_kind,
            "originalUrl": self.original_url,
            "customUrl": self.custom_url,
            "title": self.title,
        }
        missing = [name for name, value in fields.items() if not str(value or "").strip()]
        if missing:
            raise OverrideValidationError(f"Missing required fields: {', '.join(missing)}")
        try:
            kind = LinkKind(_kind_value(self.link_kind))
        except ValueError:
            allowed = ", ".join(k.value for k in LinkKind)
            raise OverrideValidationError(f"Invalid linkType. Must be one of: {allowed}") from None
        notes = self.notes.strip() if isinstance(self.notes, str) and self.notes.strip() else None
        return OverrideRequest(
            country_code=_country_value(self.country_code),
            link_kind=kind,
            original_url=str(self.original_url).strip(),
            custom_url=str(self.custom_url).strip(),
            title=str(self.title).strip(),
            notes=notes,
        )


@dataclass
class LinkOverrideEntry:
    id: str
    country_code: str
    link_kind: str
    original_url: str
    custom_url: str
    title: str
    date_provided: str
    last_updated: str
    notes: Optional[str] = None
    is_active: bool = True

    @property
    def key(self) -> OverrideKey:
        return (self.country_code, self.original_url, self.link_kind)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            K_ID: self.id,
            K_COUNTRY_CODE: self.country_code,
            K_LINK_TYPE: self.link_kind,
            K_ORIGINAL_URL: self.original_url,
            K_CUSTOM_URL: self.custom_url,
            K_TITLE: self.title,
            K_DATE_PROVIDED: self.date_provided,
            K_LAST_UPDATED: self.last_updated,
            K_IS_ACTIVE: self.is_active,
        }
        if self.notes is not None:
            payload[K_NOTES] = self.notes
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LinkOverrideEntry":
        active = data.get(K_IS_ACTIVE, True)
        if not isinstance(active, bool):
            raise PersistenceError(f"override entry {data.get(K_ID)!r} has non-boolean isActive {active!r}")
        try:
            return cls(
                id=str(data[K_ID]),
                country_code=_country_value(data[K_COUNTRY_CODE]),
                link_kind=_kind_value(data[K_LINK_TYPE]),
                original_url=str(data[K_ORIGINAL_URL]),
                custom_url=str(data[K_CUSTOM_URL]),
                title=str(data.get(K_TITLE) or ""),
                date_provided=str(data[K_DATE_PROVIDED]),
                last_updated=str(data.get(K_LAST_UPDATED) or data[K_DATE_PROVIDED]),
                notes=data.get(K_NOTES),
                is_active=active,
            )
        except KeyError as exc:
            raise PersistenceError(f"override entry missing key {exc}") from exc


@dataclass(frozen=True)
class LinkResolution:
    has_override: bool
    custom_url: Optional[str]
    prefer_override: bool
    url: str


class OverrideRepository(Protocol):
    def load(self) -> List[LinkOverrideEntry]: ...

    def save(self, entries: List[LinkOverrideEntry]) -> None: ...


class JsonFileRepository:
    """Whole collection in one JSON list; a missing file is an empty collection."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> List[LinkOverrideEntry]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Failed to read custom links from {self.path}: {exc}") from exc
        if not isinstance(data, list):
            raise PersistenceError(f"{self.path} must hold a JSON list of custom links")
        entries: List[LinkOverrideEntry] = []
        for index, item in enumerate(data):
            if not isinstance(item, dict):
                raise PersistenceError(f"{self.path}: item {index} is not a custom link object")
            entries.append(LinkOverrideEntry.from_dict(item))
        return entries

    def save(self, entries: List[LinkOverrideEntry]) -> None:
        try:
            atomic_write_json(self.path, [entry.to_dict() for entry in entries])
        except OSError as exc:
            raise PersistenceError(f"Failed to write custom links to {self.path}: {exc}") from exc


class MemoryRepository:
    """In-process repository; hands out copies so callers cannot mutate storage."""

    def __init__(self, entries: Optional[List[LinkOverrideEntry]] = None) -> None:
        self._entries: List[LinkOverrideEntry] = copy.deepcopy(entries or [])

    def load(self) -> List[LinkOverrideEntry]:
        return copy.deepcopy(self._entries)

    def save(self, entries: List[LinkOverrideEntry]) -> None:
        self._entries = copy.deepcopy(entries)


def _default_id(now: datetime) -> str:
    return f"{int(now.timestamp() * 1000):x}{secrets.token_hex(4)}"


class LinkOverrideStore:
    """Create, soft-delete and resolve curated link overrides."""

    def __init__(
        self,
        repository: OverrideRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[datetime], str] = _default_id,
    ) -> None:
        self.repository = repository
        self._clock = clock
        self._id_factory = id_factory
        self._write_lock = threading.RLock()

    @classmethod
    def from_path(cls, path: Path, **kwargs: Any) -> "LinkOverrideStore":
        return cls(JsonFileRepository(path), **kwargs)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_all(self) -> List[LinkOverrideEntry]:
        return self.repository.load()

    def list_for_country(self, country_code: str) -> List[LinkOverrideEntry]:
        code = _country_value(country_code)
        return [e for e in self.repository.load() if e.country_code == code and e.is_active]

    def _find_active(
        self,
        entries: List[LinkOverrideEntry],
        country_code: str,
        original_url: str,
        link_kind: Union[str, LinkKind],
    ) -> Optional[LinkOverrideEntry]:
        key = (_country_value(country_code), str(original_url or "").strip(), _kind_value(link_kind))
        for entry in entries:
            if entry.is_active and entry.key == key:
                return entry
        return None

    def get_active(
        self,
        country_code: str,
        original_url: str,
        link_kind: Union[str, LinkKind],
    ) -> Optional[LinkOverrideEntry]:
        return self._find_active(self.repository.load(), country_code, original_url, link_kind)

    def resolve(
        self,
        country_code: str,
        original_url: str,
        link_kind: Union[str, LinkKind],
    ) -> Optional[str]:
        entry = self.get_active(country_code, original_url, link_kind)
        return entry.custom_url if entry else None

    def should_prefer_override(
        self,
        country_code: str,
        original_url: str,
        link_kind: Union[str, LinkKind],
        source_last_updated: Optional[Timestamp] = None,
    ) -> bool:
        entry = self.get_active(country_code, original_url, link_kind)
        return self._prefer(entry, source_last_updated)

    def _prefer(self, entry: Optional[LinkOverrideEntry], source_last_updated: Optional[Timestamp]) -> bool:
        if entry is None:
            return False
        if source_last_updated is None or source_last_updated == "":
            return True
        source_moment = parse_timestamp(source_last_updated)
        provided = parse_timestamp(entry.date_provided)
        if source_moment is None or provided is None:
            logger.warning(
                "cannot compare override %s (%r) with source date %r; showing original link",
                entry.id,
                entry.date_provided,
                source_last_updated,
            )
            return False
        return provided >= source_moment

    def resolve_link(
        self,
        country_code: str,
        original_url: str,
        link_kind: Union[str, LinkKind],
        source_last_updated: Optional[Timestamp] = None,
    ) -> LinkResolution:
        entry = self.get_active(country_code, original_url, link_kind)
        prefer = self._prefer(entry, source_last_updated)
        return LinkResolution(
            has_override=entry is not None,
            custom_url=entry.custom_url if entry else None,
            prefer_override=prefer,
            url=entry.custom_url if prefer and entry and entry.custom_url else original_url,
        )

    def best_url(
        self,
        country_code: str,
        original_url: str,
        link_kind: Union[str, LinkKind],
        source_last_updated: Optional[Timestamp] = None,
    ) -> str:
        """Return the URL to render: the override when preferred, else the original."""

        return self.resolve_link(country_code, original_url, link_kind, source_last_updated).url

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_or_update(self, request: Union[OverrideRequest, Mapping[str, Any]]) -> LinkOverrideEntry:
        if not isinstance(request, OverrideRequest):
            request = OverrideRequest.from_dict(request)
        clean = request.validated()
        with self._write_lock:
            entries = self.repository.load()
            now = isoformat_z(self._clock())
            entry = self._find_active(entries, clean.country_code, clean.original_url, clean.link_kind)
            if entry is not None:
                entry.custom_url = clean.custom_url
                entry.title = clean.title
                entry.notes = clean.notes
                entry.last_updated = now
                action = "updated"
            else:
                entry = LinkOverrideEntry(
                    id=self._id_factory(self._clock()),
                    country_code=clean.country_code,
                    link_kind=_kind_value(clean.link_kind),
                    original_url=clean.original_url,
                    custom_url=clean.custom_url,
                    title=clean.title,
                    date_provided=now,
                    last_updated=now,
                    notes=clean.notes,
                    is_active=True,
                )
                entries.append(entry)
                action = "created"
            self.repository.save(entries)
        logger.info("%s override %s for %s %s", action, entry.id, entry.country_code, entry.original_url)
        return copy.deepcopy(entry)

    def delete(self, entry_id: str) -> bool:
        with self._write_lock:
            entries = self.repository.load()
            for entry in entries:
                if entry.id != entry_id:
                    continue
                if not entry.is_active:
                    return False
                entry.is_active = False
                entry.last_updated = isoformat_z(self._clock())
                self.repository.save(entries)
                logger.info("deactivated override %s", entry_id)
                return True
        return False


__all__ = [
    "LinkKind",
    "PersistenceError",
    "OverrideValidationError",
    "OverrideRequest",
    "LinkOverrideEntry",
    "LinkResolution",
    "OverrideRepository",
    "JsonFileRepository",
    "MemoryRepository",
    "LinkOverrideStore",
]
