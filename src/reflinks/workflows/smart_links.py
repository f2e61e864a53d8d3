"""Pick the link to open for a reference: override, original, or a search.

The override store decides between the curated and the original URL. The link
cache then vetoes a target that was last seen as ``not-found``; such a link is
replaced by a web search for the document. ``ok``, ``unknown`` and
never-checked links are opened as is, since a flaky server is no reason to
hide a link.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Union
from urllib.parse import quote

from .link_health import Classification, LinkHealthCache
from .link_overrides import LinkKind, LinkOverrideStore, Timestamp
from .reflinks_config import SEARCH_ENGINE_URL, SEARCH_STOP_WORDS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SmartLink:
    url: str
    target: str
    classification: Optional[Classification] = None
    searched: bool = False


def extract_key_terms(title: str, limit: int = 4) -> str:
    words = re.sub(r"[^a-z0-9\s]", " ", str(title or "").lower()).split()
    return " ".join([w for w in words if len(w) > 2 and w not in SEARCH_STOP_WORDS][:limit])


def search_queries(title: str, source: str, country_name: str) -> List[str]:
    """Search strings for a missing document, most specific first."""

    return [
        f'"{title}" "{source}" einvoicing',
        f"{extract_key_terms(title)} {country_name} einvoicing",
        f'"{source}" {country_name} e-invoicing compliance',
        f"{country_name} einvoicing news updates",
    ]


def fallback_search_url(title: str, source: str, country_name: str) -> str:
    return SEARCH_ENGINE_URL + quote(search_queries(title, source, country_name)[0], safe="")


class SmartLinkResolver:
    """Combine override resolution with the last known link health."""

    def __init__(self, store: LinkOverrideStore, link_cache: LinkHealthCache) -> None:
        self.store = store
        self.link_cache = link_cache

    def resolve(
        self,
        country_code: str,
        original_url: str,
        link_kind: Union[str, LinkKind],
        *,
        title: str,
        source: str = "",
        country_name: str = "",
        source_last_updated: Optional[Timestamp] = None,
    ) -> SmartLink:
        target = self.store.best_url(country_code, original_url, link_kind, source_last_updated)
        verdict = self.link_cache.get_cached(target)
        if verdict is not Classification.NOT_FOUND:
            return SmartLink(url=target, target=target, classification=verdict)
        search = fallback_search_url(title, source, country_name or country_code)
        logger.info("%s is gone; searching for %r instead", target, title[:50])
        return SmartLink(url=search, target=target, classification=verdict, searched=True)


__all__ = [
    "SmartLink",
    "SmartLinkResolver",
    "extract_key_terms",
    "fallback_search_url",
    "search_queries",
]
