"""reflinks defaults (paths, domain tables, status codes, probe and refresh knobs).

Centralizes static defaults so the workflow modules have no embedded magic
strings. Callers can construct their own ``ProbeSettings``/``RefreshSettings``
to override any of them; ``*_from_env`` helpers read the ``REFLINKS_*``
environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

# Paths (project-relative)
_ROOT = Path(__file__).resolve().parents[1]
DATA_DIR = _ROOT / "data"
OVERRIDES_PATH = DATA_DIR / "custom-links.json"
LINK_CACHE_PATH = DATA_DIR / "link_status_cache.json"

# Probe defaults
USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36 reflinks"
)
ACCEPT_LANGUAGE = "en-US,en;q=0.9"
NOT_FOUND_STATUS_CODES = frozenset({404, 410})

# Jurisdiction tables used by the URL normalizer.
# Apex host -> canonical host. Keys never equal their values.
CANONICAL_HOSTS: Dict[str, str] = {
    "boe.es": "www.boe.es",
    "legifrance.gouv.fr": "www.legifrance.gouv.fr",
    "impots.gouv.fr": "www.impots.gouv.fr",
    "gesetze-im-internet.de": "www.gesetze-im-internet.de",
    "bundesfinanzministerium.de": "www.bundesfinanzministerium.de",
    "agenziaentrate.gov.it": "www.agenziaentrate.gov.it",
    "fatturapa.gov.it": "www.fatturapa.gov.it",
    "hacienda.gob.es": "www.hacienda.gob.es",
    "agenciatributaria.es": "www.agenciatributaria.es",
    "podatki.gov.pl": "www.podatki.gov.pl",
    "chorus-pro.gouv.fr": "portail.chorus-pro.gouv.fr",
    "peppol.eu": "docs.peppol.eu",
}

# Host -> path prefixes whose consolidated-text view needs a trailing slash.
# A prefix of "" means every single-segment path on that host.
TRAILING_SLASH_PATHS: Dict[str, Tuple[str, ...]] = {
    "www.legifrance.gouv.fr": ("/loda/id/", "/codes/texte_lc/", "/jorf/id/"),
    "legifrance.gouv.fr": ("/loda/id/", "/codes/texte_lc/", "/jorf/id/"),
    "www.gesetze-im-internet.de": ("",),
    "gesetze-im-internet.de": ("",),
}

# Search used when a reference link is known to be gone.
SEARCH_ENGINE_URL = "https://www.google.com/search?q="
SEARCH_STOP_WORDS = frozenset(
    "the a an and or but in on at to for of with by is are was were be been being "
    "have has had do does did will would could should".split()
)


def _env_int(name: str, default: int = 0) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float = 0.0) -> float:
    try:
        raw = os.getenv(name, "")
        return float(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: str = "0") -> bool:
    raw = os.getenv(name, default)
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    return Path(raw) if raw else default


@dataclass(frozen=True, slots=True)
class ProbeSettings:
    """Knobs for link reachability probes."""

    timeout: float = 10.0
    concurrency: int = 16
    user_agent: str = USER_AGENT
    accept_language: str = ACCEPT_LANGUAGE
    cache_path: Optional[Path] = None


@dataclass(frozen=True, slots=True)
class RefreshSettings:
    """Knobs for the phased refresh."""

    background_delay: float = 1.0
    refresh_timeout: Optional[float] = 60.0


def overrides_path_from_env() -> Path:
    return _env_path("REFLINKS_OVERRIDES_PATH", OVERRIDES_PATH)


def probe_settings_from_env() -> ProbeSettings:
    cache_path: Optional[Path] = _env_path("REFLINKS_LINK_CACHE_PATH", LINK_CACHE_PATH)
    if _env_bool("REFLINKS_LINK_CACHE_DISABLE", "0"):
        cache_path = None
    return ProbeSettings(
        timeout=max(0.1, _env_float("REFLINKS_PROBE_TIMEOUT", 10.0)),
        concurrency=max(1, _env_int("REFLINKS_PROBE_CONCURRENCY", 16)),
        cache_path=cache_path,
    )


def refresh_settings_from_env() -> RefreshSettings:
    timeout = _env_float("REFLINKS_REFRESH_TIMEOUT", 60.0)
    return RefreshSettings(
        background_delay=max(0.0, _env_float("REFLINKS_BACKGROUND_DELAY", 1.0)),
        refresh_timeout=timeout if timeout > 0 else None,
    )
