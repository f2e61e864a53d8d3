"""High-level exports for the reflinks workflows."""

from .compliance_provider import ComplianceProvider, StaticComplianceProvider, extract_reference_urls
from .link_health import Classification, LinkHealthCache, LinkStatus
from .link_overrides import (
    JsonFileRepository,
    LinkKind,
    LinkOverrideEntry,
    LinkOverrideStore,
    MemoryRepository,
    OverrideValidationError,
    PersistenceError,
)
from .refresh_orchestrator import (
    BackgroundRefreshJob,
    ProviderRefreshFailure,
    RefreshInProgressError,
    RefreshOrchestrator,
    RefreshProgress,
    RefreshState,
)
from .smart_links import SmartLink, SmartLinkResolver, fallback_search_url
from .url_normalizer import normalize

__all__ = [
    "BackgroundRefreshJob",
    "Classification",
    "ComplianceProvider",
    "JsonFileRepository",
    "LinkHealthCache",
    "LinkKind",
    "LinkOverrideEntry",
    "LinkOverrideStore",
    "LinkStatus",
    "MemoryRepository",
    "OverrideValidationError",
    "PersistenceError",
    "ProviderRefreshFailure",
    "RefreshInProgressError",
    "RefreshOrchestrator",
    "RefreshProgress",
    "RefreshState",
    "SmartLink",
    "SmartLinkResolver",
    "StaticComplianceProvider",
    "extract_reference_urls",
    "fallback_search_url",
    "normalize",
]
