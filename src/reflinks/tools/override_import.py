"""Bulk-import curated link overrides from a JSON manifest."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import requests

from reflinks.workflows.link_overrides import (
    LinkOverrideStore,
    OverrideRequest,
    OverrideValidationError,
)
from reflinks.workflows.reflinks_config import overrides_path_from_env
from reflinks.workflows.reflinks_utils import is_http_url

logger = logging.getLogger(__name__)

ManifestItem = Dict[str, Any]
FetchFunc = Callable[[str], Any]


def _default_fetch(url: str, *, timeout: int = 30) -> Any:
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.json()


def load_manifest(
    source: Union[str, Path],
    *,
    fetch: Optional[FetchFunc] = None,
    timeout: int = 30,
) -> List[ManifestItem]:
    """Read a manifest (a JSON list of override requests) from a path or URL."""

    if isinstance(source, str) and is_http_url(source):
        fetcher = fetch or (lambda url: _default_fetch(url, timeout=timeout))
        data = fetcher(source)
    else:
        data = json.loads(Path(source).read_text(encoding="utf-8"))
    if isinstance(data, dict) and isinstance(data.get("overrides"), list):
        data = data["overrides"]
    if not isinstance(data, list):
        raise ValueError("override manifest must be a list")
    return [item for item in data if isinstance(item, dict)]


def import_overrides(
    manifest: Union[str, Path],
    store: LinkOverrideStore,
    *,
    fetch: Optional[FetchFunc] = None,
    dry_run: bool = False,
    timeout: int = 30,
) -> List[Dict[str, str]]:
    """Apply every valid manifest item to ``store``; invalid items are skipped.

    Returns one result row per manifest item with ``status`` set to
    ``imported``, ``skipped`` (dry run) or ``invalid``.
    """

    items = load_manifest(manifest, fetch=fetch, timeout=timeout)
    results: List[Dict[str, str]] = []
    for index, item in enumerate(items):
        try:
            request = OverrideRequest.from_dict(item).validated()
        except OverrideValidationError as exc:
            logger.warning("manifest item %d skipped: %s", index, exc)
            results.append({"index": str(index), "status": "invalid", "error": str(exc)})
            continue
        if dry_run:
            logger.info("dry-run: would set %s %s -> %s", request.country_code, request.original_url, request.custom_url)
            results.append({"index": str(index), "status": "skipped", "originalUrl": request.original_url})
            continue
        entry = store.create_or_update(request)
        results.append({
            "index": str(index),
            "status": "imported",
            "id": entry.id,
            "originalUrl": entry.original_url,
        })
    imported = sum(1 for r in results if r["status"] == "imported")
    logger.info("imported %d of %d override(s) from %s", imported, len(items), manifest)
    return results


def main() -> None:
    parser = argparse.ArgumentParser(description="Import curated link overrides from a JSON manifest")
    parser.add_argument("manifest", help="Path or http(s) URL of the manifest JSON")
    parser.add_argument(
        "--store",
        type=Path,
        default=None,
        help="Override store JSON (default: REFLINKS_OVERRIDES_PATH or data/custom-links.json)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Validate without writing")
    parser.add_argument("--timeout", type=int, default=30, help="HTTP timeout for remote manifests (seconds)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    store = LinkOverrideStore.from_path(args.store or overrides_path_from_env())
    import_overrides(args.manifest, store, dry_run=args.dry_run, timeout=args.timeout)


if __name__ == "__main__":
    main()
