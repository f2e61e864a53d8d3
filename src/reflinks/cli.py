from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import typer
from dotenv import load_dotenv

from .tools.override_import import import_overrides
from .workflows.compliance_provider import StaticComplianceProvider
from .workflows.link_health import LinkHealthCache
from .workflows.link_overrides import LinkOverrideStore, OverrideRequest, OverrideValidationError, PersistenceError
from .workflows.reflinks_config import overrides_path_from_env, probe_settings_from_env, refresh_settings_from_env
from .workflows.refresh_orchestrator import (
    Notification,
    RefreshInProgressError,
    RefreshOrchestrator,
    RefreshProgress,
    RefreshState,
)
from .workflows.smart_links import SmartLinkResolver
from .workflows.url_normalizer import normalize

app = typer.Typer(add_help_option=False, no_args_is_help=False)
overrides_app = typer.Typer(no_args_is_help=True, help="Manage curated link overrides.")
app.add_typer(overrides_app, name="overrides")


def _minimal_help() -> str:
    return """Reflinks (reference link maintenance CLI)

Usage:
  reflinks normalize <url>...
  reflinks check <url>... [--json]
  reflinks overrides add|delete|list|resolve|import ...
  reflinks refresh --data <FILE> --visible <ID,ID> [--wait/--no-wait] [--json]

Common options:
  --json          Print machine-readable JSON to stdout.
  --store <FILE>  Override store JSON (overrides commands).
  -v, --verbose   Debug logging.

Discoverability:
  --help-full     Expanded help + env vars + files.
  --find <query>  Search commands, flags, env vars, files.
"""


def _help_full() -> str:
    return """Reflinks CLI

Commands:
  normalize          Print the canonical form of each URL.
  check              Probe URLs and print ok / not-found / unknown.
  overrides add      Create or update the active override for a (country, url, kind).
  overrides delete   Deactivate an override by id.
  overrides list     List overrides (active only unless --all).
  overrides resolve  Print the URL to show for a reference link.
  overrides import   Bulk-import overrides from a JSON manifest (path or URL).
  refresh            Refresh visible countries with progress, the rest in background.

Link kinds:
  legislation, specification, news, standard

Files:
  data/custom-links.json       Override store (JSON list, camelCase keys).
  data/link_status_cache.json  Last classification per normalized URL.

Important env vars:
  REFLINKS_OVERRIDES_PATH
  REFLINKS_LINK_CACHE_PATH
  REFLINKS_LINK_CACHE_DISABLE
  REFLINKS_PROBE_TIMEOUT
  REFLINKS_PROBE_CONCURRENCY
  REFLINKS_BACKGROUND_DELAY
  REFLINKS_REFRESH_TIMEOUT

Troubleshooting:
  - Many sites block HEAD or bots; "unknown" is expected and is not an error.
  - Use --verbose to see every probe.
"""


_FIND_INDEX = [
    ("command", "normalize", "Print the canonical form of each URL."),
    ("command", "check", "Probe URLs and classify them."),
    ("command", "overrides add", "Create or update an override."),
    ("command", "overrides delete", "Deactivate an override by id."),
    ("command", "overrides list", "List overrides."),
    ("command", "overrides resolve", "Print the URL to show for a reference link."),
    ("command", "overrides import", "Bulk-import overrides from a manifest."),
    ("command", "refresh", "Phased compliance refresh with link re-validation."),
    ("flag", "--json", "Print machine-readable JSON to stdout."),
    ("flag", "--store", "Override store JSON path."),
    ("flag", "--source-date", "Source last-updated timestamp for freshness checks."),
    ("flag", "--title", "Document title; dead links open a web search instead."),
    ("flag", "--wait", "Wait for the background refresh before exiting."),
    ("flag", "--dry-run", "Validate a manifest without writing."),
    ("flag", "--help-full", "Expanded help, env vars, files."),
    ("flag", "--find", "Search commands, flags, env vars, files."),
    ("env", "REFLINKS_OVERRIDES_PATH", "Override store JSON path."),
    ("env", "REFLINKS_LINK_CACHE_PATH", "Link status cache path."),
    ("env", "REFLINKS_LINK_CACHE_DISABLE", "Disable link status cache read/write."),
    ("env", "REFLINKS_PROBE_TIMEOUT", "Per-probe timeout in seconds."),
    ("env", "REFLINKS_PROBE_CONCURRENCY", "Max concurrent probes."),
    ("env", "REFLINKS_BACKGROUND_DELAY", "Delay before the background refresh starts."),
    ("env", "REFLINKS_REFRESH_TIMEOUT", "Per-country refresh timeout in seconds."),
    ("file", "custom-links.json", "Override store."),
    ("file", "link_status_cache.json", "Link status cache."),
]


def _run_find(query: str) -> str:
    needle = (query or "").strip().lower()
    if not needle:
        return ""
    lines = []
    for category, name, desc in _FIND_INDEX:
        haystack = f"{category} {name} {desc}".lower()
        if needle in haystack:
            lines.append(f"{category} {name} - {desc}")
    return "\n".join(lines)


def _open_store(store: Optional[Path]) -> LinkOverrideStore:
    return LinkOverrideStore.from_path(store or overrides_path_from_env())


def _print_json(payload: object) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show minimal help."),
    help_full: bool = typer.Option(False, "--help-full", is_eager=True, help="Show expanded help."),
    find: Optional[str] = typer.Option(None, "--find", is_eager=True, help="Search commands, flags, env vars, files."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    if help_full:
        typer.echo(_help_full())
        raise typer.Exit(code=0)
    if find is not None:
        output = _run_find(find)
        if output:
            typer.echo(output)
        raise typer.Exit(code=0)
    if help or ctx.invoked_subcommand is None:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)
    load_dotenv()
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")


@app.command("normalize", add_help_option=True)
def normalize_cmd(urls: List[str] = typer.Argument(..., help="URLs to canonicalize.")) -> None:
    """Print the canonical form of each URL."""
    for url in urls:
        typer.echo(normalize(url))


@app.command("check", add_help_option=True)
def check_cmd(
    urls: List[str] = typer.Argument(..., help="URLs to probe."),
    json_out: bool = typer.Option(False, "--json", help="Print {url: classification} JSON."),
) -> None:
    """Probe URLs and print ok / not-found / unknown."""
    cache = LinkHealthCache(probe_settings_from_env())
    statuses = asyncio.run(cache.check_batch(urls))
    rows: Dict[str, str] = {}
    for url in urls:
        key = normalize(url)
        verdict = statuses.get(key)
        rows[key] = verdict.value if verdict else "unknown"
    if json_out:
        _print_json(rows)
        return
    for key, verdict in rows.items():
        typer.echo(f"{verdict:<10} {key}")


@overrides_app.command("add")
def overrides_add(
    country: str = typer.Option(..., "--country", help="ISO country code, e.g. ESP."),
    kind: str = typer.Option(..., "--kind", help="legislation, specification, news or standard."),
    original: str = typer.Option(..., "--original", help="Original reference URL."),
    custom: str = typer.Option(..., "--custom", help="Replacement URL."),
    title: str = typer.Option(..., "--title", help="Display title."),
    notes: Optional[str] = typer.Option(None, "--notes", help="Curator notes."),
    store: Optional[Path] = typer.Option(None, "--store", help="Override store JSON."),
) -> None:
    """Create or update the active override for a (country, url, kind)."""
    request = OverrideRequest(
        country_code=country,
        link_kind=kind,
        original_url=original,
        custom_url=custom,
        title=title,
        notes=notes,
    )
    try:
        entry = _open_store(store).create_or_update(request)
    except OverrideValidationError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    except PersistenceError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    _print_json(entry.to_dict())


@overrides_app.command("delete")
def overrides_delete(
    entry_id: str = typer.Argument(..., help="Override id."),
    store: Optional[Path] = typer.Option(None, "--store", help="Override store JSON."),
) -> None:
    """Deactivate an override by id."""
    try:
        changed = _open_store(store).delete(entry_id)
    except PersistenceError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    if not changed:
        typer.echo(f"no active override with id {entry_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"deactivated {entry_id}")


@overrides_app.command("list")
def overrides_list(
    country: Optional[str] = typer.Option(None, "--country", help="Only this country (active entries)."),
    include_inactive: bool = typer.Option(False, "--all", help="Include deactivated entries."),
    json_out: bool = typer.Option(False, "--json", help="Print entries as JSON."),
    store: Optional[Path] = typer.Option(None, "--store", help="Override store JSON."),
) -> None:
    """List overrides (active only unless --all)."""
    try:
        repo = _open_store(store)
        if country:
            entries = repo.list_for_country(country)
        else:
            entries = [e for e in repo.list_all() if include_inactive or e.is_active]
    except PersistenceError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    if json_out:
        _print_json([e.to_dict() for e in entries])
        return
    for entry in entries:
        flag = "" if entry.is_active else " (inactive)"
        typer.echo(f"{entry.id}  {entry.country_code}  {entry.link_kind:<13} {entry.original_url} -> {entry.custom_url}{flag}")


@overrides_app.command("resolve")
def overrides_resolve(
    country: str = typer.Option(..., "--country", help="ISO country code."),
    kind: str = typer.Option(..., "--kind", help="Link kind."),
    original: str = typer.Option(..., "--original", help="Original reference URL."),
    source_date: Optional[str] = typer.Option(None, "--source-date", help="Source last-updated timestamp."),
    title: Optional[str] = typer.Option(None, "--title", help="Document title; enables search fallback for dead links."),
    source: str = typer.Option("", "--source", help="Publisher named in the search fallback."),
    country_name: str = typer.Option("", "--country-name", help="Country name used in the search fallback."),
    json_out: bool = typer.Option(False, "--json", help="Print the full resolution as JSON."),
    store: Optional[Path] = typer.Option(None, "--store", help="Override store JSON."),
) -> None:
    """Print the URL to show for a reference link."""
    try:
        repo = _open_store(store)
        resolution = repo.resolve_link(country, original, kind, source_date)
        smart = None
        if title:
            resolver = SmartLinkResolver(repo, LinkHealthCache(probe_settings_from_env()))
            smart = resolver.resolve(
                country,
                original,
                kind,
                title=title,
                source=source,
                country_name=country_name,
                source_last_updated=source_date,
            )
    except PersistenceError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    url = smart.url if smart else resolution.url
    if json_out:
        _print_json({
            "hasOverride": resolution.has_override,
            "customUrl": resolution.custom_url,
            "preferOverride": resolution.prefer_override,
            "url": url,
            "searched": bool(smart and smart.searched),
        })
        return
    typer.echo(url)


@overrides_app.command("import")
def overrides_import(
    manifest: str = typer.Argument(..., help="Manifest JSON path or http(s) URL."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate without writing."),
    json_out: bool = typer.Option(False, "--json", help="Print per-item results as JSON."),
    store: Optional[Path] = typer.Option(None, "--store", help="Override store JSON."),
) -> None:
    """Bulk-import overrides from a JSON manifest."""
    try:
        results = import_overrides(manifest, _open_store(store), dry_run=dry_run)
    except PersistenceError as exc:
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    except Exception as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    if json_out:
        _print_json(results)
        return
    counts: Dict[str, int] = {}
    for row in results:
        counts[row["status"]] = counts.get(row["status"], 0) + 1
    typer.echo(", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "empty manifest")


@app.command("refresh", add_help_option=True)
def refresh_cmd(
    data: Path = typer.Option(..., "--data", help="Compliance catalog JSON (list of records)."),
    visible: str = typer.Option("", "--visible", help="Comma-separated visible country ids."),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for the background refresh before exiting."),
    json_out: bool = typer.Option(False, "--json", help="Print the outcome as JSON."),
) -> None:
    """Refresh visible countries with progress, the rest in background."""
    try:
        provider = StaticComplianceProvider.from_path(data)
    except (OSError, ValueError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    visible_ids = [token.strip().upper() for token in visible.split(",") if token.strip()]
    notes: List[str] = []

    def _on_progress(progress: RefreshProgress) -> None:
        if not json_out:
            typer.echo(f"[{progress.percentage:>3}%] {progress.message}")

    def _on_notify(notification: Notification) -> None:
        notes.append(f"{notification.level}: {notification.message}")

    orchestrator = RefreshOrchestrator(
        provider,
        LinkHealthCache(probe_settings_from_env()),
        lambda: visible_ids,
        settings=refresh_settings_from_env(),
        display_names=provider.display_names(),
        notify=_on_notify,
    )

    async def _run():
        outcome = await orchestrator.refresh(progress_hook=_on_progress)
        job = outcome.background_job
        if job is not None and not wait:
            job.cancel()
        if job is not None:
            await job.wait()
        return outcome

    try:
        outcome = asyncio.run(_run())
    except RefreshInProgressError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    job = outcome.background_job
    if json_out:
        _print_json({
            "state": outcome.final_state.value,
            "refreshed": list(outcome.refreshed_ids),
            "links": {url: verdict.value for url, verdict in sorted(outcome.link_statuses.items())},
            "error": outcome.error,
            "background": job.status.value if job else None,
            "notifications": notes,
        })
    else:
        if outcome.error:
            typer.echo(outcome.error, err=True)
        for url, verdict in sorted(outcome.link_statuses.items()):
            typer.echo(f"{verdict.value:<10} {url}")
        for note in notes:
            typer.echo(note)
    raise typer.Exit(code=1 if outcome.final_state is RefreshState.ERRORED else 0)
