"""Phased refresh of compliance records: visible countries first, the rest later.

The foreground phase walks the visible ids one at a time so progress updates
arrive strictly in order. Finalizing re-reads the refreshed records and
re-validates their reference links. The remaining ids are handed to a
:class:`BackgroundRefreshJob` that the caller does not await; it reports only a
terminal :class:`Notification`.

State machine::

    IDLE -> FOREGROUND -> FINALIZING -> BACKGROUND -> IDLE
                 \\-> ERRORED -> IDLE
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from .compliance_provider import ComplianceProvider, ComplianceRecord, extract_all_reference_urls
from .link_health import Classification, LinkHealthCache
from .reflinks_config import RefreshSettings
from .url_normalizer import normalize

logger = logging.getLogger(__name__)

VisibleSetSource = Callable[[], Iterable[str]]

FAILURE_MESSAGE = "Failed to refresh compliance data. Please try again."


class RefreshState(str, Enum):
    IDLE = "idle"
    FOREGROUND = "foreground"
    FINALIZING = "finalizing"
    BACKGROUND = "background"
    ERRORED = "errored"


class RefreshStage(str, Enum):
    VISIBLE = "visible"
    BACKGROUND = "background"
    COMPLETE = "complete"


class BackgroundJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL = frozenset(
    {BackgroundJobStatus.COMPLETED, BackgroundJobStatus.CANCELLED, BackgroundJobStatus.FAILED}
)


@dataclass(frozen=True)
class RefreshProgress:
    percentage: int = 0
    message: str = ""
    stage: Optional[RefreshStage] = None

    @classmethod
    def idle(cls) -> "RefreshProgress":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "percentage": self.percentage,
            "message": self.message,
            "stage": self.stage.value if self.stage else "",
        }


@dataclass(frozen=True)
class Notification:
    """Terminal signal of a background job (shown as a transient toast)."""

    level: str
    message: str


ProgressHook = Callable[[RefreshProgress], None]
NotifyHook = Callable[[Notification], None]


class ProviderRefreshFailure(RuntimeError):
    """The provider could not refresh one country."""

    def __init__(self, country_id: str, cause: BaseException) -> None:
        self.country_id = country_id
        self.cause = cause
        detail = str(cause) or type(cause).__name__
        super().__init__(f"refresh of {country_id} failed: {detail}")


class RefreshInProgressError(RuntimeError):
    """A foreground refresh was requested while another one is running."""


def _percent(completed: int, total: int) -> int:
    if total <= 0:
        return 100
    # half-up, so 1/8 reports 13 rather than banker's 12
    return int(completed * 100 / total + 0.5)


def _ordered_ids(ids: Iterable[str]) -> List[str]:
    cleaned = (str(i).strip() for i in ids if i is not None)
    return list(dict.fromkeys(i for i in cleaned if i))


async def _refresh_entity(
    provider: ComplianceProvider,
    country_id: str,
    timeout: Optional[float],
) -> ComplianceRecord:
    """Refresh one country, folding every failure (timeouts included) into one error type."""

    try:
        if timeout and timeout > 0:
            return await asyncio.wait_for(provider.refresh(country_id), timeout)
        return await provider.refresh(country_id)
    except asyncio.TimeoutError as exc:
        raise ProviderRefreshFailure(country_id, TimeoutError(f"timed out after {timeout}s")) from exc
    except Exception as exc:
        raise ProviderRefreshFailure(country_id, exc) from exc


def _call_hook(hook: Optional[Callable[[Any], None]], value: Any) -> None:
    if hook is None:
        return
    try:
        hook(value)
    except Exception as exc:  # noqa: BLE001
        logger.debug("listener %r raised: %s", hook, exc)


class BackgroundRefreshJob:
    """Sequential refresh of the non-visible countries, detached from the caller.

    Lifecycle: ``pending`` during the settle delay, ``running`` once the first
    refresh starts, then ``completed``, ``cancelled`` or ``failed``. Failures
    are reported through ``notify`` and never re-raised.
    """

    def __init__(
        self,
        provider: ComplianceProvider,
        link_cache: LinkHealthCache,
        country_ids: Sequence[str],
        *,
        delay: float = 0.0,
        refresh_timeout: Optional[float] = None,
        notify: Optional[NotifyHook] = None,
    ) -> None:
        self.provider = provider
        self.link_cache = link_cache
        self.country_ids: Tuple[str, ...] = tuple(country_ids)
        self.delay = delay
        self.refresh_timeout = refresh_timeout
        self.notify = notify
        self.status = BackgroundJobStatus.PENDING
        self.completed = 0
        self.error: Optional[str] = None
        self.link_statuses: Dict[str, Classification] = {}
        self._task: Optional[asyncio.Task] = None
        self._started = False

    def start(self) -> "BackgroundRefreshJob":
        if self._task is None and not self.done:
            self._task = asyncio.create_task(self._run())
            self._task.add_done_callback(self._settle)
        return self

    def _mark_cancelled(self) -> None:
        self.status = BackgroundJobStatus.CANCELLED
        logger.info("background refresh cancelled after %d/%d", self.completed, len(self.country_ids))
        _call_hook(self.notify, Notification("info", "Background refresh cancelled"))

    def _settle(self, task: asyncio.Task) -> None:
        # cancelled before its first step, so _run never saw the CancelledError
        if task.cancelled() and not self.done:
            self._mark_cancelled()

    @property
    def done(self) -> bool:
        return self.status in _TERMINAL

    @property
    def progress(self) -> RefreshProgress:
        total = len(self.country_ids)
        return RefreshProgress(
            percentage=_percent(self.completed, total),
            message=f"Background refresh {self.completed}/{total} ({self.status.value})",
            stage=RefreshStage.BACKGROUND,
        )

    def add_done_callback(self, callback: Callable[["BackgroundRefreshJob"], None]) -> None:
        if self._task is None:
            raise RuntimeError("background job has not been started")
        self._task.add_done_callback(lambda _task: callback(self))

    def cancel(self) -> bool:
        """Request cancellation; returns False when the job already finished."""

        if self.done:
            return False
        if self._task is None or not self._started:
            if self._task is not None:
                self._task.cancel()
            self._mark_cancelled()
            return True
        return self._task.cancel()

    async def wait(self) -> BackgroundJobStatus:
        if self._task is not None:
            await asyncio.wait({self._task})
        return self.status

    async def _run(self) -> None:
        self._started = True
        try:
            if self.delay > 0:
                await asyncio.sleep(self.delay)
            self.status = BackgroundJobStatus.RUNNING
            logger.info("background refresh of %d countr(ies) started", len(self.country_ids))
            records: List[ComplianceRecord] = []
            for country_id in self.country_ids:
                records.append(await _refresh_entity(self.provider, country_id, self.refresh_timeout))
                self.completed += 1
            urls = extract_all_reference_urls(records)
            if urls:
                self.link_statuses = await self.link_cache.check_batch(urls)
        except asyncio.CancelledError:
            if not self.done:
                self._mark_cancelled()
            raise
        except Exception as exc:
            self.status = BackgroundJobStatus.FAILED
            self.error = str(exc)
            logger.warning("background refresh failed: %s", exc)
            _call_hook(self.notify, Notification("error", f"Background refresh failed: {exc}"))
            return
        self.status = BackgroundJobStatus.COMPLETED
        logger.info("background refresh completed (%d countr(ies))", self.completed)
        _call_hook(
            self.notify,
            Notification("success", f"Background refresh completed for {self.completed} countries"),
        )


@dataclass
class RefreshOutcome:
    final_state: RefreshState
    refreshed_ids: Tuple[str, ...] = ()
    records: Dict[str, ComplianceRecord] = field(default_factory=dict)
    link_statuses: Dict[str, Classification] = field(default_factory=dict)
    error: Optional[str] = None
    cause: Optional[BaseException] = None
    background_job: Optional[BackgroundRefreshJob] = None

    @property
    def ok(self) -> bool:
        return self.final_state is not RefreshState.ERRORED


class RefreshOrchestrator:
    """Coordinate the foreground/finalize/background refresh phases."""

    def __init__(
        self,
        provider: ComplianceProvider,
        link_cache: LinkHealthCache,
        visible_source: VisibleSetSource,
        *,
        settings: Optional[RefreshSettings] = None,
        display_names: Optional[Mapping[str, str]] = None,
        notify: Optional[NotifyHook] = None,
    ) -> None:
        self.provider = provider
        self.link_cache = link_cache
        self.visible_source = visible_source
        self.settings = settings or RefreshSettings()
        self.display_names: Dict[str, str] = dict(display_names or {})
        self.notify = notify
        self.state = RefreshState.IDLE
        self.progress = RefreshProgress.idle()
        self.error: Optional[str] = None
        self.background_job: Optional[BackgroundRefreshJob] = None

    def _name(self, country_id: str) -> str:
        return self.display_names.get(country_id, country_id)

    def _emit(self, progress: RefreshProgress, hook: Optional[ProgressHook]) -> None:
        self.progress = progress
        _call_hook(hook, progress)

    def _cancel_background(self) -> None:
        job = self.background_job
        if job is not None and not job.done:
            logger.info("cancelling previous background refresh")
            job.cancel()

    def _background_finished(self, job: BackgroundRefreshJob) -> None:
        if self.background_job is job and self.state is RefreshState.BACKGROUND:
            self.state = RefreshState.IDLE

    async def refresh(self, progress_hook: Optional[ProgressHook] = None) -> RefreshOutcome:
        """Run the foreground and finalize phases, then detach the background job.

        Returns once finalizing is done. A provider failure ends the run in
        ``ERRORED`` (reported on the outcome, not raised); overlapping calls
        raise :class:`RefreshInProgressError`.
        """

        if self.state in (RefreshState.FOREGROUND, RefreshState.FINALIZING):
            raise RefreshInProgressError("a foreground refresh is already running")
        self._cancel_background()
        self.background_job = None
        self.error = None

        visible = _ordered_ids(self.visible_source())
        self.state = RefreshState.FOREGROUND
        try:
            await self._foreground(visible, progress_hook)
            self.state = RefreshState.FINALIZING
            records, statuses = await self._finalize(visible, progress_hook)
            shown = set(visible)
            remaining = sorted(i for i in _ordered_ids(self.provider.list_all_known_ids()) if i not in shown)
        except asyncio.CancelledError:
            self.state = RefreshState.IDLE
            self.progress = RefreshProgress.idle()
            raise
        except Exception as exc:
            return self._fail(exc, progress_hook)

        job = BackgroundRefreshJob(
            self.provider,
            self.link_cache,
            remaining,
            delay=self.settings.background_delay,
            refresh_timeout=self.settings.refresh_timeout,
            notify=self.notify,
        ).start()
        self.background_job = job
        self.state = RefreshState.BACKGROUND
        job.add_done_callback(self._background_finished)
        self.progress = RefreshProgress.idle()
        logger.info(
            "foreground refresh done (%d visible); %d queued for background",
            len(visible),
            len(remaining),
        )
        return RefreshOutcome(
            final_state=RefreshState.BACKGROUND,
            refreshed_ids=tuple(visible),
            records=records,
            link_statuses=statuses,
            background_job=job,
        )

    async def _foreground(self, visible: Sequence[str], hook: Optional[ProgressHook]) -> None:
        total = len(visible)
        self._emit(
            RefreshProgress(0, f"Starting refresh of {total} countries...", RefreshStage.VISIBLE),
            hook,
        )
        for position, country_id in enumerate(visible, start=1):
            await _refresh_entity(self.provider, country_id, self.settings.refresh_timeout)
            self._emit(
                RefreshProgress(
                    _percent(position, total),
                    f"Refreshed {self._name(country_id)} ({position}/{total})",
                    RefreshStage.VISIBLE,
                ),
                hook,
            )

    async def _finalize(
        self,
        visible: Sequence[str],
        hook: Optional[ProgressHook],
    ) -> Tuple[Dict[str, ComplianceRecord], Dict[str, Classification]]:
        self._emit(RefreshProgress(100, "Finalizing updates...", RefreshStage.COMPLETE), hook)
        records: Dict[str, ComplianceRecord] = {}
        for country_id in visible:
            record = self.provider.get_record(country_id)
            if record is None:
                record = self.provider.generate_fallback(self._name(country_id), country_id)
            records[country_id] = record
        urls = extract_all_reference_urls(records.values())
        statuses: Dict[str, Classification] = {}
        if urls:
            snapshot = await self.link_cache.check_batch(urls)
            for url in urls:
                key = normalize(url)
                if key in snapshot:
                    statuses[key] = snapshot[key]
        return records, statuses

    def _fail(self, exc: Exception, hook: Optional[ProgressHook]) -> RefreshOutcome:
        self.state = RefreshState.ERRORED
        self.error = FAILURE_MESSAGE
        if isinstance(exc, ProviderRefreshFailure):
            logger.warning("foreground refresh aborted at %s: %s", exc.country_id, exc.cause)
        else:
            logger.warning("foreground refresh aborted: %s", exc)
        self._emit(RefreshProgress.idle(), hook)
        self.state = RefreshState.IDLE
        return RefreshOutcome(final_state=RefreshState.ERRORED, error=self.error, cause=exc)

    async def updates(self) -> AsyncIterator[RefreshProgress]:
        """Run one refresh and yield its progress updates in order.

        Closing the iterator early cancels the foreground phase.
        """

        queue: "asyncio.Queue[Optional[RefreshProgress]]" = asyncio.Queue()
        task = asyncio.create_task(self.refresh(progress_hook=queue.put_nowait))
        task.add_done_callback(lambda _task: queue.put_nowait(None))
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
        finally:
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
        task.result()


__all__ = [
    "BackgroundJobStatus",
    "BackgroundRefreshJob",
    "Notification",
    "ProviderRefreshFailure",
    "RefreshInProgressError",
    "RefreshOrchestrator",
    "RefreshOutcome",
    "RefreshProgress",
    "RefreshStage",
    "RefreshState",
    "VisibleSetSource",
    "FAILURE_MESSAGE",
]
