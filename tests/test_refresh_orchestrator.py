import asyncio

import pytest

from reflinks.workflows.link_health import Classification
from reflinks.workflows.reflinks_config import RefreshSettings
from reflinks.workflows.refresh_orchestrator import (
    FAILURE_MESSAGE,
    BackgroundJobStatus,
    BackgroundRefreshJob,
    Notification,
    ProviderRefreshFailure,
    RefreshInProgressError,
    RefreshOrchestrator,
    RefreshProgress,
    RefreshStage,
    RefreshState,
)
from reflinks.workflows.url_normalizer import normalize


def _record(code: str, link: str) -> dict:
    return {"isoCode3": code, "eInvoicing": {"b2g": {"legislation": {"officialLink": link}}}}


RECORDS = {
    "ESP": _record("ESP", "http://boe.es/eli/es/l/2013/12/27/25"),
    "FRA": _record("FRA", "https://www.legifrance.gouv.fr/jorf/id/JORFTEXT000042709476"),
    "ITA": _record("ITA", "https://www.fatturapa.gov.it/it/norme-e-regole/"),
    "DEU": _record("DEU", "https://www.xoev.de/xrechnung"),
    "POL": _record("POL", "https://ksef.podatki.gov.pl/"),
}

NAMES = {"ESP": "Spain", "FRA": "France", "ITA": "Italy", "DEU": "Germany", "POL": "Poland"}


class FakeProvider:
    def __init__(self, records, *, fail_on=(), delays=None):
        self.records = dict(records)
        self.fail_on = set(fail_on)
        self.delays = delays or {}
        self.calls = []

    def get_record(self, country_id):
        return self.records.get(country_id)

    def generate_fallback(self, name, country_id):
        return {"countryId": country_id, "countryName": name, "fallback": True}

    async def refresh(self, country_id, on_progress=None):
        self.calls.append(country_id)
        await asyncio.sleep(self.delays.get(country_id, 0))
        if country_id in self.fail_on:
            raise RuntimeError(f"upstream error for {country_id}")
        return self.records.get(country_id, {})

    def list_all_known_ids(self):
        return set(self.records)


class RecordingLinkCache:
    def __init__(self):
        self.batches = []

    async def check_batch(self, urls):
        batch = set(urls)
        self.batches.append(batch)
        return {normalize(u): Classification.OK for u in batch}


def _orchestrator(provider, visible, *, delay=0.0, timeout=5.0, notes=None):
    return RefreshOrchestrator(
        provider,
        RecordingLinkCache(),
        lambda: list(visible),
        settings=RefreshSettings(background_delay=delay, refresh_timeout=timeout),
        display_names=NAMES,
        notify=(notes.append if notes is not None else None),
    )


def test_visible_progress_then_background():
    provider = FakeProvider(RECORDS)
    notes = []
    orch = _orchestrator(provider, ["ESP", "FRA", "ITA"], notes=notes)
    updates = []

    async def scenario():
        outcome = await orch.refresh(progress_hook=updates.append)
        calls_before_background = list(provider.calls)
        state_after_return = orch.state
        status = await outcome.background_job.wait()
        return outcome, calls_before_background, state_after_return, status

    outcome, calls_before, state_after_return, status = asyncio.run(scenario())

    visible_updates = [u for u in updates if u.stage is RefreshStage.VISIBLE]
    assert [u.percentage for u in visible_updates] == [0, 33, 67, 100]
    assert updates[-1] == RefreshProgress(100, "Finalizing updates...", RefreshStage.COMPLETE)
    assert updates[2].message == "Refreshed France (2/3)"
    percentages = [u.percentage for u in updates]
    assert percentages == sorted(percentages)

    assert calls_before == ["ESP", "FRA", "ITA"]
    assert state_after_return is RefreshState.BACKGROUND
    assert outcome.final_state is RefreshState.BACKGROUND
    assert outcome.ok
    assert outcome.refreshed_ids == ("ESP", "FRA", "ITA")
    assert outcome.link_statuses["https://www.boe.es/eli/es/l/2013/12/27/25"] is Classification.OK
    assert len(outcome.link_statuses) == 3

    assert status is BackgroundJobStatus.COMPLETED
    assert provider.calls == ["ESP", "FRA", "ITA", "DEU", "POL"]
    assert orch.link_cache.batches[1] == {"https://www.xoev.de/xrechnung", "https://ksef.podatki.gov.pl/"}
    assert [n.level for n in notes] == ["success"]
    assert orch.state is RefreshState.IDLE
    assert orch.progress == RefreshProgress.idle()


def test_failure_on_second_visible_country_skips_background():
    provider = FakeProvider(RECORDS, fail_on={"FRA"})
    notes = []
    orch = _orchestrator(provider, ["ESP", "FRA", "ITA"], notes=notes)
    updates = []

    async def scenario():
        outcome = await orch.refresh(progress_hook=updates.append)
        await asyncio.sleep(0.05)
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.final_state is RefreshState.ERRORED
    assert not outcome.ok
    assert outcome.error == FAILURE_MESSAGE
    assert isinstance(outcome.cause, ProviderRefreshFailure)
    assert outcome.cause.country_id == "FRA"
    assert outcome.background_job is None
    assert [u.percentage for u in updates] == [0, 33, 0]
    assert updates[-1] == RefreshProgress.idle()
    assert provider.calls == ["ESP", "FRA"]
    assert orch.link_cache.batches == []
    assert notes == []
    assert orch.state is RefreshState.IDLE
    assert orch.progress.percentage == 0
    assert orch.error == FAILURE_MESSAGE


def test_slow_country_times_out_as_failure():
    provider = FakeProvider(RECORDS, delays={"FRA": 1.0})
    orch = _orchestrator(provider, ["ESP", "FRA"], timeout=0.05)

    outcome = asyncio.run(orch.refresh())

    assert outcome.final_state is RefreshState.ERRORED
    assert isinstance(outcome.cause.cause, TimeoutError)


def test_finalize_falls_back_when_record_missing():
    records = dict(RECORDS)
    provider = FakeProvider(records)
    orch = _orchestrator(provider, ["ESP", "ATL"])

    async def scenario():
        outcome = await orch.refresh()
        outcome.background_job.cancel()
        await outcome.background_job.wait()
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome.records["ATL"] == {"countryId": "ATL", "countryName": "ATL", "fallback": True}
    assert outcome.records["ESP"] is not None


def test_overlapping_foreground_refresh_is_rejected():
    provider = FakeProvider(RECORDS, delays={"ESP": 0.05})
    orch = _orchestrator(provider, ["ESP"], delay=10.0)

    async def scenario():
        first = asyncio.create_task(orch.refresh())
        await asyncio.sleep(0)
        assert orch.state is RefreshState.FOREGROUND
        with pytest.raises(RefreshInProgressError):
            await orch.refresh()
        outcome = await first
        outcome.background_job.cancel()
        await outcome.background_job.wait()
        return outcome

    outcome = asyncio.run(scenario())
    assert outcome.final_state is RefreshState.BACKGROUND
    assert provider.calls == ["ESP"]


def test_new_refresh_cancels_running_background_job():
    provider = FakeProvider(RECORDS)
    notes = []
    orch = _orchestrator(provider, ["ESP"], delay=10.0, notes=notes)

    async def scenario():
        first = await orch.refresh()
        await asyncio.sleep(0)
        assert first.background_job.status is BackgroundJobStatus.PENDING
        second = await orch.refresh()
        first_status = await first.background_job.wait()
        second.background_job.cancel()
        await second.background_job.wait()
        return first_status, second

    first_status, second = asyncio.run(scenario())

    assert first_status is BackgroundJobStatus.CANCELLED
    assert second.background_job.status is BackgroundJobStatus.CANCELLED
    assert provider.calls == ["ESP", "ESP"]
    assert notes and all(n.level == "info" for n in notes)


def test_background_failure_only_notifies():
    provider = FakeProvider(RECORDS, fail_on={"POL"})
    notes = []
    orch = _orchestrator(provider, ["ESP"], notes=notes)

    async def scenario():
        outcome = await orch.refresh()
        status = await outcome.background_job.wait()
        return outcome, status

    outcome, status = asyncio.run(scenario())

    assert outcome.final_state is RefreshState.BACKGROUND
    assert status is BackgroundJobStatus.FAILED
    assert outcome.background_job.error and "POL" in outcome.background_job.error
    assert notes[-1].level == "error"
    assert orch.error is None
    assert orch.state is RefreshState.IDLE


def test_updates_iterator_streams_progress_in_order():
    provider = FakeProvider(RECORDS)
    orch = _orchestrator(provider, ["ITA", "ESP"])

    async def scenario():
        seen = [p async for p in orch.updates()]
        await orch.background_job.wait()
        return seen

    seen = asyncio.run(scenario())

    assert [p.percentage for p in seen] == [0, 50, 100, 100]
    assert [p.stage for p in seen][-1] is RefreshStage.COMPLETE
    assert seen[1].message == "Refreshed Italy (1/2)"


def test_empty_visible_set_refreshes_everything_in_background():
    provider = FakeProvider(RECORDS)
    orch = _orchestrator(provider, [])
    updates = []

    async def scenario():
        outcome = await orch.refresh(progress_hook=updates.append)
        await outcome.background_job.wait()
        return outcome

    outcome = asyncio.run(scenario())

    assert [u.percentage for u in updates] == [0, 100]
    assert outcome.background_job.status is BackgroundJobStatus.COMPLETED
    assert sorted(provider.calls) == sorted(RECORDS)


def test_background_job_progress_snapshot():
    provider = FakeProvider(RECORDS)
    job = BackgroundRefreshJob(provider, RecordingLinkCache(), ["DEU", "POL"])

    async def scenario():
        job.start()
        assert job.progress.percentage == 0
        return await job.wait()

    assert asyncio.run(scenario()) is BackgroundJobStatus.COMPLETED
    assert job.progress.stage is RefreshStage.BACKGROUND
    assert job.progress.percentage == 100
    assert job.cancel() is False


def test_visible_progress_rounds_half_up():
    codes = ["AUT", "BEL", "CZE", "DNK", "EST", "FIN", "GRC", "HUN"]
    provider = FakeProvider({code: _record(code, f"https://example.org/{code.lower()}") for code in codes})
    orch = _orchestrator(provider, codes)
    updates = []

    async def scenario():
        outcome = await orch.refresh(progress_hook=updates.append)
        await outcome.background_job.wait()

    asyncio.run(scenario())

    visible_updates = [u for u in updates if u.stage is RefreshStage.VISIBLE]
    assert [u.percentage for u in visible_updates] == [0, 13, 25, 38, 50, 63, 75, 88, 100]


def test_cancel_before_first_step_notifies():
    notes = []
    provider = FakeProvider(RECORDS)
    job = BackgroundRefreshJob(provider, RecordingLinkCache(), ["DEU", "POL"], notify=notes.append)

    async def scenario():
        job.start()
        assert job.cancel() is True
        assert job.status is BackgroundJobStatus.CANCELLED
        return await job.wait()

    assert asyncio.run(scenario()) is BackgroundJobStatus.CANCELLED
    assert notes == [Notification("info", "Background refresh cancelled")]
    assert provider.calls == []
    assert job.cancel() is False


def test_cancel_unstarted_job_notifies():
    notes = []
    job = BackgroundRefreshJob(FakeProvider(RECORDS), RecordingLinkCache(), ["DEU"], notify=notes.append)

    assert job.cancel() is True
    assert job.status is BackgroundJobStatus.CANCELLED
    assert [n.level for n in notes] == ["info"]
