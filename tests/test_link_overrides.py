import json
from datetime import datetime, timedelta, timezone

import pytest

from reflinks.workflows.link_overrides import (
    JsonFileRepository,
    LinkKind,
    LinkOverrideStore,
    MemoryRepository,
    OverrideRequest,
    OverrideValidationError,
    PersistenceError,
)


class StepClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


def _store(clock=None) -> LinkOverrideStore:
    clock = clock or StepClock(datetime(2025, 1, 10, 9, 0, tzinfo=timezone.utc))
    counter = iter(range(1, 1000))
    return LinkOverrideStore(MemoryRepository(), clock=clock, id_factory=lambda _now: f"id-{next(counter)}")


def _request(**overrides):
    data = {
        "countryCode": "ESP",
        "linkType": "legislation",
        "originalUrl": "https://old.example/es",
        "customUrl": "https://new.example/es",
        "title": "Ley Crea y Crece",
    }
    data.update(overrides)
    return data


def test_create_then_resolve_then_delete_scenario():
    store = _store()
    entry = store.create_or_update(_request())

    assert store.resolve("ESP", "https://old.example/es", "legislation") == "https://new.example/es"
    assert entry.is_active
    assert entry.date_provided == entry.last_updated == "2025-01-10T09:00:00Z"

    assert store.delete(entry.id) is True
    assert store.resolve("ESP", "https://old.example/es", "legislation") is None


def test_create_or_update_twice_keeps_one_active_entry():
    clock = StepClock(datetime(2025, 1, 10, tzinfo=timezone.utc))
    store = _store(clock)
    first = store.create_or_update(_request())
    clock.advance(days=1)
    second = store.create_or_update(_request(customUrl="https://newer.example/es", notes="moved again"))

    assert second.id == first.id
    assert second.custom_url == "https://newer.example/es"
    assert second.notes == "moved again"
    assert second.date_provided == first.date_provided
    assert second.last_updated == "2025-01-11T00:00:00Z"
    active = [e for e in store.list_all() if e.is_active]
    assert len(active) == 1
    assert store.resolve("ESP", "https://old.example/es", LinkKind.LEGISLATION) == "https://newer.example/es"


def test_create_after_delete_starts_a_new_entry():
    store = _store()
    first = store.create_or_update(_request())
    store.delete(first.id)
    second = store.create_or_update(_request(customUrl="https://again.example/es"))

    assert second.id != first.id
    entries = store.list_all()
    assert len(entries) == 2
    assert [e.is_active for e in entries] == [False, True]


def test_delete_unknown_or_inactive_returns_false():
    store = _store()
    entry = store.create_or_update(_request())
    assert store.delete("nope") is False
    assert store.delete(entry.id) is True
    assert store.delete(entry.id) is False


def test_kinds_and_countries_are_separate_keys():
    store = _store()
    store.create_or_update(_request())
    store.create_or_update(_request(linkType="specification", customUrl="https://spec.example/es"))

    assert store.resolve("esp", "https://old.example/es", "legislation") == "https://new.example/es"
    assert store.resolve("ESP", "https://old.example/es", "specification") == "https://spec.example/es"
    assert store.resolve("FRA", "https://old.example/es", "legislation") is None
    assert len(store.list_for_country("ESP")) == 2


def test_validation_errors():
    store = _store()
    with pytest.raises(OverrideValidationError, match="customUrl"):
        store.create_or_update(_request(customUrl="  "))
    with pytest.raises(OverrideValidationError, match="Invalid linkType"):
        store.create_or_update(_request(linkType="blog"))
    assert store.list_all() == []


def test_request_is_trimmed_and_country_uppercased():
    store = _store()
    entry = store.create_or_update(
        OverrideRequest(
            country_code=" esp ",
            link_kind="Legislation",
            original_url=" https://old.example/es ",
            custom_url="https://new.example/es",
            title=" Title ",
        )
    )
    assert entry.country_code == "ESP"
    assert entry.link_kind == "legislation"
    assert entry.original_url == "https://old.example/es"
    assert entry.title == "Title"
    assert entry.notes is None


def test_should_prefer_override_freshness():
    store = _store()  # override provided 2025-01-10T09:00Z
    store.create_or_update(_request())
    args = ("ESP", "https://old.example/es", "legislation")

    assert store.should_prefer_override(*args) is True
    assert store.should_prefer_override(*args, "2025-01-01") is True
    assert store.should_prefer_override(*args, "2025-01-10T09:00:00Z") is True
    assert store.should_prefer_override(*args, "2025-02-01T00:00:00Z") is False
    assert store.should_prefer_override(*args, datetime(2025, 1, 10, 10, tzinfo=timezone.utc)) is False
    assert store.should_prefer_override(*args, "garbage") is False
    assert store.should_prefer_override("ESP", "https://other.example", "legislation") is False


def test_best_url_and_resolution():
    store = _store()
    store.create_or_update(_request())

    assert store.best_url("ESP", "https://old.example/es", "legislation") == "https://new.example/es"
    assert store.best_url("ESP", "https://old.example/es", "legislation", "2026-01-01") == "https://old.example/es"
    assert store.best_url("ESP", "https://unmapped.example", "legislation") == "https://unmapped.example"

    stale = store.resolve_link("ESP", "https://old.example/es", "legislation", "2026-01-01")
    assert stale.has_override is True
    assert stale.custom_url == "https://new.example/es"
    assert stale.prefer_override is False
    assert stale.url == "https://old.example/es"
    assert store.resolve_link("ESP", "https://old.example/es", "legislation").url == "https://new.example/es"


def test_returned_entries_are_copies():
    store = _store()
    entry = store.create_or_update(_request())
    entry.custom_url = "https://tampered.example"
    assert store.resolve("ESP", "https://old.example/es", "legislation") == "https://new.example/es"


def test_json_repository_round_trips_camel_case(tmp_path):
    path = tmp_path / "data" / "custom-links.json"
    store = LinkOverrideStore.from_path(path, id_factory=lambda _now: "abc123")
    store.create_or_update(_request(notes="from ministry site"))

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data[0]["id"] == "abc123"
    assert data[0]["countryCode"] == "ESP"
    assert data[0]["linkType"] == "legislation"
    assert data[0]["isActive"] is True
    assert data[0]["notes"] == "from ministry site"

    reopened = LinkOverrideStore.from_path(path)
    assert reopened.resolve("ESP", "https://old.example/es", "legislation") == "https://new.example/es"


def test_json_repository_missing_file_is_empty(tmp_path):
    repo = JsonFileRepository(tmp_path / "absent.json")
    assert repo.load() == []


def test_json_repository_corrupt_file_raises(tmp_path):
    path = tmp_path / "custom-links.json"
    path.write_text("[{broken", encoding="utf-8")
    store = LinkOverrideStore.from_path(path)
    with pytest.raises(PersistenceError):
        store.resolve("ESP", "https://old.example/es", "legislation")

    path.write_text(json.dumps({"not": "a list"}), encoding="utf-8")
    with pytest.raises(PersistenceError):
        store.list_all()


def test_json_repository_write_failure_raises(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    # parent "directory" is a regular file, so the write cannot happen
    store = LinkOverrideStore.from_path(blocker / "custom-links.json")
    with pytest.raises(PersistenceError):
        store.create_or_update(_request())


def test_legacy_entries_without_last_updated_load(tmp_path):
    path = tmp_path / "custom-links.json"
    path.write_text(
        json.dumps([
            {
                "id": "legacy1",
                "countryCode": "DEU",
                "linkType": "specification",
                "originalUrl": "https://xeinkauf.example/old",
                "customUrl": "https://xeinkauf.example/new",
                "title": "XRechnung",
                "dateProvided": "2024-05-01T00:00:00.000Z",
                "isActive": True,
            }
        ]),
        encoding="utf-8",
    )
    store = LinkOverrideStore.from_path(path)
    [entry] = store.list_all()
    assert entry.last_updated == entry.date_provided
    assert store.should_prefer_override("DEU", "https://xeinkauf.example/old", "specification", "2024-04-30") is True


def _stored(**fields):
    entry = {
        "id": "kept1",
        "countryCode": "FRA",
        "linkType": "legislation",
        "originalUrl": "https://old.example/fr",
        "customUrl": "https://new.example/fr",
        "title": "Loi de finances",
        "dateProvided": "2024-05-01T00:00:00.000Z",
        "isActive": True,
    }
    entry.update(fields)
    return entry


def test_json_repository_rejects_non_object_items(tmp_path):
    path = tmp_path / "custom-links.json"
    path.write_text(json.dumps([_stored(), "junk"]), encoding="utf-8")
    before = path.read_text(encoding="utf-8")
    store = LinkOverrideStore.from_path(path)

    with pytest.raises(PersistenceError):
        store.list_all()
    with pytest.raises(PersistenceError):
        store.create_or_update(_request())
    assert path.read_text(encoding="utf-8") == before


def test_json_repository_rejects_string_is_active(tmp_path):
    path = tmp_path / "custom-links.json"
    path.write_text(json.dumps([_stored(isActive="false")]), encoding="utf-8")
    store = LinkOverrideStore.from_path(path)

    with pytest.raises(PersistenceError):
        store.resolve("FRA", "https://old.example/fr", "legislation")
