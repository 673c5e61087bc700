"""Tests for the typed person/orbit/sync-config repository."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

import pytest

from orbits.models import Person, SyncConfigRecord
from orbits.store.base import DuplicateRecordError, RecordNotFoundError
from orbits.store.people import (
    ORBIT,
    PERSON,
    PERSON_COLUMNS,
    PersonRepository,
    person_to_row,
    row_to_person,
)

pytestmark = pytest.mark.unit

USER_ID = uuid.UUID("00000000-0000-0000-0000-0000000000bb")
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def _person(identifier: str, **overrides) -> Person:
    return Person(
        user_id=overrides.pop("user_id", USER_ID),
        contact_identifier=identifier,
        display_name=overrides.pop("display_name", f"Name {identifier}"),
        **overrides,
    )


class TestRowMapping:
    def test_person_row_has_only_stored_columns(self):
        row = person_to_row(_person("C1"))
        assert tuple(row) == PERSON_COLUMNS
        assert "orbit" not in row

    def test_null_unread_count_defaults_to_zero(self):
        row = person_to_row(_person("C1"))
        row["unread_count"] = None
        assert row_to_person(row).unread_count == 0


class TestPersonRepository:
    async def test_list_for_user_attaches_orbits(self, memory_store):
        orbit_id = uuid.uuid4()
        memory_store.seed(
            ORBIT,
            {"id": orbit_id, "user_id": USER_ID, "name": "Weekly", "interval_days": 7},
        )
        repository = PersonRepository(memory_store)
        await repository.insert_many(
            [
                _person("C1", orbit_id=orbit_id),
                _person("C2"),
                _person("OTHER", user_id=uuid.uuid4()),
            ]
        )

        people = {p.contact_identifier: p for p in await repository.list_for_user(USER_ID)}

        assert set(people) == {"C1", "C2"}
        assert people["C1"].orbit is not None
        assert people["C1"].orbit.name == "Weekly"
        assert people["C2"].orbit is None

    async def test_list_orbits_ordered(self, memory_store):
        memory_store.seed(
            ORBIT,
            {"id": uuid.uuid4(), "user_id": USER_ID, "name": "Monthly", "interval_days": 30,
             "position": 1},
            {"id": uuid.uuid4(), "user_id": USER_ID, "name": "Weekly", "interval_days": 7,
             "position": 0},
        )

        orbits = await PersonRepository(memory_store).list_orbits(USER_ID)

        assert [o.name for o in orbits] == ["Weekly", "Monthly"]

    async def test_get(self, memory_store):
        repository = PersonRepository(memory_store)
        person = await repository.insert(_person("C1"))

        assert (await repository.get(person.id)).contact_identifier == "C1"
        assert await repository.get(uuid.uuid4()) is None

    async def test_existing_identifiers(self, memory_store):
        repository = PersonRepository(memory_store)
        await repository.insert_many([_person("C1"), _person("C2")])

        present = await repository.existing_identifiers(USER_ID, ["C2", "C3"])

        assert present == {"C2"}
        assert await repository.existing_identifiers(USER_ID, []) == set()

    async def test_insert_duplicate_natural_key(self, memory_store):
        repository = PersonRepository(memory_store)
        await repository.insert(_person("C1"))

        with pytest.raises(DuplicateRecordError):
            await repository.insert(_person("C1"))

    async def test_upsert_many_skips_duplicates(self, memory_store):
        repository = PersonRepository(memory_store)
        await repository.insert(_person("C1", display_name="Original"))

        written = await repository.upsert_many([_person("C1", display_name="New"), _person("C2")])

        assert [p.contact_identifier for p in written] == ["C2"]
        (c1,) = [r for r in memory_store.rows(PERSON) if r["contact_identifier"] == "C1"]
        assert c1["display_name"] == "Original"

    async def test_set_needs_response(self, memory_store):
        repository = PersonRepository(memory_store)
        person = await repository.insert(_person("C1"))

        marked = await repository.set_needs_response(person.id, True, now=T0)
        assert marked.needs_response is True
        assert marked.needs_response_marked_at == T0

        cleared = await repository.set_needs_response(person.id, False, now=T0)
        assert cleared.needs_response is False
        assert cleared.needs_response_marked_at is None

    async def test_set_needs_response_unknown_person(self, memory_store):
        with pytest.raises(RecordNotFoundError):
            await PersonRepository(memory_store).set_needs_response(uuid.uuid4(), True)

    async def test_sync_config_round_trip(self, memory_store):
        repository = PersonRepository(memory_store)
        assert await repository.get_sync_config(USER_ID) is None

        await repository.save_sync_config(SyncConfigRecord(user_id=USER_ID, last_run_at=T0))
        await repository.save_sync_config(
            SyncConfigRecord(user_id=USER_ID, cadence_minutes=15, last_run_at=T0)
        )

        record = await repository.get_sync_config(USER_ID)
        assert record.cadence_minutes == 15
        assert record.last_run_at == T0
        assert len(memory_store.rows("sync_config")) == 1
