"""Typed mapping between the ``person``/``orbit``/``sync_config`` rows and models.

This is the only module that knows collection and column names; the sync
engine works purely on :class:`~orbits.models.Person`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

from orbits.models import Orbit, Person, SyncConfigRecord
from orbits.store.base import Record, RecordStore

logger = logging.getLogger(__name__)

PERSON = "person"
ORBIT = "orbit"
SYNC_CONFIG = "sync_config"
PERSON_NATURAL_KEY = ("user_id", "contact_identifier")

# Columns written to the store; the joined ``orbit`` object is read-only.
PERSON_COLUMNS = (
    "id",
    "user_id",
    "contact_identifier",
    "phone_number",
    "email_address",
    "display_name",
    "photo_hash",
    "photo_available",
    "orbit_id",
    "unread_count",
    "last_message_at",
    "chat_guid",
    "needs_response",
    "needs_response_marked_at",
    "created_at",
    "updated_at",
)


def person_to_row(person: Person) -> Record:
    data = person.model_dump()
    return {column: data[column] for column in PERSON_COLUMNS}


def row_to_person(row: Record, orbit: Orbit | None = None) -> Person:
    values = {column: row[column] for column in PERSON_COLUMNS if column in row}
    values["unread_count"] = values.get("unread_count") or 0
    return Person(**values, orbit=orbit)


def row_to_orbit(row: Record) -> Orbit:
    return Orbit(**row)


class PersonRepository:
    """Person, orbit and sync-config persistence over a :class:`RecordStore`."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def list_for_user(self, user_id: uuid.UUID) -> list[Person]:
        """All of a user's people, each with its assigned orbit attached."""
        rows = await self._store.select(PERSON, filters={"user_id": user_id})
        orbit_ids = sorted({row["orbit_id"] for row in rows if row.get("orbit_id")}, key=str)
        orbits: dict[Any, Orbit] = {}
        if orbit_ids:
            orbit_rows = await self._store.select(ORBIT, in_filters={"id": orbit_ids})
            orbits = {row["id"]: row_to_orbit(row) for row in orbit_rows}
        return [row_to_person(row, orbits.get(row.get("orbit_id"))) for row in rows]

    async def list_orbits(self, user_id: uuid.UUID) -> list[Orbit]:
        rows = await self._store.select(ORBIT, filters={"user_id": user_id}, order_by="position")
        return [row_to_orbit(row) for row in rows]

    async def get(self, person_id: uuid.UUID) -> Person | None:
        rows = await self._store.select(PERSON, filters={"id": person_id})
        return row_to_person(rows[0]) if rows else None

    async def existing_identifiers(
        self, user_id: uuid.UUID, identifiers: Iterable[str]
    ) -> set[str]:
        wanted = list(identifiers)
        if not wanted:
            return set()
        rows = await self._store.select(
            PERSON,
            filters={"user_id": user_id},
            in_filters={"contact_identifier": wanted},
            columns=["contact_identifier"],
        )
        return {row["contact_identifier"] for row in rows}

    async def update(self, person: Person) -> Person:
        row = await self._store.update(PERSON, person_to_row(person), key="id")
        return row_to_person(row, person.orbit)

    async def insert(self, person: Person) -> Person:
        rows = await self._store.insert(PERSON, [person_to_row(person)])
        return row_to_person(rows[0])

    async def insert_many(self, people: Sequence[Person]) -> list[Person]:
        rows = await self._store.insert(PERSON, [person_to_row(p) for p in people])
        return [row_to_person(row) for row in rows]

    async def upsert_many(
        self, people: Sequence[Person], *, ignore_duplicates: bool = True
    ) -> list[Person]:
        rows = await self._store.upsert(
            PERSON,
            [person_to_row(p) for p in people],
            conflict_keys=PERSON_NATURAL_KEY,
            ignore_duplicates=ignore_duplicates,
        )
        return [row_to_person(row) for row in rows]

    async def set_needs_response(
        self,
        person_id: uuid.UUID,
        needs_response: bool,
        *,
        now: datetime | None = None,
    ) -> Person:
        marked_at = (now or datetime.now(UTC)) if needs_response else None
        row = await self._store.update(
            PERSON,
            {
                "id": person_id,
                "needs_response": needs_response,
                "needs_response_marked_at": marked_at,
            },
        )
        return row_to_person(row)

    async def get_sync_config(self, user_id: uuid.UUID) -> SyncConfigRecord | None:
        rows = await self._store.select(SYNC_CONFIG, filters={"user_id": user_id})
        return SyncConfigRecord(**rows[0]) if rows else None

    async def save_sync_config(self, record: SyncConfigRecord) -> None:
        await self._store.upsert(
            SYNC_CONFIG,
            [record.model_dump()],
            conflict_keys=("user_id",),
        )
