"""Person-level operations outside the sync run: unread inbox and reply flags."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from orbits.models import Person
from orbits.store.people import PersonRepository

logger = logging.getLogger(__name__)

_PHONE_FORMATTING = frozenset("+-() ")


class PersonNotFoundError(LookupError):
    """Raised when a person id does not exist."""


def has_saved_name(person: Person) -> bool:
    """False when the display name is missing or is just a formatted number."""
    if not person.display_name:
        return False
    return any(not ch.isdigit() and ch not in _PHONE_FORMATTING for ch in person.display_name)


def _inbox_sort_key(person: Person) -> tuple[bool, float]:
    if person.last_message_at is None:
        return (True, 0.0)
    return (False, -person.last_message_at.timestamp())


class PeopleService:
    def __init__(self, repository: PersonRepository) -> None:
        self._repository = repository

    async def unread_inbox(self, user_id: uuid.UUID) -> list[Person]:
        """People with unread messages or an open reply flag, most recent first."""
        people = await self._repository.list_for_user(user_id)
        inbox = [
            person
            for person in people
            if (person.unread_count > 0 or person.needs_response) and has_saved_name(person)
        ]
        return sorted(inbox, key=_inbox_sort_key)

    async def mark_needs_response(
        self, person_id: uuid.UUID, *, now: datetime | None = None
    ) -> Person:
        return await self._set(person_id, True, now=now)

    async def clear_needs_response(self, person_id: uuid.UUID) -> Person:
        return await self._set(person_id, False)

    async def toggle_needs_response(self, person_id: uuid.UUID) -> Person:
        person = await self._repository.get(person_id)
        if person is None:
            raise PersonNotFoundError(f"No person with id {person_id}")
        return await self._set(person_id, not person.needs_response)

    async def _set(
        self, person_id: uuid.UUID, needs_response: bool, *, now: datetime | None = None
    ) -> Person:
        if await self._repository.get(person_id) is None:
            raise PersonNotFoundError(f"No person with id {person_id}")
        person = await self._repository.set_needs_response(
            person_id, needs_response, now=now or datetime.now(UTC)
        )
        logger.info("Person %s needs_response=%s", person_id, needs_response)
        return person
