"""Generic record-store contract used by the sync engine.

Records are plain ``dict`` rows keyed by column name, grouped into named
collections (``person``, ``orbit``, ``sync_config``). The typed mapping to
:class:`orbits.models.Person` lives in :mod:`orbits.store.people`.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

Record = dict[str, Any]


class StoreError(RuntimeError):
    """Base remote-store error."""


class DuplicateRecordError(StoreError):
    """Raised when a write violates a uniqueness constraint."""


class RecordNotFoundError(StoreError):
    """Raised when a point update matches no row."""


class RecordStore(Protocol):
    """Select/insert/update/upsert over named record collections."""

    async def select(
        self,
        collection: str,
        *,
        filters: Mapping[str, Any] | None = None,
        in_filters: Mapping[str, Sequence[Any]] | None = None,
        columns: Sequence[str] | None = None,
        order_by: str | None = None,
    ) -> list[Record]:
        """Return rows matching every equality and membership filter."""
        ...

    async def insert(self, collection: str, records: Sequence[Mapping[str, Any]]) -> list[Record]:
        """Insert all records atomically and return the stored rows."""
        ...

    async def update(
        self,
        collection: str,
        record: Mapping[str, Any],
        *,
        key: str = "id",
    ) -> Record:
        """Update the row identified by ``record[key]`` and return it."""
        ...

    async def upsert(
        self,
        collection: str,
        records: Sequence[Mapping[str, Any]],
        *,
        conflict_keys: Sequence[str],
        ignore_duplicates: bool = False,
    ) -> list[Record]:
        """Insert records, updating (or skipping) rows that collide on *conflict_keys*."""
        ...
