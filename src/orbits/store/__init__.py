"""Remote record store abstraction and its PostgreSQL implementation."""

from orbits.store.base import (
    DuplicateRecordError,
    Record,
    RecordNotFoundError,
    RecordStore,
    StoreError,
)
from orbits.store.people import PersonRepository
from orbits.store.postgres import PostgresRecordStore, ensure_schema

__all__ = [
    "DuplicateRecordError",
    "PersonRepository",
    "PostgresRecordStore",
    "Record",
    "RecordNotFoundError",
    "RecordStore",
    "StoreError",
    "ensure_schema",
]
