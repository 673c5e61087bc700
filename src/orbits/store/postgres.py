"""asyncpg-backed :class:`~orbits.store.base.RecordStore`.

Collection and column names are validated as SQL identifiers before they are
interpolated; every value is a bound parameter.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

import asyncpg

from orbits.store.base import DuplicateRecordError, Record, RecordNotFoundError, StoreError

logger = logging.getLogger(__name__)

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SCHEMA_DDL = (
    """
    CREATE TABLE IF NOT EXISTS orbit (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL,
        name TEXT NOT NULL,
        interval_days INT NOT NULL,
        slack_days INT NOT NULL DEFAULT 0,
        position INT NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS person (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL,
        contact_identifier TEXT NOT NULL,
        phone_number TEXT,
        email_address TEXT,
        display_name TEXT,
        photo_hash TEXT,
        photo_available BOOLEAN NOT NULL DEFAULT false,
        orbit_id UUID REFERENCES orbit(id) ON DELETE SET NULL,
        unread_count INT NOT NULL DEFAULT 0,
        last_message_at TIMESTAMPTZ,
        chat_guid TEXT,
        needs_response BOOLEAN NOT NULL DEFAULT false,
        needs_response_marked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT person_user_contact_key UNIQUE (user_id, contact_identifier)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_config (
        user_id UUID PRIMARY KEY,
        cadence_minutes INT NOT NULL DEFAULT 60,
        last_run_at TIMESTAMPTZ,
        last_contact_scan_at TIMESTAMPTZ,
        last_unread_scan_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the Orbits tables when they do not exist yet."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in SCHEMA_DDL:
                await conn.execute(statement)
    logger.info("Orbits schema ensured")


def _ident(name: str) -> str:
    if _IDENTIFIER_PATTERN.fullmatch(name) is None:
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def _wrap_error(exc: asyncpg.PostgresError, collection: str) -> StoreError:
    if isinstance(exc, asyncpg.UniqueViolationError):
        return DuplicateRecordError(f"Duplicate record in {collection}: {exc}")
    return StoreError(f"Store operation on {collection} failed: {exc}")


def _common_columns(records: Sequence[Mapping[str, Any]]) -> list[str]:
    columns = list(records[0].keys())
    for record in records[1:]:
        if list(record.keys()) != columns:
            raise ValueError("All records in one write must share the same columns")
    return columns


def _values_clause(
    records: Sequence[Mapping[str, Any]], columns: list[str]
) -> tuple[str, list[Any]]:
    args: list[Any] = []
    groups: list[str] = []
    for record in records:
        placeholders = []
        for column in columns:
            args.append(record[column])
            placeholders.append(f"${len(args)}")
        groups.append(f"({', '.join(placeholders)})")
    return ", ".join(groups), args


class PostgresRecordStore:
    """Record store over an asyncpg pool (one table per collection)."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def select(
        self,
        collection: str,
        *,
        filters: Mapping[str, Any] | None = None,
        in_filters: Mapping[str, Sequence[Any]] | None = None,
        columns: Sequence[str] | None = None,
        order_by: str | None = None,
    ) -> list[Record]:
        projection = ", ".join(_ident(c) for c in columns) if columns else "*"
        clauses: list[str] = []
        args: list[Any] = []
        for column, value in (filters or {}).items():
            args.append(value)
            clauses.append(f"{_ident(column)} = ${len(args)}")
        for column, values in (in_filters or {}).items():
            args.append(list(values))
            clauses.append(f"{_ident(column)} = ANY(${len(args)})")

        query = f"SELECT {projection} FROM {_ident(collection)}"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        if order_by:
            query += f" ORDER BY {_ident(order_by)}"

        try:
            rows = await self._pool.fetch(query, *args)
        except asyncpg.PostgresError as exc:
            raise _wrap_error(exc, collection) from exc
        return [dict(row) for row in rows]

    async def insert(self, collection: str, records: Sequence[Mapping[str, Any]]) -> list[Record]:
        if not records:
            return []
        columns = _common_columns(records)
        values, args = _values_clause(records, columns)
        query = (
            f"INSERT INTO {_ident(collection)} ({', '.join(_ident(c) for c in columns)}) "
            f"VALUES {values} RETURNING *"
        )
        try:
            rows = await self._pool.fetch(query, *args)
        except asyncpg.PostgresError as exc:
            raise _wrap_error(exc, collection) from exc
        return [dict(row) for row in rows]

    async def update(
        self,
        collection: str,
        record: Mapping[str, Any],
        *,
        key: str = "id",
    ) -> Record:
        if key not in record:
            raise ValueError(f"Record is missing key column {key!r}")
        assignments: list[str] = []
        args: list[Any] = []
        for column, value in record.items():
            if column == key:
                continue
            args.append(value)
            assignments.append(f"{_ident(column)} = ${len(args)}")
        if not assignments:
            raise ValueError("Update record has no columns besides the key")
        args.append(record[key])
        query = (
            f"UPDATE {_ident(collection)} SET {', '.join(assignments)} "
            f"WHERE {_ident(key)} = ${len(args)} RETURNING *"
        )
        try:
            row = await self._pool.fetchrow(query, *args)
        except asyncpg.PostgresError as exc:
            raise _wrap_error(exc, collection) from exc
        if row is None:
            raise RecordNotFoundError(f"No {collection} row with {key}={record[key]!r}")
        return dict(row)

    async def upsert(
        self,
        collection: str,
        records: Sequence[Mapping[str, Any]],
        *,
        conflict_keys: Sequence[str],
        ignore_duplicates: bool = False,
    ) -> list[Record]:
        if not records:
            return []
        if not conflict_keys:
            raise ValueError("conflict_keys must not be empty")
        columns = _common_columns(records)
        values, args = _values_clause(records, columns)
        conflict = ", ".join(_ident(c) for c in conflict_keys)
        updatable = [c for c in columns if c not in conflict_keys and c != "id"]
        if ignore_duplicates or not updatable:
            action = "DO NOTHING"
        else:
            action = "DO UPDATE SET " + ", ".join(
                f"{_ident(c)} = EXCLUDED.{_ident(c)}" for c in updatable
            )
        query = (
            f"INSERT INTO {_ident(collection)} ({', '.join(_ident(c) for c in columns)}) "
            f"VALUES {values} ON CONFLICT ({conflict}) {action} RETURNING *"
        )
        try:
            rows = await self._pool.fetch(query, *args)
        except asyncpg.PostgresError as exc:
            raise _wrap_error(exc, collection) from exc
        return [dict(row) for row in rows]
