"""Shared fixtures for the Orbits test suite.

- ``memory_store``: an in-memory :class:`~orbits.store.base.RecordStore` with
  uniqueness checks and write-failure injection.
- ``message_archive`` / ``address_book``: builders for SQLite fixture
  databases shaped like the macOS Messages archive and AddressBook stores.
- ``postgres_container`` / ``provisioned_postgres_pool``: a shared Postgres
  testcontainer and a fresh database per usage.
"""

from __future__ import annotations

import shutil
import sqlite3
import uuid
from collections.abc import AsyncIterator, Callable, Iterator, Mapping, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager, closing
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from orbits.store.base import DuplicateRecordError, Record, RecordNotFoundError, StoreError

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

# Natural keys enforced by the in-memory store, mirroring the SQL schema.
_UNIQUE_KEYS: dict[str, tuple[str, ...]] = {
    "person": ("user_id", "contact_identifier"),
    "sync_config": ("user_id",),
    "orbit": ("id",),
}


# ---------------------------------------------------------------------------
# In-memory record store
# ---------------------------------------------------------------------------


class InMemoryRecordStore:
    """Dict-backed record store.

    ``failing_identifiers`` makes any insert/upsert touching one of those
    ``contact_identifier`` values raise :class:`StoreError` for the whole call;
    ``failing_updates`` does the same for point updates.
    """

    def __init__(self) -> None:
        self.collections: dict[str, list[Record]] = {}
        self.failing_identifiers: set[str] = set()
        self.failing_updates: set[str] = set()
        self.insert_calls: list[int] = []

    def rows(self, collection: str) -> list[Record]:
        return self.collections.setdefault(collection, [])

    def seed(self, collection: str, *records: Mapping[str, Any]) -> None:
        self.rows(collection).extend(dict(record) for record in records)

    def _key(self, collection: str, record: Mapping[str, Any]) -> tuple | None:
        columns = _UNIQUE_KEYS.get(collection)
        if columns is None:
            return None
        return tuple(record.get(column) for column in columns)

    def _find(self, collection: str, key: tuple) -> Record | None:
        for row in self.rows(collection):
            if self._key(collection, row) == key:
                return row
        return None

    def _check_failures(self, records: Sequence[Mapping[str, Any]]) -> None:
        for record in records:
            if record.get("contact_identifier") in self.failing_identifiers:
                raise StoreError(f"injected failure for {record['contact_identifier']}")

    async def select(
        self,
        collection: str,
        *,
        filters: Mapping[str, Any] | None = None,
        in_filters: Mapping[str, Sequence[Any]] | None = None,
        columns: Sequence[str] | None = None,
        order_by: str | None = None,
    ) -> list[Record]:
        matched = []
        for row in self.rows(collection):
            if any(row.get(c) != v for c, v in (filters or {}).items()):
                continue
            if any(row.get(c) not in list(vs) for c, vs in (in_filters or {}).items()):
                continue
            matched.append(row)
        if order_by:
            matched.sort(key=lambda row: row[order_by])
        if columns:
            return [{c: row.get(c) for c in columns} for row in matched]
        return [dict(row) for row in matched]

    async def insert(self, collection: str, records: Sequence[Mapping[str, Any]]) -> list[Record]:
        self.insert_calls.append(len(records))
        self._check_failures(records)
        seen: set[tuple] = set()
        for record in records:
            key = self._key(collection, record)
            if key is None:
                continue
            if key in seen or self._find(collection, key) is not None:
                raise DuplicateRecordError(f"Duplicate record in {collection}: {key}")
            seen.add(key)
        stored = [dict(record) for record in records]
        self.rows(collection).extend(stored)
        return [dict(row) for row in stored]

    async def update(
        self,
        collection: str,
        record: Mapping[str, Any],
        *,
        key: str = "id",
    ) -> Record:
        for row in self.rows(collection):
            if row.get(key) == record[key]:
                if row.get("contact_identifier") in self.failing_updates:
                    raise StoreError(f"injected update failure for {row['contact_identifier']}")
                row.update(record)
                return dict(row)
        raise RecordNotFoundError(f"No {collection} row with {key}={record[key]!r}")

    async def upsert(
        self,
        collection: str,
        records: Sequence[Mapping[str, Any]],
        *,
        conflict_keys: Sequence[str],
        ignore_duplicates: bool = False,
    ) -> list[Record]:
        self._check_failures(records)
        written: list[Record] = []
        for record in records:
            key = tuple(record.get(column) for column in conflict_keys)
            current = next(
                (
                    row
                    for row in self.rows(collection)
                    if tuple(row.get(column) for column in conflict_keys) == key
                ),
                None,
            )
            if current is None:
                stored = dict(record)
                self.rows(collection).append(stored)
                written.append(dict(stored))
            elif not ignore_duplicates:
                current.update(
                    {c: v for c, v in record.items() if c not in conflict_keys and c != "id"}
                )
                written.append(dict(current))
        return written


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


# ---------------------------------------------------------------------------
# SQLite fixture databases
# ---------------------------------------------------------------------------

_MESSAGE_ARCHIVE_SCHEMA = """
    CREATE TABLE chat (
        ROWID INTEGER PRIMARY KEY AUTOINCREMENT,
        guid TEXT NOT NULL,
        display_name TEXT,
        last_read_message_timestamp INTEGER DEFAULT 0
    );
    CREATE TABLE handle (ROWID INTEGER PRIMARY KEY AUTOINCREMENT, id TEXT NOT NULL);
    CREATE TABLE message (
        ROWID INTEGER PRIMARY KEY AUTOINCREMENT,
        date INTEGER,
        is_from_me INTEGER DEFAULT 0,
        is_read INTEGER DEFAULT 0
    );
    CREATE TABLE chat_message_join (chat_id INTEGER, message_id INTEGER);
    CREATE TABLE chat_handle_join (chat_id INTEGER, handle_id INTEGER);
"""


class MessageArchiveBuilder:
    """Writes a minimal ``chat.db`` with the tables the archive reader queries."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._handles: dict[str, int] = {}
        with closing(sqlite3.connect(path)) as conn:
            conn.executescript(_MESSAGE_ARCHIVE_SCHEMA)

    def add_chat(
        self,
        guid: str,
        handles: Sequence[str],
        *,
        display_name: str | None = None,
        last_read: int = 0,
    ) -> int:
        with closing(sqlite3.connect(self.path)) as conn, conn:
            chat_id = conn.execute(
                "INSERT INTO chat (guid, display_name, last_read_message_timestamp) "
                "VALUES (?, ?, ?)",
                (guid, display_name, last_read),
            ).lastrowid
            for handle in handles:
                if handle not in self._handles:
                    self._handles[handle] = conn.execute(
                        "INSERT INTO handle (id) VALUES (?)", (handle,)
                    ).lastrowid
                conn.execute(
                    "INSERT INTO chat_handle_join (chat_id, handle_id) VALUES (?, ?)",
                    (chat_id, self._handles[handle]),
                )
        return chat_id

    def add_message(
        self,
        chat_id: int,
        date: int,
        *,
        is_from_me: bool = False,
        is_read: bool = True,
    ) -> None:
        with closing(sqlite3.connect(self.path)) as conn, conn:
            message_id = conn.execute(
                "INSERT INTO message (date, is_from_me, is_read) VALUES (?, ?, ?)",
                (date, int(is_from_me), int(is_read)),
            ).lastrowid
            conn.execute(
                "INSERT INTO chat_message_join (chat_id, message_id) VALUES (?, ?)",
                (chat_id, message_id),
            )


_ADDRESS_BOOK_SCHEMA = """
    CREATE TABLE Z_PRIMARYKEY (
        Z_ENT INTEGER PRIMARY KEY,
        Z_NAME VARCHAR,
        Z_SUPER INTEGER,
        Z_MAX INTEGER
    );
    INSERT INTO Z_PRIMARYKEY (Z_ENT, Z_NAME, Z_SUPER, Z_MAX) VALUES
        (19, 'ABCDRecord', 0, 0),
        (20, 'ABCDContact', 19, 0),
        (21, 'ABCDContainer', 19, 0),
        (22, 'ABCDGroup', 19, 0);
    CREATE TABLE ZABCDRECORD (
        Z_PK INTEGER PRIMARY KEY AUTOINCREMENT,
        Z_ENT INTEGER,
        ZUNIQUEID TEXT,
        ZFIRSTNAME TEXT,
        ZLASTNAME TEXT,
        ZORGANIZATION TEXT,
        ZTHUMBNAILIMAGEDATA BLOB
    );
    CREATE TABLE ZABCDPHONENUMBER (
        Z_PK INTEGER PRIMARY KEY AUTOINCREMENT,
        ZOWNER INTEGER,
        ZFULLNUMBER TEXT,
        ZORDERINGINDEX INTEGER
    );
    CREATE TABLE ZABCDEMAILADDRESS (
        Z_PK INTEGER PRIMARY KEY AUTOINCREMENT,
        ZOWNER INTEGER,
        ZADDRESS TEXT,
        ZORDERINGINDEX INTEGER
    );
"""


# Z_ENT values matching the Z_PRIMARYKEY rows above.
_CONTACT_ENTITY = 20
_CONTAINER_ENTITY = 21
_GROUP_ENTITY = 22


class AddressBookBuilder:
    """Writes ``Sources/<source>/AddressBook-v22.abcddb`` stores under *root*."""

    def __init__(self, root: Path) -> None:
        self.root = root
        (root / "Sources").mkdir(parents=True, exist_ok=True)

    def store_path(self, source: str) -> Path:
        path = self.root / "Sources" / source / "AddressBook-v22.abcddb"
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            with closing(sqlite3.connect(path)) as conn:
                conn.executescript(_ADDRESS_BOOK_SCHEMA)
        return path

    def add_contact(
        self,
        identifier: str,
        *,
        first: str | None = None,
        last: str | None = None,
        organization: str | None = None,
        phones: Sequence[str] = (),
        emails: Sequence[str] = (),
        photo: bytes | None = None,
        source: str = "account-1",
    ) -> None:
        with closing(sqlite3.connect(self.store_path(source))) as conn, conn:
            pk = conn.execute(
                "INSERT INTO ZABCDRECORD "
                "(Z_ENT, ZUNIQUEID, ZFIRSTNAME, ZLASTNAME, ZORGANIZATION, ZTHUMBNAILIMAGEDATA) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (_CONTACT_ENTITY, identifier, first, last, organization, photo),
            ).lastrowid
            for index, phone in enumerate(phones):
                conn.execute(
                    "INSERT INTO ZABCDPHONENUMBER (ZOWNER, ZFULLNUMBER, ZORDERINGINDEX) "
                    "VALUES (?, ?, ?)",
                    (pk, phone, index),
                )
            for index, email in enumerate(emails):
                conn.execute(
                    "INSERT INTO ZABCDEMAILADDRESS (ZOWNER, ZADDRESS, ZORDERINGINDEX) "
                    "VALUES (?, ?, ?)",
                    (pk, email, index),
                )

    def add_group(self, identifier: str, *, source: str = "account-1") -> None:
        self._add_entity(_GROUP_ENTITY, identifier, source)

    def add_container(self, identifier: str, *, source: str = "account-1") -> None:
        self._add_entity(_CONTAINER_ENTITY, identifier, source)

    def _add_entity(self, entity: int, identifier: str, source: str) -> None:
        with closing(sqlite3.connect(self.store_path(source))) as conn, conn:
            conn.execute(
                "INSERT INTO ZABCDRECORD (Z_ENT, ZUNIQUEID) VALUES (?, ?)",
                (entity, identifier),
            )


@pytest.fixture
def message_archive(tmp_path: Path) -> MessageArchiveBuilder:
    return MessageArchiveBuilder(tmp_path / "chat.db")


@pytest.fixture
def address_book(tmp_path: Path) -> AddressBookBuilder:
    return AddressBookBuilder(tmp_path / "AddressBook")


# ---------------------------------------------------------------------------
# Postgres testcontainer
# ---------------------------------------------------------------------------


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each ``provisioned_postgres_pool`` usage provisions a new database with a
    random name, so rows and schemas never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh database and asyncpg pool for a single test usage.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from orbits.db import Database

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
