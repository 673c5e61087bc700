"""Contact directory reader over the macOS AddressBook stores.

Every account (iCloud, Google, On My Mac, ...) keeps its own
``Sources/<id>/AddressBook-v22.abcddb`` SQLite store; each one is treated as a
container and the reader returns the union of their records. Only a fixed,
minimal projection is read: identifier, names, organization, phones, emails
and the thumbnail photo.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections import defaultdict
from collections.abc import Iterable
from contextlib import closing
from pathlib import Path

from orbits.models import ContactRecord
from orbits.sync.normalize import normalize_email, normalize_phone

logger = logging.getLogger(__name__)

DEFAULT_CONTACTS_ROOT = Path.home() / "Library" / "Application Support" / "AddressBook"
ADDRESS_BOOK_FILENAME = "AddressBook-v22.abcddb"

# ZABCDRECORD also stores groups and account containers; Z_PRIMARYKEY names each Z_ENT.
NON_PERSON_ENTITIES = ("ABCDGroup", "ABCDContainer")

_RECORDS_QUERY = """
    SELECT
        Z_PK AS pk,
        ZUNIQUEID AS identifier,
        ZFIRSTNAME AS given_name,
        ZLASTNAME AS family_name,
        ZORGANIZATION AS organization_name,
        ZTHUMBNAILIMAGEDATA AS photo_data
    FROM ZABCDRECORD
    WHERE ZUNIQUEID IS NOT NULL
      AND (
        Z_ENT IS NULL
        OR Z_ENT NOT IN (SELECT Z_ENT FROM Z_PRIMARYKEY WHERE Z_NAME IN ({non_person}))
      )
    ORDER BY Z_PK
""".format(non_person=", ".join(f"'{name}'" for name in NON_PERSON_ENTITIES))

_PHONES_QUERY = """
    SELECT ZOWNER AS owner, ZFULLNUMBER AS value
    FROM ZABCDPHONENUMBER
    WHERE ZFULLNUMBER IS NOT NULL AND ZOWNER IS NOT NULL
    ORDER BY ZOWNER, ZORDERINGINDEX, Z_PK
"""

_EMAILS_QUERY = """
    SELECT ZOWNER AS owner, ZADDRESS AS value
    FROM ZABCDEMAILADDRESS
    WHERE ZADDRESS IS NOT NULL AND ZOWNER IS NOT NULL
    ORDER BY ZOWNER, ZORDERINGINDEX, Z_PK
"""


class DirectoryAccessError(RuntimeError):
    """Raised when a contacts container cannot be listed or read."""


class ContactDirectoryReader:
    """Enumerates every contact across all local AddressBook containers."""

    def __init__(self, root: Path = DEFAULT_CONTACTS_ROOT) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def list_containers(self) -> list[Path]:
        sources = self._root / "Sources"
        try:
            if sources.is_dir():
                containers = sorted(
                    entry / ADDRESS_BOOK_FILENAME
                    for entry in sources.iterdir()
                    if (entry / ADDRESS_BOOK_FILENAME).is_file()
                )
                if containers:
                    return containers
        except OSError as exc:
            raise DirectoryAccessError(f"Cannot list contact containers in {sources}: {exc}") from exc

        fallback = self._root / ADDRESS_BOOK_FILENAME
        return [fallback] if fallback.is_file() else []

    def read_container(self, path: Path) -> list[ContactRecord]:
        container = path.parent.name
        try:
            conn = sqlite3.connect(f"{path.resolve().as_uri()}?mode=ro", uri=True)
        except sqlite3.Error as exc:
            raise DirectoryAccessError(f"Cannot open contacts store {path}: {exc}") from exc

        with closing(conn):
            conn.row_factory = sqlite3.Row
            try:
                records = conn.execute(_RECORDS_QUERY).fetchall()
                phones = _group_by_owner(conn.execute(_PHONES_QUERY).fetchall())
                emails = _group_by_owner(conn.execute(_EMAILS_QUERY).fetchall())
            except sqlite3.Error as exc:
                raise DirectoryAccessError(f"Cannot read contacts store {path}: {exc}") from exc

        contacts: list[ContactRecord] = []
        for row in records:
            photo = row["photo_data"]
            photo_bytes = bytes(photo) if photo else None
            contacts.append(
                ContactRecord(
                    identifier=row["identifier"],
                    given_name=(row["given_name"] or "").strip(),
                    family_name=(row["family_name"] or "").strip(),
                    organization_name=(row["organization_name"] or "").strip(),
                    phone_numbers=phones.get(row["pk"], []),
                    email_addresses=emails.get(row["pk"], []),
                    photo_data=photo_bytes,
                    photo_available=photo_bytes is not None,
                    container=container,
                )
            )
        return contacts

    def fetch_all_contacts(self) -> list[ContactRecord]:
        contacts: list[ContactRecord] = []
        containers = self.list_containers()
        for path in containers:
            contacts.extend(self.read_container(path))
        logger.info(
            "Read %d contacts from %d container(s) under %s",
            len(contacts),
            len(containers),
            self._root,
        )
        return contacts

    async def fetch_all_contacts_async(self) -> list[ContactRecord]:
        return await asyncio.to_thread(self.fetch_all_contacts)


def build_handle_index(contacts: Iterable[ContactRecord]) -> dict[str, ContactRecord]:
    """Map every raw and normalized phone/email to its contact (last write wins)."""
    index: dict[str, ContactRecord] = {}
    for contact in contacts:
        keys = [*contact.phone_numbers, *map(normalize_phone, contact.phone_numbers)]
        keys += [*contact.email_addresses, *map(normalize_email, contact.email_addresses)]
        for key in keys:
            if key:
                index[key] = contact
    return index


def _group_by_owner(rows: Iterable[sqlite3.Row]) -> dict[int, list[str]]:
    grouped: dict[int, list[str]] = defaultdict(list)
    for row in rows:
        value = (row["value"] or "").strip()
        if value:
            grouped[row["owner"]].append(value)
    return grouped
