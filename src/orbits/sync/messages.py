"""Read-only access to the macOS Messages archive (``chat.db``).

Two query modes are supported:

- ``conversation``: one row per chat with its participant handles, unread
  flag/count and last activity time.
- ``handle``: one row per handle across its one-to-one chats, with aggregate
  unread count, the chat holding the latest message and whether that latest
  message still awaits a reply.

Unread detection is the OR of two signals because each under-reports on
some archive versions: an inbound message with ``is_read = 0``, and an
inbound message dated after the chat's ``last_read_message_timestamp``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from contextlib import closing
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from orbits.models import MessageThreadStat

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_ARCHIVE_PATH = Path.home() / "Library" / "Messages" / "chat.db"

ThreadQueryMode = Literal["conversation", "handle"]

# Seconds between 1970-01-01 and the archive's 2001-01-01 reference date.
APPLE_EPOCH_OFFSET = 978_307_200
_NANOSECOND_THRESHOLD = 1e10
_MIN_VALID_UNIX = 946_684_800  # 2000-01-01
_MAX_VALID_UNIX = 4_102_444_800  # 2100-01-01


class MessageArchiveError(RuntimeError):
    """Base Messages archive error."""


class ArchiveAccessDeniedError(MessageArchiveError):
    """Raised when the archive file is not readable (Full Disk Access missing)."""


class ArchiveQueryError(MessageArchiveError):
    """Raised when the archive cannot be opened or queried."""


def apple_time_to_datetime(raw: float, *, now: datetime | None = None) -> datetime:
    """Convert an archive timestamp to UTC.

    Newer archives store nanoseconds and older ones whole seconds since
    2001-01-01; anything above 1e10 is taken as nanoseconds. Results outside
    2000-2100 are corrupt and are replaced with *now*.
    """
    seconds = raw / 1_000_000_000 if raw > _NANOSECOND_THRESHOLD else float(raw)
    unix_time = seconds + APPLE_EPOCH_OFFSET
    if unix_time < _MIN_VALID_UNIX or unix_time > _MAX_VALID_UNIX:
        return now if now is not None else datetime.now(UTC)
    return datetime.fromtimestamp(unix_time, UTC)


def _optional_timestamp(raw: float | int | None) -> datetime | None:
    if raw is None or raw <= 0:
        return None
    return apple_time_to_datetime(raw)


_MESSAGE_FLAGS_CTE = """
    message_flags AS (
        SELECT
            cmj.chat_id AS chat_rowid,
            m.ROWID AS message_rowid,
            m.date AS date,
            m.is_from_me AS is_from_me,
            CASE
                WHEN m.is_from_me = 0 AND m.is_read = 0 THEN 1
                WHEN m.is_from_me = 0
                     AND c.last_read_message_timestamp > 0
                     AND m.date > c.last_read_message_timestamp THEN 1
                ELSE 0
            END AS is_unread
        FROM chat c
        JOIN chat_message_join cmj ON c.ROWID = cmj.chat_id
        JOIN message m ON m.ROWID = cmj.message_id
    )
"""

CONVERSATION_QUERY = f"""
    WITH {_MESSAGE_FLAGS_CTE},
    chat_unread_info AS (
        SELECT
            c.ROWID AS chat_rowid,
            c.guid AS chat_guid,
            c.display_name AS display_name,
            MAX(mf.date) AS last_message_date,
            MAX(mf.is_unread) AS has_unread,
            SUM(mf.is_unread) AS unread_count
        FROM chat c
        JOIN message_flags mf ON mf.chat_rowid = c.ROWID
        GROUP BY c.ROWID, c.guid, c.display_name
    )
    SELECT
        cui.chat_guid AS chat_guid,
        cui.display_name AS display_name,
        GROUP_CONCAT(DISTINCT h.id) AS participants,
        COUNT(DISTINCT h.id) AS participant_count,
        cui.last_message_date AS last_message_date,
        cui.has_unread AS has_unread,
        cui.unread_count AS unread_count,
        (
            SELECT latest.is_from_me
            FROM message_flags latest
            WHERE latest.chat_rowid = cui.chat_rowid
            ORDER BY latest.date DESC, latest.message_rowid DESC
            LIMIT 1
        ) AS last_is_from_me
    FROM chat_unread_info cui
    LEFT JOIN chat_handle_join chj ON cui.chat_rowid = chj.chat_id
    LEFT JOIN handle h ON h.ROWID = chj.handle_id
    GROUP BY cui.chat_rowid, cui.chat_guid, cui.display_name, cui.last_message_date,
             cui.has_unread, cui.unread_count
    HAVING cui.last_message_date IS NOT NULL
"""

HANDLE_QUERY = f"""
    WITH {_MESSAGE_FLAGS_CTE},
    individual_chats AS (
        SELECT chat_id AS chat_rowid, MIN(handle_id) AS handle_rowid
        FROM chat_handle_join
        GROUP BY chat_id
        HAVING COUNT(DISTINCT handle_id) = 1
    ),
    handle_messages AS (
        SELECT
            h.id AS handle,
            c.guid AS chat_guid,
            mf.message_rowid AS message_rowid,
            mf.date AS date,
            mf.is_from_me AS is_from_me,
            mf.is_unread AS is_unread
        FROM individual_chats ic
        JOIN handle h ON h.ROWID = ic.handle_rowid
        JOIN chat c ON c.ROWID = ic.chat_rowid
        JOIN message_flags mf ON mf.chat_rowid = ic.chat_rowid
    )
    SELECT
        hm.handle AS handle,
        MAX(hm.date) AS last_message_date,
        SUM(hm.is_unread) AS unread_count,
        (
            SELECT latest.chat_guid
            FROM handle_messages latest
            WHERE latest.handle = hm.handle
            ORDER BY latest.date DESC, latest.message_rowid DESC
            LIMIT 1
        ) AS chat_guid,
        (
            SELECT latest.is_from_me
            FROM handle_messages latest
            WHERE latest.handle = hm.handle
            ORDER BY latest.date DESC, latest.message_rowid DESC
            LIMIT 1
        ) AS last_is_from_me
    FROM handle_messages hm
    GROUP BY hm.handle
    HAVING MAX(hm.date) IS NOT NULL
"""


class MessageArchiveReader:
    """Runs aggregate queries against a local Messages archive, read-only."""

    def __init__(self, path: Path = DEFAULT_MESSAGE_ARCHIVE_PATH) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def can_access_database(self) -> bool:
        return self._path.is_file() and os.access(self._path, os.R_OK)

    def access_status(self) -> str:
        if self.can_access_database():
            return "Message access granted"
        return "Full Disk Access required to sync messages"

    def fetch_threads(self, mode: ThreadQueryMode = "conversation") -> list[MessageThreadStat]:
        if mode not in ("conversation", "handle"):
            raise ValueError(f"Unknown thread query mode: {mode!r}")
        if not self.can_access_database():
            raise ArchiveAccessDeniedError(
                f"Cannot access {self._path}. Full Disk Access required."
            )

        query = CONVERSATION_QUERY if mode == "conversation" else HANDLE_QUERY
        try:
            conn = sqlite3.connect(f"{self._path.resolve().as_uri()}?mode=ro", uri=True)
        except sqlite3.Error as exc:
            raise ArchiveQueryError(f"Failed to open message archive: {exc}") from exc

        with closing(conn):
            conn.row_factory = sqlite3.Row
            try:
                rows = conn.execute(query).fetchall()
            except sqlite3.Error as exc:
                raise ArchiveQueryError(f"Message archive query failed ({mode}): {exc}") from exc

        if mode == "conversation":
            threads = [_conversation_row_to_stat(row) for row in rows]
        else:
            threads = [_handle_row_to_stat(row) for row in rows]
        logger.debug("Read %d message thread rows from %s (mode=%s)", len(threads), self._path, mode)
        return threads

    async def fetch_threads_async(
        self, mode: ThreadQueryMode = "conversation"
    ) -> list[MessageThreadStat]:
        return await asyncio.to_thread(self.fetch_threads, mode)

    def fetch_unread_handles(self) -> list[str]:
        """Raw handles of every conversation with unread messages."""
        try:
            threads = self.fetch_threads("conversation")
        except MessageArchiveError as exc:
            logger.warning("Could not read unread message handles: %s", exc)
            return []
        return [handle for thread in threads if thread.has_unread for handle in thread.handles]


def _conversation_row_to_stat(row: sqlite3.Row) -> MessageThreadStat:
    participants = row["participants"] or ""
    handles = [handle for handle in participants.split(",") if handle]
    return MessageThreadStat(
        chat_guid=row["chat_guid"],
        handles=handles,
        display_name=row["display_name"] or None,
        is_group=int(row["participant_count"] or 0) > 1,
        has_unread=bool(row["has_unread"]),
        unread_count=int(row["unread_count"] or 0),
        needs_response=row["last_is_from_me"] == 0,
        last_message_at=_optional_timestamp(row["last_message_date"]),
    )


def _handle_row_to_stat(row: sqlite3.Row) -> MessageThreadStat:
    unread_count = int(row["unread_count"] or 0)
    return MessageThreadStat(
        chat_guid=row["chat_guid"],
        handles=[row["handle"]],
        is_group=False,
        has_unread=unread_count > 0,
        unread_count=unread_count,
        needs_response=row["last_is_from_me"] == 0,
        last_message_at=_optional_timestamp(row["last_message_date"]),
    )
