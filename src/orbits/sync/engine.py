"""Reconciliation and sync engine.

One run walks ``idle → auth_check → permission_check → ingest → enrich →
reconcile → persist → done`` and lands in ``failed`` on any fatal error.
Only the persist phase writes to the remote store. Runs are not re-entrant:
a second concurrent :meth:`SyncEngine.run` is refused.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal, Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from orbits.core.logging import set_sync_user
from orbits.core.telemetry import get_tracer
from orbits.models import ContactRecord, MessageThreadStat, Person, SyncConfigRecord
from orbits.store.base import StoreError
from orbits.store.people import PersonRepository
from orbits.sync.enrichment import EnrichmentEngine
from orbits.sync.messages import MessageArchiveError, ThreadQueryMode
from orbits.sync.permissions import PermissionStatus
from orbits.sync.session import SessionProvider

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50

InsertMode = Literal["recheck", "upsert"]

T = TypeVar("T")


class SyncPhase(enum.StrEnum):
    IDLE = "idle"
    AUTH_CHECK = "auth_check"
    PERMISSION_CHECK = "permission_check"
    INGEST = "ingest"
    ENRICH = "enrich"
    RECONCILE = "reconcile"
    PERSIST = "persist"
    DONE = "done"
    FAILED = "failed"


class SyncError(RuntimeError):
    """Base sync-run error."""


class NoSessionError(SyncError):
    """Raised when no user is signed in."""


class PermissionDeniedError(SyncError):
    """Raised when the contacts directory may not be read."""


class SyncAlreadyRunningError(SyncError):
    """Raised when a run is requested while another is in flight."""


class BatchWriteError(SyncError):
    """Raised when an update fails or every row of an insert batch fails."""

    def __init__(self, *, operation: str, batch_number: int, identifiers: Sequence[str]) -> None:
        self.operation = operation
        self.batch_number = batch_number
        self.identifiers = list(identifiers)
        super().__init__(
            f"{operation.capitalize()} batch {batch_number} failed "
            f"({len(self.identifiers)} record(s): {', '.join(self.identifiers[:5])})"
        )


class ContactsSource(Protocol):
    async def fetch_all_contacts_async(self) -> list[ContactRecord]: ...


class MessagesSource(Protocol):
    async def fetch_threads_async(
        self, mode: ThreadQueryMode = "conversation"
    ) -> list[MessageThreadStat]: ...


class PermissionSource(Protocol):
    def status(self) -> PermissionStatus: ...


class SyncResult(BaseModel):
    """Outcome summary from one sync run."""

    model_config = ConfigDict(extra="forbid")

    user_id: uuid.UUID
    started_at: datetime
    finished_at: datetime
    messages_available: bool
    contacts_observed: int
    contacts_skipped: int
    threads_processed: int
    records_updated: int
    records_inserted: int
    records_unchanged: int
    inserts_dropped_by_recheck: int
    failed_inserts: list[str] = Field(default_factory=list)


@dataclass
class ReconcilePlan:
    updates: list[Person] = field(default_factory=list)
    inserts: list[Person] = field(default_factory=list)
    unchanged: int = 0


def reconcile(
    existing: Sequence[Person],
    candidates: Sequence[Person],
    *,
    now: datetime,
) -> ReconcilePlan:
    """Classify candidates as updates or inserts against the stored people.

    Updates keep the stored id, creation time, orbit and needs-response state
    and take every locally observed field from the candidate. A needs-response
    flag newly derived from the archive is raised; the sync never clears one.
    """
    by_key = {person.contact_identifier: person for person in existing}
    plan = ReconcilePlan()

    for candidate in candidates:
        current = by_key.get(candidate.contact_identifier)
        if current is None:
            plan.inserts.append(
                candidate.model_copy(
                    update={
                        "id": uuid.uuid4(),
                        "orbit_id": None,
                        "orbit": None,
                        "needs_response_marked_at": now if candidate.needs_response else None,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
            )
            continue

        raise_flag = candidate.needs_response and not current.needs_response
        if current.observed_fields() == candidate.observed_fields() and not raise_flag:
            plan.unchanged += 1
            continue

        plan.updates.append(
            current.model_copy(
                update={
                    "phone_number": candidate.phone_number,
                    "email_address": candidate.email_address,
                    "display_name": candidate.display_name,
                    "photo_hash": candidate.photo_hash,
                    "photo_available": candidate.photo_available,
                    "unread_count": candidate.unread_count,
                    "last_message_at": candidate.last_message_at,
                    "chat_guid": candidate.chat_guid,
                    "needs_response": current.needs_response or candidate.needs_response,
                    "needs_response_marked_at": (
                        now if raise_flag else current.needs_response_marked_at
                    ),
                    "updated_at": now,
                }
            )
        )
    return plan


def _batches(items: Sequence[T], size: int) -> Iterator[list[T]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class SyncEngine:
    """Runs one full local-to-remote sync for the signed-in user."""

    def __init__(
        self,
        *,
        repository: PersonRepository,
        session_provider: SessionProvider,
        permissions: PermissionSource,
        contacts_reader: ContactsSource,
        messages_reader: MessagesSource,
        enrichment: EnrichmentEngine | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        thread_query_mode: ThreadQueryMode = "conversation",
        insert_mode: InsertMode = "recheck",
        cadence_minutes: int = 60,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if thread_query_mode not in ("conversation", "handle"):
            raise ValueError(f"Unknown thread query mode: {thread_query_mode!r}")
        if insert_mode not in ("recheck", "upsert"):
            raise ValueError(f"Unknown insert mode: {insert_mode!r}")
        self._repository = repository
        self._sessions = session_provider
        self._permissions = permissions
        self._contacts = contacts_reader
        self._messages = messages_reader
        self._enrichment = enrichment or EnrichmentEngine()
        self._batch_size = batch_size
        self._thread_query_mode = thread_query_mode
        self._insert_mode = insert_mode
        self._cadence_minutes = cadence_minutes
        self._lock = asyncio.Lock()
        self._phase = SyncPhase.IDLE

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    def _transition(self, phase: SyncPhase) -> None:
        logger.debug("Sync phase %s -> %s", self._phase, phase)
        self._phase = phase

    async def run(self) -> SyncResult:
        if self._lock.locked():
            raise SyncAlreadyRunningError("A sync run is already in progress")

        async with self._lock:
            self._phase = SyncPhase.IDLE
            with get_tracer().start_as_current_span("orbits.sync.run") as span:
                try:
                    result = await self._run()
                except Exception:
                    self._transition(SyncPhase.FAILED)
                    raise
                span.set_attribute("orbits.user_id", str(result.user_id))
                span.set_attribute("orbits.contacts_observed", result.contacts_observed)
                span.set_attribute("orbits.contacts_skipped", result.contacts_skipped)
                span.set_attribute("orbits.threads_processed", result.threads_processed)
                span.set_attribute("orbits.records_updated", result.records_updated)
                span.set_attribute("orbits.records_inserted", result.records_inserted)
                span.set_attribute("orbits.failed_inserts", len(result.failed_inserts))
                return result

    async def _run(self) -> SyncResult:
        started_at = datetime.now(UTC)

        self._transition(SyncPhase.AUTH_CHECK)
        session = await self._sessions.current_session()
        if session is None:
            raise NoSessionError("No active user session")
        user_id = session.user_id
        set_sync_user(str(user_id))
        logger.info("Starting sync for user %s (%s)", user_id, session.email or "no email")

        self._transition(SyncPhase.PERMISSION_CHECK)
        permissions = self._permissions.status()
        if not permissions.directory_access:
            raise PermissionDeniedError(
                f"Contacts access required. {permissions.instructions or ''}".strip()
            )
        if not permissions.archive_access:
            logger.warning("Full Disk Access not granted; syncing without message data")

        self._transition(SyncPhase.INGEST)
        contacts = await self._contacts.fetch_all_contacts_async()
        threads: list[MessageThreadStat] = []
        messages_available = False
        if permissions.archive_access:
            try:
                threads = await self._messages.fetch_threads_async(self._thread_query_mode)
                messages_available = True
            except MessageArchiveError as exc:
                logger.warning(
                    "Could not read message archive (mode=%s); continuing without message "
                    "data: %s",
                    self._thread_query_mode,
                    exc,
                )
        logger.info("Ingested %d contacts and %d message threads", len(contacts), len(threads))

        self._transition(SyncPhase.ENRICH)
        now = datetime.now(UTC)
        enriched = self._enrichment.enrich(user_id, contacts, threads, now=now)

        self._transition(SyncPhase.RECONCILE)
        existing = await self._repository.list_for_user(user_id)
        plan = reconcile(existing, enriched.candidates, now=now)
        logger.info(
            "Reconciled %d candidates against %d stored people: %d updates, %d inserts, "
            "%d unchanged",
            len(enriched.candidates),
            len(existing),
            len(plan.updates),
            len(plan.inserts),
            plan.unchanged,
        )

        self._transition(SyncPhase.PERSIST)
        dropped = 0
        if self._insert_mode == "recheck":
            dropped = await self._recheck_inserts(user_id, plan)
        updated = await self._persist_updates(plan.updates)
        inserted, failed = await self._persist_inserts(plan.inserts)
        await self._record_sync_config(user_id, now, messages_available=messages_available)

        self._transition(SyncPhase.DONE)
        result = SyncResult(
            user_id=user_id,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            messages_available=messages_available,
            contacts_observed=enriched.contacts_observed,
            contacts_skipped=enriched.skipped,
            threads_processed=len(threads),
            records_updated=updated,
            records_inserted=inserted,
            records_unchanged=plan.unchanged,
            inserts_dropped_by_recheck=dropped,
            failed_inserts=failed,
        )
        logger.info(
            "Sync complete: %d contacts observed, %d skipped, %d threads, %d updated, "
            "%d inserted, %d failed inserts",
            result.contacts_observed,
            result.contacts_skipped,
            result.threads_processed,
            result.records_updated,
            result.records_inserted,
            len(result.failed_inserts),
        )
        return result

    async def _recheck_inserts(self, user_id: uuid.UUID, plan: ReconcilePlan) -> int:
        """Drop inserts whose natural key appeared since the initial fetch."""
        if not plan.inserts:
            return 0
        present = await self._repository.existing_identifiers(
            user_id, [person.contact_identifier for person in plan.inserts]
        )
        if not present:
            return 0
        plan.inserts = [p for p in plan.inserts if p.contact_identifier not in present]
        logger.warning(
            "Dropped %d inserts created concurrently by another session: %s",
            len(present),
            ", ".join(sorted(present)[:10]),
        )
        return len(present)

    async def _persist_updates(self, updates: Sequence[Person]) -> int:
        total_batches = -(-len(updates) // self._batch_size)
        applied = 0
        for number, batch in enumerate(_batches(updates, self._batch_size), start=1):
            for person in batch:
                try:
                    await self._repository.update(person)
                except StoreError as exc:
                    logger.error(
                        "Update batch %d/%d failed on %s: %s",
                        number,
                        total_batches,
                        person.contact_identifier,
                        exc,
                    )
                    raise BatchWriteError(
                        operation="update",
                        batch_number=number,
                        identifiers=[person.contact_identifier],
                    ) from exc
                applied += 1
            logger.info("Update batch %d/%d applied (%d records)", number, total_batches, len(batch))
        return applied

    async def _write_inserts(self, people: Sequence[Person]) -> int:
        if self._insert_mode == "upsert":
            return len(await self._repository.upsert_many(people, ignore_duplicates=True))
        return len(await self._repository.insert_many(people))

    async def _persist_inserts(self, inserts: Sequence[Person]) -> tuple[int, list[str]]:
        total_batches = -(-len(inserts) // self._batch_size)
        inserted = 0
        failed: list[str] = []
        for number, batch in enumerate(_batches(inserts, self._batch_size), start=1):
            try:
                inserted += await self._write_inserts(batch)
                logger.info(
                    "Insert batch %d/%d applied (%d records)", number, total_batches, len(batch)
                )
                continue
            except StoreError as exc:
                logger.warning(
                    "Insert batch %d/%d failed (%s); retrying %d records one at a time",
                    number,
                    total_batches,
                    exc,
                    len(batch),
                )
                batch_error = exc

            batch_failed: list[str] = []
            for person in batch:
                try:
                    inserted += await self._write_inserts([person])
                except StoreError as exc:
                    batch_failed.append(person.contact_identifier)
                    logger.warning("Insert of %s failed: %s", person.contact_identifier, exc)

            if len(batch_failed) == len(batch):
                raise BatchWriteError(
                    operation="insert", batch_number=number, identifiers=batch_failed
                ) from batch_error
            failed.extend(batch_failed)
            logger.warning(
                "Insert batch %d/%d partially applied: %d of %d records failed",
                number,
                total_batches,
                len(batch_failed),
                len(batch),
            )
        return inserted, failed

    async def _record_sync_config(
        self, user_id: uuid.UUID, now: datetime, *, messages_available: bool
    ) -> None:
        try:
            current = await self._repository.get_sync_config(user_id)
            record = current or SyncConfigRecord(
                user_id=user_id, cadence_minutes=self._cadence_minutes
            )
            await self._repository.save_sync_config(
                record.model_copy(
                    update={
                        "last_run_at": now,
                        "last_contact_scan_at": now,
                        "last_unread_scan_at": (
                            now if messages_available else record.last_unread_scan_at
                        ),
                        "updated_at": now,
                    }
                )
            )
        except StoreError as exc:
            logger.warning("Could not record sync bookkeeping for user %s: %s", user_id, exc)
