"""Join directory contacts with Messages statistics into candidate people."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from orbits.models import UNKNOWN_CONTACT_NAME, ContactRecord, MessageThreadStat, Person
from orbits.sync.directory import build_handle_index
from orbits.sync.normalize import (
    is_email,
    normalize_email,
    normalize_handle,
    normalize_phone,
    photo_hash,
)

logger = logging.getLogger(__name__)

MIN_PHONE_DIGITS = 7
MIN_DISPLAY_NAME_LENGTH = 2
_PHONE_PUNCTUATION = frozenset("+-(). ")


@dataclass
class EnrichmentResult:
    """Candidates produced by one enrichment pass plus its counters."""

    candidates: list[Person] = field(default_factory=list)
    contacts_observed: int = 0
    skipped: int = 0
    threads_indexed: int = 0
    unmatched_handles: int = 0


def _merge_stats(existing: MessageThreadStat, incoming: MessageThreadStat) -> MessageThreadStat:
    if existing.last_message_at is None:
        last_message_at = incoming.last_message_at
    elif incoming.last_message_at is None:
        last_message_at = existing.last_message_at
    else:
        last_message_at = max(existing.last_message_at, incoming.last_message_at)

    return existing.model_copy(
        update={
            "has_unread": existing.has_unread or incoming.has_unread,
            "unread_count": existing.unread_count + incoming.unread_count,
            "needs_response": existing.needs_response or incoming.needs_response,
            "last_message_at": last_message_at,
            "chat_guid": incoming.chat_guid if incoming.has_unread else existing.chat_guid,
        }
    )


def build_thread_index(threads: Iterable[MessageThreadStat]) -> dict[str, MessageThreadStat]:
    """Index one-to-one threads by normalized handle, merging duplicates.

    Several chats can resolve to the same person (SMS vs iMessage, +1 vs bare
    number); they are folded into one statistic per handle.
    """
    index: dict[str, MessageThreadStat] = {}
    for thread in threads:
        if not thread.is_individual:
            continue
        handle = normalize_handle(thread.handles[0])
        if not handle:
            continue
        existing = index.get(handle)
        index[handle] = thread if existing is None else _merge_stats(existing, thread)
    return index


def build_display_name(contact: ContactRecord) -> str:
    parts = [part for part in (contact.given_name, contact.family_name) if part]
    if parts:
        return " ".join(parts)
    if contact.organization_name:
        return contact.organization_name
    return UNKNOWN_CONTACT_NAME


def ineligibility_reason(identifier: str | None, display_name: str) -> str | None:
    """Return why a contact must not be synced, or ``None`` when it is eligible.

    A contact whose "name" is really a raw handle (a number, an address or a
    short code) is not a person the user saved.
    """
    if not identifier:
        return "no phone number or email"
    if not is_email(identifier) and len(normalize_phone(identifier)) < MIN_PHONE_DIGITS:
        return "phone number too short"

    name = display_name.strip()
    if not name:
        return "empty display name"
    if is_email(name):
        return "display name is an email address"
    if all(ch.isdigit() or ch in _PHONE_PUNCTUATION for ch in name):
        return "display name is a phone number"
    if not any(ch.isalpha() for ch in name):
        return "display name has no letters"
    if len(name) < MIN_DISPLAY_NAME_LENGTH:
        return "display name too short"
    return None


def is_sync_eligible(identifier: str | None, display_name: str) -> bool:
    return ineligibility_reason(identifier, display_name) is None


class EnrichmentEngine:
    """Builds one candidate :class:`Person` per eligible directory contact."""

    def enrich(
        self,
        user_id: uuid.UUID,
        contacts: Sequence[ContactRecord],
        threads: Sequence[MessageThreadStat],
        *,
        now: datetime | None = None,
    ) -> EnrichmentResult:
        now = now or datetime.now(UTC)
        thread_index = build_thread_index(threads)
        handle_index = build_handle_index(contacts)
        result = EnrichmentResult(
            threads_indexed=len(thread_index),
            unmatched_handles=sum(1 for handle in thread_index if handle not in handle_index),
        )

        seen: set[str] = set()
        candidates: list[Person] = []
        for contact in contacts:
            if contact.identifier in seen:
                continue
            seen.add(contact.identifier)
            result.contacts_observed += 1

            phone = normalize_phone(contact.phone_numbers[0]) if contact.phone_numbers else None
            email = normalize_email(contact.email_addresses[0]) if contact.email_addresses else None
            display_name = build_display_name(contact)

            reason = ineligibility_reason(phone or email, display_name)
            if reason is not None:
                result.skipped += 1
                logger.debug("Skipping contact %s: %s", contact.identifier, reason)
                continue

            stat = None
            if phone:
                stat = thread_index.get(phone)
            if stat is None and email:
                stat = thread_index.get(email)

            candidates.append(
                Person(
                    user_id=user_id,
                    contact_identifier=contact.identifier,
                    phone_number=phone or None,
                    email_address=email or None,
                    display_name=display_name,
                    photo_hash=photo_hash(contact.photo_data),
                    photo_available=contact.photo_available,
                    unread_count=stat.unread_count if stat else 0,
                    last_message_at=stat.last_message_at if stat else None,
                    chat_guid=stat.chat_guid if stat else None,
                    needs_response=stat.needs_response if stat else False,
                    created_at=now,
                    updated_at=now,
                )
            )

        result.candidates = _dedupe_candidates(candidates)
        logger.info(
            "Enriched %d contacts: %d candidates, %d skipped, %d message handles (%d unmatched)",
            result.contacts_observed,
            len(result.candidates),
            result.skipped,
            result.threads_indexed,
            result.unmatched_handles,
        )
        return result


def _dedupe_candidates(candidates: list[Person]) -> list[Person]:
    unique: dict[str, Person] = {}
    for person in candidates:
        if person.contact_identifier in unique:
            logger.error(
                "Duplicate candidate for contact identifier %s (%s); dropping",
                person.contact_identifier,
                person.display_name,
            )
            continue
        unique[person.contact_identifier] = person
    return list(unique.values())
