"""Canonical data shapes shared by the readers, the enrichment engine and the store.

Every timestamp is a timezone-aware UTC ``datetime``.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNKNOWN_CONTACT_NAME = "Unknown Contact"


def utcnow() -> datetime:
    return datetime.now(UTC)


class ContactRecord(BaseModel):
    """One contact as read from a local directory container."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    identifier: str = Field(min_length=1)
    given_name: str = ""
    family_name: str = ""
    organization_name: str = ""
    phone_numbers: list[str] = Field(default_factory=list)
    email_addresses: list[str] = Field(default_factory=list)
    photo_data: bytes | None = None
    photo_available: bool = False
    container: str | None = None

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("identifier must be a non-empty string")
        return normalized


class MessageThreadStat(BaseModel):
    """Aggregate statistics for one conversation (or one handle in handle mode)."""

    model_config = ConfigDict(extra="forbid")

    chat_guid: str
    handles: list[str] = Field(default_factory=list)
    display_name: str | None = None
    is_group: bool = False
    has_unread: bool = False
    unread_count: int = Field(default=0, ge=0)
    needs_response: bool = False
    last_message_at: datetime | None = None

    @property
    def is_individual(self) -> bool:
        return not self.is_group and len(self.handles) == 1


class Orbit(BaseModel):
    """A user-defined check-in cadence bucket."""

    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    interval_days: int
    slack_days: int = 0
    position: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Person(BaseModel):
    """The reconciliation unit and the shape of one ``person`` row."""

    model_config = ConfigDict(extra="forbid")

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: uuid.UUID
    contact_identifier: str = Field(min_length=1)
    phone_number: str | None = None
    email_address: str | None = None
    display_name: str | None = None
    photo_hash: str | None = None
    photo_available: bool = False
    orbit_id: uuid.UUID | None = None
    unread_count: int = Field(default=0, ge=0)
    last_message_at: datetime | None = None
    chat_guid: str | None = None
    needs_response: bool = False
    needs_response_marked_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    orbit: Orbit | None = None

    def observed_fields(self) -> tuple:
        """Fields owned by the local sources (overwritten on every sync)."""
        return (
            self.phone_number,
            self.email_address,
            self.display_name,
            self.photo_hash,
            self.photo_available,
            self.unread_count,
            self.last_message_at,
            self.chat_guid,
        )


class AuthSession(BaseModel):
    """The authenticated user a sync run acts for."""

    model_config = ConfigDict(extra="ignore")

    user_id: uuid.UUID
    email: str | None = None


class SyncConfigRecord(BaseModel):
    """Per-user sync bookkeeping row."""

    model_config = ConfigDict(extra="ignore")

    user_id: uuid.UUID
    cadence_minutes: int = Field(default=60, ge=1)
    last_run_at: datetime | None = None
    last_contact_scan_at: datetime | None = None
    last_unread_scan_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)
