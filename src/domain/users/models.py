from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back; every stored datetime is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class SyncStatus(StrEnum):
    """Outcome of the last cross-system synchronization for a user."""

    SUCCESS = "success"
    FAILED = "failed"
    IDENTITY_PENDING = "identity_pending"


class UserRecord(SQLModel, table=True):
    """Application-side profile of an identity-provider user.

    JSON columns are replaced wholesale on update; in-place mutation of the
    lists is not tracked by SQLAlchemy.
    """

    id: int | None = Field(default=None, primary_key=True)
    external_id: str = Field(unique=True, index=True)

    email: str | None = Field(default=None, index=True)
    first_name: str | None = None
    last_name: str | None = None
    profile_image: str | None = None

    # Stored as text; the resolver coerces unknown values to "user"
    role: str = Field(default="user", index=True)
    approved: bool = Field(default=False)

    last_synced: datetime | None = None
    sync_status: str | None = None
    last_sync_error: str | None = None
    sync_history: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    role_change_history: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    is_deleted: bool = Field(default=False, index=True)
    deleted_at: datetime | None = None

    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class Listing(SQLModel, table=True):
    """Authored content carrying a denormalized snapshot of its author."""

    id: int | None = Field(default=None, primary_key=True)
    title: str
    author_id: str = Field(index=True)
    author_snapshot: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    last_sync: datetime | None = None


class RoleAuditLog(SQLModel, table=True):
    """Append-only trail of every applied role change."""

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    previous_role: str
    new_role: str
    previous_approved: bool | None = None
    new_approved: bool | None = None
    acting_admin_id: str | None = Field(default=None, index=True)
    reason: str | None = None
    timestamp: datetime = Field(default_factory=utcnow, index=True)
