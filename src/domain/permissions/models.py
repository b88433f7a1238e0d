from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from src.domain.users.models import ensure_utc, utcnow


class GrantSource(StrEnum):
    INDIVIDUAL = "individual"
    BUNDLE = "bundle"


class PermissionBundle(SQLModel, table=True):
    """Named, admin-managed set of DOMAIN:ACTION permission strings."""

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    description: str = Field(default="")
    permissions: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PermissionGrant(SQLModel, table=True):
    """A permission held by one user beyond their role defaults.

    Bundle-sourced grants keep a reference to the bundle that produced them so
    deleting the bundle can find and revoke them.
    """

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    permission: str = Field(index=True)

    source: GrantSource = Field(default=GrantSource.INDIVIDUAL)
    bundle_id: int | None = Field(default=None, foreign_key="permissionbundle.id", index=True, ondelete="CASCADE")
    bundle_name: str | None = None

    temporary: bool = Field(default=False)
    expires_at: datetime | None = Field(default=None, index=True)

    resource_type: str | None = None
    resource_id: str | None = Field(default=None, index=True)

    granted_by: str | None = None
    reason: str | None = None
    granted_at: datetime = Field(default_factory=utcnow)

    @property
    def is_resource_scoped(self) -> bool:
        return self.resource_id is not None

    def is_expired(self, now: datetime) -> bool:
        if not self.temporary or self.expires_at is None:
            return False
        return ensure_utc(self.expires_at) <= now


class PermissionLogAction(StrEnum):
    GRANTED = "permission_granted"
    REVOKED = "permission_revoked"
    EXPIRED = "permission_expired"
    BUNDLE_APPLIED = "bundle_applied"
    BUNDLE_REVOKED = "bundle_revoked"


class PermissionLog(SQLModel, table=True):
    """Append-only record of one permission change for one user.

    Rows are written in the same transaction as the grant mutation they
    describe and are never updated afterwards.
    """

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    admin_id: str | None = Field(default=None, index=True)
    action: PermissionLogAction = Field(index=True)
    permission: str = Field(index=True)

    bundle_id: int | None = Field(default=None, index=True)
    bundle_name: str | None = None
    request_id: int | None = None

    temporary: bool = Field(default=False)
    expires_at: datetime | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    reason: str | None = None
    timestamp: datetime = Field(default_factory=utcnow, index=True)


class PermissionRequestStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    CANCELED = "canceled"


class PermissionRequest(SQLModel, table=True):
    """A user's request for one permission or one bundle, reviewed by a permission admin."""

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    permission: str | None = None
    bundle_id: int | None = Field(default=None, index=True)
    justification: str

    temporary: bool = Field(default=False)
    requested_expiration: datetime | None = None
    resource_type: str | None = None
    resource_id: str | None = None

    status: PermissionRequestStatus = Field(default=PermissionRequestStatus.PENDING, index=True)
    reviewed_by: str | None = None
    review_notes: str | None = None
    reviewed_at: datetime | None = None
    status_history: list[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    def add_status_change(self, status: PermissionRequestStatus, changed_by: str | None, notes: str = "") -> None:
        self.status = status
        self.updated_at = utcnow()
        # Reassign so the JSON column is marked dirty
        self.status_history = [
            *(self.status_history or []),
            {"status": status.value, "changedBy": changed_by, "changedAt": utcnow().isoformat(), "notes": notes},
        ]
