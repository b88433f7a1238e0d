from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from fastapi import Query
from pydantic import BaseModel, ConfigDict, Field

from src.domain.permissions.models import PermissionLogAction
from src.domain.permissions.requests import ReviewAction
from src.domain.roles.sync import SyncDirection


@dataclass
class UserIdQuery:
    """Target user for the admin debug and sync endpoints."""

    userId: str = Query(..., min_length=1, description="Identity provider user id")


@dataclass
class AuditQueryParams:
    """Encapsulates GET query parameters for the role audit trail."""

    userId: str | None = Query(default=None, description="Restrict to one user")
    page: int = Query(default=1, ge=1, description="1-based page number")
    pageSize: int = Query(default=20, ge=1, le=100)


@dataclass
class ConsistencyQueryParams:
    """Encapsulates GET query parameters for the batch consistency scan."""

    limit: int = Query(default=100, ge=1, le=1000)
    autoFix: bool = Query(default=False, description="Repair drift in the chosen direction")
    direction: SyncDirection = Query(default=SyncDirection.DB_WINS)


class RoleChangeRequest(BaseModel):
    """Body of POST /api/v1/roles/change."""

    userId: str = Field(min_length=1)
    role: str = Field(min_length=1, description="Target role value")
    approved: bool | None = Field(default=None, description="Only honored when the target role is agent")
    reason: str | None = Field(default=None, max_length=500)
    expectedVersion: int | None = Field(default=None, ge=0, description="Optimistic-lock guard")

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [{"userId": "user_2abc", "role": "agent", "approved": True, "reason": "License verified"}]
        }
    )


class PermissionGrantRequest(BaseModel):
    permissions: list[str] = Field(min_length=1)
    reason: str | None = None
    temporary: bool = False
    expiresAt: datetime | None = None
    resourceType: str | None = None
    resourceId: str | None = None


class PermissionRevokeRequest(BaseModel):
    permissions: list[str] = Field(min_length=1)
    reason: str | None = None
    resourceType: str | None = None
    resourceId: str | None = None


class BundleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = ""
    permissions: list[str]


class BundleUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    permissions: list[str] | None = None


class BundleApplyRequest(BaseModel):
    userId: str = Field(min_length=1)
    temporary: bool = False
    expiresAt: datetime | None = None
    reason: str = "Bundle applied"


class PermissionRequestCreate(BaseModel):
    """Body of POST /api/v1/permissions/requests; exactly one of permission or bundleId."""

    permission: str | None = None
    bundleId: int | None = None
    justification: str = Field(min_length=10, max_length=1000)
    requestedDuration: Literal["temporary", "permanent"] = "permanent"
    requestedExpiration: datetime | None = None
    resourceType: str | None = None
    resourceId: str | None = None


class PermissionRequestReview(BaseModel):
    action: ReviewAction
    notes: str | None = Field(default=None, max_length=1000)


@dataclass
class PermissionRequestQueryParams:
    """Encapsulates GET query parameters for the admin request queue."""

    status: Literal["pending", "approved", "denied", "canceled", "all"] = Query(default="pending")
    userId: str | None = Query(default=None)
    page: int = Query(default=1, ge=1)
    pageSize: int = Query(default=20, ge=1, le=100)


@dataclass
class PermissionLogQueryParams:
    """Encapsulates GET query parameters for the permission log."""

    userId: str | None = Query(default=None)
    adminId: str | None = Query(default=None)
    permission: str | None = Query(default=None)
    action: PermissionLogAction | None = Query(default=None)
    bundleId: int | None = Query(default=None)
    since: datetime | None = Query(default=None, alias="from")
    until: datetime | None = Query(default=None, alias="to")
    page: int = Query(default=1, ge=1)
    pageSize: int = Query(default=20, ge=1, le=100)


class IdentityWebhookEvent(BaseModel):
    """Envelope of an identity-provider webhook delivery."""

    type: str
    data: dict = Field(default_factory=dict)
    object: str | None = None

    model_config = ConfigDict(extra="ignore")
