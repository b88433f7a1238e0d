"""Derives a user's effective role and approval from either system's record.

Records arrive in one of two shapes: the identity provider's user (role and
approval live in ``public_metadata``) or the database document (explicit
``role``/``approved`` columns). Both are normalized into a tagged variant and
then into a single ``ResolvedIdentity``. Nothing in this module raises; any
unreadable input degrades to the ``user`` role.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

from loguru import logger

from src.core.clients import IdentityUser
from src.domain.roles.taxonomy import (
    DEFAULT_ROLE,
    Role,
    coerce_role,
    effective_approval,
    is_valid_role,
    role_index,
)
from src.domain.users.models import UserRecord


@dataclass(frozen=True)
class IdentityRecord:
    user_id: str | None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    kind: Literal["identity"] = "identity"


@dataclass(frozen=True)
class DatabaseRecord:
    user_id: str | None
    role: Any = None
    approved: Any = None
    kind: Literal["database"] = "database"


RoleRecord = IdentityRecord | DatabaseRecord


@dataclass(frozen=True)
class ResolvedIdentity:
    user_id: str | None
    role: Role
    approved: bool
    raw_approved: bool


ANONYMOUS = ResolvedIdentity(user_id=None, role=DEFAULT_ROLE, approved=True, raw_approved=False)


class Dashboard(StrEnum):
    ADMIN = "admin"
    AGENT = "agent"
    PENDING = "pending"
    USER = "user"


def as_role_record(record: Any) -> RoleRecord | None:
    """Tags an arbitrary record with the variant it belongs to."""
    if record is None or isinstance(record, IdentityRecord | DatabaseRecord):
        return record
    if isinstance(record, str):
        # A bare role value, e.g. an actor known only by role
        return DatabaseRecord(user_id=None, role=record, approved=True)
    if isinstance(record, UserRecord):
        return DatabaseRecord(user_id=record.external_id, role=record.role, approved=record.approved)
    if isinstance(record, IdentityUser):
        return IdentityRecord(user_id=record.id, metadata=record.public_metadata)
    if isinstance(record, Mapping):
        user_id = record.get("external_id") or record.get("user_id") or record.get("id")
        if "role" in record:
            return DatabaseRecord(user_id=user_id, role=record.get("role"), approved=record.get("approved"))
        metadata = record.get("public_metadata") or record.get("publicMetadata")
        if isinstance(metadata, Mapping):
            return IdentityRecord(user_id=user_id, metadata=metadata)
        return DatabaseRecord(user_id=user_id)
    logger.warning(f"Unrecognized record type for role resolution: {type(record).__name__}")
    return None


def resolve(record: Any) -> ResolvedIdentity:
    """Single conversion from any supported record shape into a ResolvedIdentity."""
    try:
        tagged = as_role_record(record)
        if tagged is None:
            return ANONYMOUS

        if isinstance(tagged, DatabaseRecord):
            raw_role, raw_approved = tagged.role, tagged.approved
        else:
            raw_role, raw_approved = tagged.metadata.get("role"), tagged.metadata.get("approved")

        if raw_role is not None and not is_valid_role(raw_role):
            logger.warning(f"Unknown role value {raw_role!r} for {tagged.user_id}; treating as user")

        role = coerce_role(raw_role)
        approved_flag = raw_approved is True
        return ResolvedIdentity(
            user_id=tagged.user_id,
            role=role,
            approved=effective_approval(role, approved_flag),
            raw_approved=approved_flag,
        )
    except Exception as e:
        logger.error(f"Role resolution failed, defaulting to user: {e}")
        return ANONYMOUS


def get_role(record: Any) -> Role:
    return resolve(record).role


def get_approval_status(record: Any) -> bool:
    """Raw field-level flag: True only when ``approved`` is literally True."""
    return resolve(record).raw_approved


def is_effectively_approved(record: Any) -> bool:
    """Approval as downstream gates must see it; only agents are ever gated."""
    return resolve(record).approved


def is_admin(record: Any) -> bool:
    return get_role(record) in (Role.ADMIN, Role.SUPER_ADMIN)


def is_approved_agent(record: Any) -> bool:
    resolved = resolve(record)
    return resolved.role == Role.AGENT and resolved.raw_approved


def is_pending_agent(record: Any) -> bool:
    return get_role(record) == Role.AGENT_PENDING


def is_any_agent(record: Any) -> bool:
    """Role membership only; permission grants never make someone an agent."""
    return get_role(record) in (Role.AGENT, Role.AGENT_PENDING)


def has_role(record: Any, role: Role | str) -> bool:
    return get_role(record) == coerce_role(role)


def has_any_role(record: Any, roles: Iterable[Role | str]) -> bool:
    current = get_role(record)
    return any(current == coerce_role(role) for role in roles)


def has_equal_or_higher_privilege(record: Any, required_role: Role | str) -> bool:
    return role_index(get_role(record)) >= role_index(required_role)


def get_dashboard_for_role(record: Any) -> Dashboard:
    """Routes a user to one of the four dashboards. Never raises."""
    try:
        resolved = resolve(record)
        if resolved.role in (Role.ADMIN, Role.SUPER_ADMIN):
            return Dashboard.ADMIN
        if resolved.role == Role.AGENT:
            return Dashboard.AGENT if resolved.approved else Dashboard.PENDING
        if resolved.role == Role.AGENT_PENDING:
            return Dashboard.PENDING
        return Dashboard.USER
    except Exception as e:
        logger.error(f"Dashboard routing failed, falling back to user: {e}")
        return Dashboard.USER


def dashboard_path(record: Any) -> str:
    return f"/dashboard/{get_dashboard_for_role(record).value}"
