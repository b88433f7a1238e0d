from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import delete
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.database import db_operation
from src.core.errors import NotFoundError, UserNotFoundError, ValidationError
from src.domain.permissions.cache import PermissionCache
from src.domain.permissions.catalog import (
    DEFAULT_ROLE_PERMISSIONS,
    DOMAIN_ACTIONS,
    USER_PERMISSIONS,
    PermissionDomain,
    is_known_permission,
    permission_id,
)
from src.domain.permissions.audit import log_grant_change
from src.domain.permissions.models import GrantSource, PermissionBundle, PermissionGrant, PermissionLogAction
from src.domain.roles.resolver import resolve
from src.domain.roles.taxonomy import Role
from src.domain.users.models import UserRecord, ensure_utc, utcnow
from src.domain.users.repository import UserRepository


@dataclass(frozen=True)
class ComputedPermissions:
    permissions: frozenset[str]
    valid_until: datetime | None


def role_permissions(record: Any) -> frozenset[str]:
    """Default set for a user's resolved role; unapproved agents get the user set."""
    resolved = resolve(record)
    if resolved.role == Role.AGENT and not resolved.approved:
        return USER_PERMISSIONS
    return DEFAULT_ROLE_PERMISSIONS[resolved.role]


def compute_permissions(record: Any, grants: Iterable[PermissionGrant], now: datetime | None = None) -> ComputedPermissions:
    """Role defaults plus every active, unscoped grant.

    Expired temporary grants are dropped here rather than trusted to have been
    purged. Resource-scoped grants never enter the global set.
    """
    now = now or utcnow()
    permissions = set(role_permissions(record))
    valid_until: datetime | None = None

    for grant in grants:
        if grant.is_expired(now) or grant.is_resource_scoped:
            continue
        permissions.add(grant.permission)
        if grant.temporary and grant.expires_at is not None:
            expires_at = ensure_utc(grant.expires_at)
            valid_until = expires_at if valid_until is None else min(valid_until, expires_at)

    return ComputedPermissions(frozenset(permissions), valid_until)


def validate_permission(permission: str, permissions: Iterable[str]) -> bool:
    return bool(permission) and permission in set(permissions)


def has_all_permissions(required: Iterable[str], permissions: Iterable[str]) -> bool:
    required = list(required)
    held = set(permissions)
    return bool(required) and all(p in held for p in required)


def has_any_permission(candidates: Iterable[str], permissions: Iterable[str]) -> bool:
    held = set(permissions)
    return any(p in held for p in candidates)


def get_domain_permissions(domain: str, permissions: Iterable[str]) -> dict[str, bool]:
    """Maps every action in a domain to whether the set grants it; unknown domains give {}."""
    if domain not in PermissionDomain._value2member_map_:
        return {}
    held = set(permissions)
    return {action: permission_id(domain, action) in held for action in DOMAIN_ACTIONS[PermissionDomain(domain)]}


def _matches(column: Any, value: str | None) -> Any:
    return col(column).is_(None) if value is None else col(column) == value


def _validate_permissions(permissions: Iterable[str]) -> list[str]:
    permissions = list(dict.fromkeys(permissions))
    if not permissions:
        raise ValidationError("At least one permission is required")
    invalid = [p for p in permissions if not is_known_permission(p)]
    if invalid:
        raise ValidationError(f"Invalid permissions: {', '.join(invalid)}")
    return permissions


def validate_expiry(temporary: bool, expires_at: datetime | None) -> datetime | None:
    if not temporary:
        return None
    if expires_at is None:
        raise ValidationError("Temporary grants require an expiration time")
    expires_at = ensure_utc(expires_at)
    if expires_at <= utcnow():
        raise ValidationError("Expiration time must be in the future")
    return expires_at


class PermissionEngine:
    """Answers capability checks and applies grant mutations for one session.

    Every mutation invalidates the affected users' cache entries before it
    returns, so the next lookup recomputes from the database.
    """

    def __init__(self, session: AsyncSession, cache: PermissionCache) -> None:
        self.session = session
        self.cache = cache
        self.users = UserRepository(session)

    async def _require_user(self, user_id: str) -> UserRecord:
        user = await self.users.find_user_by_external_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def list_grants(self, user_id: str, include_expired: bool = False) -> list[PermissionGrant]:
        async with db_operation("list_grants"):
            result = await self.session.exec(
                select(PermissionGrant)
                .where(PermissionGrant.user_id == user_id)
                .order_by(col(PermissionGrant.granted_at))
            )
            grants = list(result.all())
        if include_expired:
            return grants
        now = utcnow()
        return [g for g in grants if not g.is_expired(now)]

    async def get_user_permissions(self, user_id: str, user: UserRecord | None = None) -> frozenset[str]:
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        user = user or await self._require_user(user_id)
        computed = compute_permissions(user, await self.list_grants(user_id, include_expired=True))
        self.cache.set(
            user_id,
            computed.permissions,
            valid_until=computed.valid_until.timestamp() if computed.valid_until else None,
        )
        return computed.permissions

    async def has_permission(
        self,
        user_id: str,
        permission: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> bool:
        """Checks the cached global set, then any grant scoped to the given resource."""
        if validate_permission(permission, await self.get_user_permissions(user_id)):
            return True
        if resource_id is None:
            return False

        async with db_operation("has_resource_permission"):
            statement = select(PermissionGrant).where(
                PermissionGrant.user_id == user_id,
                PermissionGrant.permission == permission,
                PermissionGrant.resource_id == str(resource_id),
            )
            if resource_type is not None:
                statement = statement.where(PermissionGrant.resource_type == resource_type)
            grants = (await self.session.exec(statement)).all()
        now = utcnow()
        return any(not g.is_expired(now) for g in grants)

    def invalidate(self, user_id: str) -> None:
        self.cache.invalidate(user_id)

    async def grant_permissions(
        self,
        user_id: str,
        permissions: Iterable[str],
        *,
        granted_by: str | None = None,
        reason: str | None = None,
        temporary: bool = False,
        expires_at: datetime | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        request_id: int | None = None,
    ) -> list[PermissionGrant]:
        """Grants individual permissions, updating an existing grant for the same scope in place."""
        permissions = _validate_permissions(permissions)
        expires_at = validate_expiry(temporary, expires_at)
        await self._require_user(user_id)
        resource_id = str(resource_id) if resource_id is not None else None

        grants = []
        async with db_operation("grant_permissions"):
            for permission in permissions:
                result = await self.session.exec(
                    select(PermissionGrant).where(
                        PermissionGrant.user_id == user_id,
                        PermissionGrant.permission == permission,
                        PermissionGrant.source == GrantSource.INDIVIDUAL,
                        _matches(PermissionGrant.resource_type, resource_type),
                        _matches(PermissionGrant.resource_id, resource_id),
                    )
                )
                grant = result.first() or PermissionGrant(
                    user_id=user_id,
                    permission=permission,
                    source=GrantSource.INDIVIDUAL,
                    resource_type=resource_type,
                    resource_id=resource_id,
                )
                grant.temporary = temporary
                grant.expires_at = expires_at
                grant.granted_by = granted_by
                grant.reason = reason
                grant.granted_at = utcnow()
                self.session.add(grant)
                log_grant_change(
                    self.session, PermissionLogAction.GRANTED, grant, admin_id=granted_by, request_id=request_id
                )
                grants.append(grant)
            await self.session.commit()

        self.invalidate(user_id)
        logger.info(f"Granted {len(grants)} permission(s) to {user_id} (temporary={temporary}, by={granted_by})")
        return grants

    async def revoke_permissions(
        self,
        user_id: str,
        permissions: Iterable[str],
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        revoked_by: str | None = None,
        reason: str | None = None,
    ) -> int:
        """Removes matching grants from every source for the given scope."""
        permissions = list(permissions)
        if not permissions:
            raise ValidationError("At least one permission is required")

        async with db_operation("revoke_permissions"):
            statement = select(PermissionGrant).where(
                PermissionGrant.user_id == user_id,
                col(PermissionGrant.permission).in_(permissions),
            )
            if resource_id is not None:
                statement = statement.where(PermissionGrant.resource_id == str(resource_id))
                if resource_type is not None:
                    statement = statement.where(PermissionGrant.resource_type == resource_type)
            else:
                statement = statement.where(col(PermissionGrant.resource_id).is_(None))
            grants = list((await self.session.exec(statement)).all())
            for grant in grants:
                log_grant_change(
                    self.session, PermissionLogAction.REVOKED, grant, admin_id=revoked_by, reason=reason or "Revoked"
                )
                await self.session.delete(grant)
            await self.session.commit()

        self.invalidate(user_id)
        logger.info(f"Revoked {len(grants)} grant(s) from {user_id}: {permissions}")
        return len(grants)

    async def apply_bundle(
        self,
        user_id: str,
        bundle_id: int,
        *,
        granted_by: str | None = None,
        reason: str = "Bundle applied",
        temporary: bool = False,
        expires_at: datetime | None = None,
        request_id: int | None = None,
    ) -> dict[str, Any]:
        expires_at = validate_expiry(temporary, expires_at)
        async with db_operation("load_bundle"):
            bundle = await self.session.get(PermissionBundle, bundle_id)
        if bundle is None:
            raise NotFoundError(f"Bundle with ID {bundle_id} not found")
        await self._require_user(user_id)

        async with db_operation("apply_bundle"):
            # Re-applying replaces the earlier grants from the same bundle
            await self.session.execute(
                delete(PermissionGrant).where(
                    col(PermissionGrant.user_id) == user_id, col(PermissionGrant.bundle_id) == bundle_id
                )
            )
            for permission in bundle.permissions:
                grant = PermissionGrant(
                    user_id=user_id,
                    permission=permission,
                    source=GrantSource.BUNDLE,
                    bundle_id=bundle.id,
                    bundle_name=bundle.name,
                    temporary=temporary,
                    expires_at=expires_at,
                    granted_by=granted_by,
                    reason=reason,
                )
                self.session.add(grant)
                log_grant_change(
                    self.session, PermissionLogAction.BUNDLE_APPLIED, grant, admin_id=granted_by, request_id=request_id
                )
            await self.session.commit()

        self.invalidate(user_id)
        logger.info(f"Applied bundle '{bundle.name}' to {user_id} (temporary={temporary})")
        return {
            "success": True,
            "bundleId": bundle.id,
            "bundleName": bundle.name,
            "grantedPermissions": list(bundle.permissions),
            "temporary": temporary,
            "expiresAt": expires_at.isoformat() if expires_at else None,
        }

    async def revoke_bundle(self, user_id: str, bundle_id: int, revoked_by: str | None = None) -> int:
        async with db_operation("revoke_bundle"):
            result = await self.session.exec(
                select(PermissionGrant).where(
                    PermissionGrant.user_id == user_id, PermissionGrant.bundle_id == bundle_id
                )
            )
            grants = list(result.all())
            for grant in grants:
                log_grant_change(
                    self.session,
                    PermissionLogAction.BUNDLE_REVOKED,
                    grant,
                    admin_id=revoked_by,
                    reason="Bundle revoked",
                )
                await self.session.delete(grant)
            await self.session.commit()
        self.invalidate(user_id)
        return len(grants)

    async def purge_expired_grants(self, now: datetime | None = None, batch_size: int = 100) -> dict[str, int]:
        """Deletes expired temporary grants in batches and invalidates their owners."""
        now = now or utcnow()
        purged = 0
        affected: set[str] = set()

        while True:
            async with db_operation("purge_expired_grants"):
                result = await self.session.exec(
                    select(PermissionGrant)
                    .where(PermissionGrant.temporary == True, col(PermissionGrant.expires_at) <= now)  # noqa: E712
                    .limit(batch_size)
                )
                batch = list(result.all())
                if not batch:
                    break
                for grant in batch:
                    affected.add(grant.user_id)
                    log_grant_change(self.session, PermissionLogAction.EXPIRED, grant, reason="Temporary grant expired")
                    await self.session.delete(grant)
                await self.session.commit()
            purged += len(batch)

        self.cache.invalidate_many(affected)
        if purged:
            logger.info(f"Purged {purged} expired grant(s) across {len(affected)} user(s)")
        return {"purged": purged, "users": len(affected)}

    async def describe_user(self, user_id: str) -> dict[str, Any]:
        """Admin view of a user's role defaults, grants, and effective set."""
        user = await self._require_user(user_id)
        resolved = resolve(user)
        grants = await self.list_grants(user_id)
        effective = await self.get_user_permissions(user_id, user=user)
        return {
            "userId": user_id,
            "role": resolved.role.value,
            "approved": resolved.approved,
            "rolePermissions": sorted(role_permissions(user)),
            "grants": [
                {
                    "id": g.id,
                    "permission": g.permission,
                    "source": g.source.value if isinstance(g.source, GrantSource) else g.source,
                    "bundleId": g.bundle_id,
                    "bundleName": g.bundle_name,
                    "temporary": g.temporary,
                    "expiresAt": ensure_utc(g.expires_at).isoformat() if g.expires_at else None,
                    "resourceType": g.resource_type,
                    "resourceId": g.resource_id,
                    "grantedBy": g.granted_by,
                    "reason": g.reason,
                }
                for g in grants
            ],
            "effectivePermissions": sorted(effective),
        }
