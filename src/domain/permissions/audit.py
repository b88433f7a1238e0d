from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.database import db_operation
from src.domain.permissions.models import PermissionGrant, PermissionLog, PermissionLogAction
from src.domain.users.models import ensure_utc


def log_grant_change(
    session: AsyncSession,
    action: PermissionLogAction,
    grant: PermissionGrant,
    admin_id: str | None = None,
    reason: str | None = None,
    request_id: int | None = None,
) -> PermissionLog:
    """Stages a log row describing ``grant``; the caller's commit persists both together."""
    entry = PermissionLog(
        user_id=grant.user_id,
        admin_id=admin_id,
        action=action,
        permission=grant.permission,
        bundle_id=grant.bundle_id,
        bundle_name=grant.bundle_name,
        request_id=request_id,
        temporary=grant.temporary,
        expires_at=grant.expires_at,
        resource_type=grant.resource_type,
        resource_id=grant.resource_id,
        reason=reason if reason is not None else grant.reason,
    )
    session.add(entry)
    return entry


async def list_permission_logs(
    session: AsyncSession,
    *,
    user_id: str | None = None,
    admin_id: str | None = None,
    permission: str | None = None,
    action: PermissionLogAction | None = None,
    bundle_id: int | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[PermissionLog], int]:
    """Filtered, newest-first page of the permission log and the total match count."""
    filters = []
    if user_id:
        filters.append(col(PermissionLog.user_id) == user_id)
    if admin_id:
        filters.append(col(PermissionLog.admin_id) == admin_id)
    if permission:
        filters.append(col(PermissionLog.permission) == permission)
    if action:
        filters.append(col(PermissionLog.action) == action)
    if bundle_id is not None:
        filters.append(col(PermissionLog.bundle_id) == bundle_id)
    if since is not None:
        filters.append(col(PermissionLog.timestamp) >= ensure_utc(since))
    if until is not None:
        filters.append(col(PermissionLog.timestamp) <= ensure_utc(until))

    async with db_operation("list_permission_logs"):
        total = (await session.exec(select(func.count()).select_from(PermissionLog).where(*filters))).one()
        rows = await session.exec(
            select(PermissionLog)
            .where(*filters)
            .order_by(col(PermissionLog.timestamp).desc(), col(PermissionLog.id).desc())
            .offset((max(page, 1) - 1) * page_size)
            .limit(page_size)
        )
        return list(rows.all()), total


def log_to_dict(entry: PermissionLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "userId": entry.user_id,
        "adminId": entry.admin_id,
        "action": entry.action.value if isinstance(entry.action, PermissionLogAction) else entry.action,
        "permission": entry.permission,
        "bundleId": entry.bundle_id,
        "bundleName": entry.bundle_name,
        "requestId": entry.request_id,
        "temporary": entry.temporary,
        "expiresAt": ensure_utc(entry.expires_at).isoformat() if entry.expires_at else None,
        "resourceType": entry.resource_type,
        "resourceId": entry.resource_id,
        "reason": entry.reason,
        "timestamp": ensure_utc(entry.timestamp).isoformat(),
    }
