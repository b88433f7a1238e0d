from typing import Annotated, Any

from fastapi import APIRouter, Depends, status
from loguru import logger

from src.app.schemas import AuditQueryParams, ConsistencyQueryParams, RoleChangeRequest, UserIdQuery
from src.domain.roles.service import RoleChangeService
from src.domain.roles.sync import RoleSynchronizer
from src.domain.users.router import RequestContext, get_synchronizer, require_admin

router = APIRouter(prefix="/api/v1/roles", tags=["Roles"])


@router.post("/change")
async def change_role(
    payload: RoleChangeRequest,
    admin: Annotated[RequestContext, Depends(require_admin)],
    synchronizer: Annotated[RoleSynchronizer, Depends(get_synchronizer)],
) -> dict[str, Any]:
    """Runs the role change orchestrator on behalf of the calling admin.

    Returns:
        dict[str, Any]: previous/new role, approval, change flags, and whether the
        identity provider accepted the update.

    Raises:
        InvalidTransitionError: 400 for an invalid role or forbidden transition.
        AuthorizationError: 403 when the admin ranks below the required role.
        UserNotFoundError: 404 for an unknown user.
    """
    service = RoleChangeService(synchronizer)
    result = await service.change_user_role(
        payload.userId,
        payload.role,
        payload.approved,
        acting_admin=admin.user,
        reason=payload.reason,
        expected_version=payload.expectedVersion,
    )
    return result.to_dict()


@router.get("/debug")
async def role_debug(
    query: Annotated[UserIdQuery, Depends()],
    admin: Annotated[RequestContext, Depends(require_admin)],
    synchronizer: Annotated[RoleSynchronizer, Depends(get_synchronizer)],
) -> dict[str, Any]:
    """Both systems' raw role data with a consistency verdict and remediation links."""
    logger.info(f"Role debug for {query.userId} requested by {admin.user_id}")
    return await synchronizer.inspect(query.userId)


@router.get("/sync-to-identity")
async def sync_to_identity(
    query: Annotated[UserIdQuery, Depends()],
    admin: Annotated[RequestContext, Depends(require_admin)],
    synchronizer: Annotated[RoleSynchronizer, Depends(get_synchronizer)],
) -> dict[str, Any]:
    result = await synchronizer.sync_role_to_identity(query.userId)
    return result.to_dict()


@router.get("/sync-from-identity")
async def sync_from_identity(
    query: Annotated[UserIdQuery, Depends()],
    admin: Annotated[RequestContext, Depends(require_admin)],
    synchronizer: Annotated[RoleSynchronizer, Depends(get_synchronizer)],
) -> dict[str, Any]:
    result = await synchronizer.sync_role_from_identity(query.userId)
    return result.to_dict()


@router.post("/sync-user", status_code=status.HTTP_200_OK)
async def sync_user(
    query: Annotated[UserIdQuery, Depends()],
    admin: Annotated[RequestContext, Depends(require_admin)],
    synchronizer: Annotated[RoleSynchronizer, Depends(get_synchronizer)],
) -> dict[str, Any]:
    """Runs a full identity -> database profile sync inline."""
    result = await synchronizer.full_user_sync(query.userId)
    return result.to_dict()


@router.get("/consistency")
async def verify_consistency(
    params: Annotated[ConsistencyQueryParams, Depends()],
    admin: Annotated[RequestContext, Depends(require_admin)],
    synchronizer: Annotated[RoleSynchronizer, Depends(get_synchronizer)],
) -> dict[str, Any]:
    logger.info(
        f"Consistency scan by {admin.user_id} (limit={params.limit}, autoFix={params.autoFix}, "
        f"direction={params.direction.value})"
    )
    return await synchronizer.verify_consistency(
        limit=params.limit, auto_fix=params.autoFix, direction=params.direction
    )


@router.get("/audit")
async def audit_trail(
    params: Annotated[AuditQueryParams, Depends()],
    admin: Annotated[RequestContext, Depends(require_admin)],
    synchronizer: Annotated[RoleSynchronizer, Depends(get_synchronizer)],
) -> dict[str, Any]:
    rows, total = await synchronizer.repository.list_audit(
        user_id=params.userId, page=params.page, page_size=params.pageSize
    )
    return {
        "total": total,
        "page": params.page,
        "pageSize": params.pageSize,
        "entries": [
            {
                "id": row.id,
                "userId": row.user_id,
                "previousRole": row.previous_role,
                "newRole": row.new_role,
                "previousApproved": row.previous_approved,
                "newApproved": row.new_approved,
                "actingAdminId": row.acting_admin_id,
                "reason": row.reason,
                "timestamp": row.timestamp.isoformat(),
            }
            for row in rows
        ],
    }
