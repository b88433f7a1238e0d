from math import ceil
from typing import Annotated, Any

from fastapi import APIRouter, Depends, status
from loguru import logger
from sqlmodel.ext.asyncio.session import AsyncSession

from src.app.schemas import (
    BundleApplyRequest,
    BundleCreateRequest,
    BundleUpdateRequest,
    PermissionGrantRequest,
    PermissionLogQueryParams,
    PermissionRequestCreate,
    PermissionRequestQueryParams,
    PermissionRequestReview,
    PermissionRevokeRequest,
)
from src.core.database import get_session
from src.domain.permissions.audit import list_permission_logs, log_to_dict
from src.domain.permissions.bundles import BundleService, bundle_to_dict
from src.domain.permissions.cache import PermissionCache
from src.domain.permissions.catalog import MANAGE_PERMISSIONS, describe_catalog
from src.domain.permissions.engine import PermissionEngine
from src.domain.permissions.models import PermissionRequestStatus
from src.domain.permissions.requests import PermissionRequestService, request_to_dict
from src.domain.users.router import (
    RequestContext,
    get_permission_cache,
    get_permission_engine,
    get_request_context,
    require_permission,
)

router = APIRouter(prefix="/api/v1/permissions", tags=["Permissions"])

PermissionAdmin = Annotated[RequestContext, Depends(require_permission(MANAGE_PERMISSIONS))]


def get_bundle_service(
    session: Annotated[AsyncSession, Depends(get_session)],
    cache: Annotated[PermissionCache, Depends(get_permission_cache)],
) -> BundleService:
    return BundleService(session, cache)


def get_request_service(
    session: Annotated[AsyncSession, Depends(get_session)],
    engine: Annotated[PermissionEngine, Depends(get_permission_engine)],
) -> PermissionRequestService:
    return PermissionRequestService(session, engine)


@router.get("/available")
async def available_permissions(admin: PermissionAdmin) -> dict[str, Any]:
    """Every permission grouped by domain, plus the default role mapping."""
    return {"success": True, **describe_catalog()}


@router.get("/users/{user_id}")
async def user_permissions(
    user_id: str, admin: PermissionAdmin, engine: Annotated[PermissionEngine, Depends(get_permission_engine)]
) -> dict[str, Any]:
    return await engine.describe_user(user_id)


@router.post("/users/{user_id}/grant")
async def grant_permissions(
    user_id: str,
    payload: PermissionGrantRequest,
    admin: PermissionAdmin,
    engine: Annotated[PermissionEngine, Depends(get_permission_engine)],
) -> dict[str, Any]:
    grants = await engine.grant_permissions(
        user_id,
        payload.permissions,
        granted_by=admin.user_id,
        reason=payload.reason,
        temporary=payload.temporary,
        expires_at=payload.expiresAt,
        resource_type=payload.resourceType,
        resource_id=payload.resourceId,
    )
    return {"success": True, "granted": [g.permission for g in grants], "userId": user_id}


@router.post("/users/{user_id}/revoke")
async def revoke_permissions(
    user_id: str,
    payload: PermissionRevokeRequest,
    admin: PermissionAdmin,
    engine: Annotated[PermissionEngine, Depends(get_permission_engine)],
) -> dict[str, Any]:
    revoked = await engine.revoke_permissions(
        user_id,
        payload.permissions,
        resource_type=payload.resourceType,
        resource_id=payload.resourceId,
        revoked_by=admin.user_id,
        reason=payload.reason,
    )
    logger.info(f"{admin.user_id} revoked {payload.permissions} from {user_id}")
    return {"success": True, "revoked": revoked, "userId": user_id}


@router.get("/bundles")
async def list_bundles(
    admin: PermissionAdmin, bundles: Annotated[BundleService, Depends(get_bundle_service)]
) -> dict[str, Any]:
    return {"bundles": [bundle_to_dict(b) for b in await bundles.list_bundles()]}


@router.post("/bundles", status_code=status.HTTP_201_CREATED)
async def create_bundle(
    payload: BundleCreateRequest,
    admin: PermissionAdmin,
    bundles: Annotated[BundleService, Depends(get_bundle_service)],
) -> dict[str, Any]:
    bundle = await bundles.create_bundle(payload.name, payload.permissions, payload.description)
    return bundle_to_dict(bundle)


@router.get("/bundles/{bundle_id}")
async def get_bundle(
    bundle_id: int, admin: PermissionAdmin, bundles: Annotated[BundleService, Depends(get_bundle_service)]
) -> dict[str, Any]:
    return bundle_to_dict(await bundles.get_bundle(bundle_id))


@router.put("/bundles/{bundle_id}")
async def update_bundle(
    bundle_id: int,
    payload: BundleUpdateRequest,
    admin: PermissionAdmin,
    bundles: Annotated[BundleService, Depends(get_bundle_service)],
) -> dict[str, Any]:
    bundle = await bundles.update_bundle(
        bundle_id, name=payload.name, description=payload.description, permissions=payload.permissions
    )
    return bundle_to_dict(bundle)


@router.delete("/bundles/{bundle_id}")
async def delete_bundle(
    bundle_id: int, admin: PermissionAdmin, bundles: Annotated[BundleService, Depends(get_bundle_service)]
) -> dict[str, Any]:
    return {"success": True, **await bundles.delete_bundle(bundle_id, deleted_by=admin.user_id)}


@router.post("/bundles/{bundle_id}/apply")
async def apply_bundle(
    bundle_id: int,
    payload: BundleApplyRequest,
    admin: PermissionAdmin,
    engine: Annotated[PermissionEngine, Depends(get_permission_engine)],
) -> dict[str, Any]:
    return await engine.apply_bundle(
        payload.userId,
        bundle_id,
        granted_by=admin.user_id,
        reason=payload.reason,
        temporary=payload.temporary,
        expires_at=payload.expiresAt,
    )


@router.get("/cache/stats")
async def cache_stats(
    admin: PermissionAdmin, cache: Annotated[PermissionCache, Depends(get_permission_cache)]
) -> dict[str, Any]:
    return cache.stats()


@router.delete("/bundles/{bundle_id}/users/{user_id}")
async def revoke_bundle(
    bundle_id: int,
    user_id: str,
    admin: PermissionAdmin,
    engine: Annotated[PermissionEngine, Depends(get_permission_engine)],
) -> dict[str, Any]:
    """Removes every grant the bundle gave this user; individual grants are kept."""
    revoked = await engine.revoke_bundle(user_id, bundle_id, revoked_by=admin.user_id)
    logger.info(f"{admin.user_id} revoked bundle {bundle_id} from {user_id} ({revoked} grants)")
    return {"success": True, "revoked": revoked, "userId": user_id, "bundleId": bundle_id}


@router.post("/requests", status_code=status.HTTP_201_CREATED)
async def submit_permission_request(
    payload: PermissionRequestCreate,
    context: Annotated[RequestContext, Depends(get_request_context)],
    requests: Annotated[PermissionRequestService, Depends(get_request_service)],
) -> dict[str, Any]:
    """Lets any signed-in user ask for a permission or a bundle."""
    request = await requests.submit(
        context.user_id,
        payload.justification,
        permission=payload.permission,
        bundle_id=payload.bundleId,
        temporary=payload.requestedDuration == "temporary",
        requested_expiration=payload.requestedExpiration,
        resource_type=payload.resourceType,
        resource_id=payload.resourceId,
    )
    return {
        "success": True,
        "message": "Permission request submitted successfully",
        "request": request_to_dict(request),
    }


@router.get("/requests/mine")
async def my_permission_requests(
    context: Annotated[RequestContext, Depends(get_request_context)],
    requests: Annotated[PermissionRequestService, Depends(get_request_service)],
) -> dict[str, Any]:
    rows, total = await requests.list_requests(user_id=context.user_id, page_size=100)
    return {"requests": [request_to_dict(r) for r in rows], "total": total}


@router.get("/requests")
async def list_permission_requests(
    query: Annotated[PermissionRequestQueryParams, Depends()],
    admin: PermissionAdmin,
    requests: Annotated[PermissionRequestService, Depends(get_request_service)],
) -> dict[str, Any]:
    """Review queue; pending requests by default, ``status=all`` for everything."""
    rows, total = await requests.list_requests(
        status=None if query.status == "all" else PermissionRequestStatus(query.status),
        user_id=query.userId,
        page=query.page,
        page_size=query.pageSize,
    )
    return {
        "requests": [request_to_dict(r) for r in rows],
        "total": total,
        "page": query.page,
        "totalPages": ceil(total / query.pageSize),
    }


@router.get("/requests/{request_id}")
async def get_permission_request(
    request_id: int,
    admin: PermissionAdmin,
    requests: Annotated[PermissionRequestService, Depends(get_request_service)],
) -> dict[str, Any]:
    return request_to_dict(await requests.get(request_id))


@router.put("/requests/{request_id}")
async def review_permission_request(
    request_id: int,
    payload: PermissionRequestReview,
    admin: PermissionAdmin,
    requests: Annotated[PermissionRequestService, Depends(get_request_service)],
) -> dict[str, Any]:
    """Approves (and grants) or denies a pending request."""
    request = await requests.review(request_id, payload.action, admin.user_id, payload.notes)
    return {"success": True, "request": request_to_dict(request)}


@router.post("/requests/{request_id}/cancel")
async def cancel_permission_request(
    request_id: int,
    context: Annotated[RequestContext, Depends(get_request_context)],
    requests: Annotated[PermissionRequestService, Depends(get_request_service)],
) -> dict[str, Any]:
    request = await requests.cancel(request_id, context.user_id)
    return {"success": True, "request": request_to_dict(request)}


@router.get("/logs")
async def permission_logs(
    query: Annotated[PermissionLogQueryParams, Depends()],
    admin: PermissionAdmin,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> dict[str, Any]:
    """Filtered, newest-first permission change history."""
    entries, total = await list_permission_logs(
        session,
        user_id=query.userId,
        admin_id=query.adminId,
        permission=query.permission,
        action=query.action,
        bundle_id=query.bundleId,
        since=query.since,
        until=query.until,
        page=query.page,
        page_size=query.pageSize,
    )
    return {
        "logs": [log_to_dict(e) for e in entries],
        "total": total,
        "page": query.page,
        "totalPages": ceil(total / query.pageSize),
    }
