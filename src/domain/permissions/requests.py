from datetime import datetime
from enum import StrEnum
from typing import Any

from loguru import logger
from sqlalchemy import func
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.database import db_operation
from src.core.errors import AuthorizationError, NotFoundError, ValidationError
from src.domain.permissions.catalog import is_known_permission
from src.domain.permissions.engine import PermissionEngine, validate_expiry
from src.domain.permissions.models import PermissionBundle, PermissionRequest, PermissionRequestStatus
from src.domain.users.models import ensure_utc, utcnow

JUSTIFICATION_MIN_LENGTH = 10
JUSTIFICATION_MAX_LENGTH = 1000


class ReviewAction(StrEnum):
    APPROVE = "approve"
    DENY = "deny"


class PermissionRequestService:
    """Users ask for a permission or a bundle; permission admins approve or deny.

    Approval goes through ``PermissionEngine`` so the grant, its permission log
    rows and the cache invalidation match a direct admin grant.
    """

    def __init__(self, session: AsyncSession, engine: PermissionEngine) -> None:
        self.session = session
        self.engine = engine

    async def submit(
        self,
        user_id: str,
        justification: str,
        *,
        permission: str | None = None,
        bundle_id: int | None = None,
        temporary: bool = False,
        requested_expiration: datetime | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> PermissionRequest:
        """Validates and stores a pending request.

        Raises:
            ValidationError: Neither or both targets given, a short justification,
                an unknown permission, a permission already held, or a bad expiry.
            NotFoundError: The requested bundle does not exist.
        """
        if (permission is None) == (bundle_id is None):
            raise ValidationError("Request exactly one of a permission or a bundle")

        justification = (justification or "").strip()
        if not JUSTIFICATION_MIN_LENGTH <= len(justification) <= JUSTIFICATION_MAX_LENGTH:
            raise ValidationError(
                f"Justification must be between {JUSTIFICATION_MIN_LENGTH} and {JUSTIFICATION_MAX_LENGTH} characters"
            )
        requested_expiration = validate_expiry(temporary, requested_expiration)

        if permission is not None:
            if not is_known_permission(permission):
                raise ValidationError(f"Invalid permission requested: {permission}")
            if resource_id is None and permission in await self.engine.get_user_permissions(user_id):
                raise ValidationError("You already have this permission")
        else:
            async with db_operation("load_bundle"):
                bundle = await self.session.get(PermissionBundle, bundle_id)
            if bundle is None:
                raise NotFoundError(f"Bundle with ID {bundle_id} not found")

        request = PermissionRequest(
            user_id=user_id,
            permission=permission,
            bundle_id=bundle_id,
            justification=justification,
            temporary=temporary,
            requested_expiration=requested_expiration,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
        )
        request.add_status_change(PermissionRequestStatus.PENDING, user_id, "Request submitted by user")

        async with db_operation("submit_permission_request"):
            self.session.add(request)
            await self.session.commit()
            await self.session.refresh(request)

        logger.info(f"Permission request {request.id} submitted by {user_id} for {permission or f'bundle {bundle_id}'}")
        return request

    async def get(self, request_id: int) -> PermissionRequest:
        async with db_operation("get_permission_request"):
            request = await self.session.get(PermissionRequest, request_id)
        if request is None:
            raise NotFoundError(f"Permission request {request_id} not found")
        return request

    async def list_requests(
        self,
        *,
        status: PermissionRequestStatus | None = None,
        user_id: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[PermissionRequest], int]:
        filters = []
        if status is not None:
            filters.append(col(PermissionRequest.status) == status)
        if user_id:
            filters.append(col(PermissionRequest.user_id) == user_id)

        async with db_operation("list_permission_requests"):
            total = (await self.session.exec(select(func.count()).select_from(PermissionRequest).where(*filters))).one()
            rows = await self.session.exec(
                select(PermissionRequest)
                .where(*filters)
                .order_by(col(PermissionRequest.created_at).desc(), col(PermissionRequest.id).desc())
                .offset((max(page, 1) - 1) * page_size)
                .limit(page_size)
            )
            return list(rows.all()), total

    async def review(
        self, request_id: int, action: ReviewAction, reviewer_id: str, notes: str | None = None
    ) -> PermissionRequest:
        """Approves (granting the permission or applying the bundle) or denies a pending request.

        The grant is written before the status, so a request whose grant failed
        stays pending and can be reviewed again.

        Raises:
            NotFoundError: Unknown request, or the bundle was deleted since submission.
            ValidationError: The request is no longer pending, or its expiry has passed.
        """
        request = await self.get(request_id)
        if request.status != PermissionRequestStatus.PENDING:
            raise ValidationError(f"This request has already been {request.status}")

        if action == ReviewAction.APPROVE:
            expires_at = ensure_utc(request.requested_expiration) if request.requested_expiration else None
            if request.bundle_id is not None:
                await self.engine.apply_bundle(
                    request.user_id,
                    request.bundle_id,
                    granted_by=reviewer_id,
                    reason=f"Approved via request #{request_id}",
                    temporary=request.temporary,
                    expires_at=expires_at,
                    request_id=request_id,
                )
            else:
                await self.engine.grant_permissions(
                    request.user_id,
                    [request.permission],
                    granted_by=reviewer_id,
                    reason=request.justification,
                    temporary=request.temporary,
                    expires_at=expires_at,
                    resource_type=request.resource_type,
                    resource_id=request.resource_id,
                    request_id=request_id,
                )
            new_status = PermissionRequestStatus.APPROVED
        else:
            new_status = PermissionRequestStatus.DENIED

        request.add_status_change(new_status, reviewer_id, notes or "")
        request.reviewed_by = reviewer_id
        request.review_notes = notes
        request.reviewed_at = utcnow()
        async with db_operation("review_permission_request"):
            self.session.add(request)
            await self.session.commit()
            await self.session.refresh(request)

        logger.info(f"Permission request {request_id} {new_status.value} by {reviewer_id}")
        return request

    async def cancel(self, request_id: int, user_id: str) -> PermissionRequest:
        """Withdraws the caller's own pending request."""
        request = await self.get(request_id)
        if request.user_id != user_id:
            raise AuthorizationError("Only the requesting user can cancel this request")
        if request.status != PermissionRequestStatus.PENDING:
            raise ValidationError(f"This request has already been {request.status}")

        request.add_status_change(PermissionRequestStatus.CANCELED, user_id, "Canceled by user")
        async with db_operation("cancel_permission_request"):
            self.session.add(request)
            await self.session.commit()
            await self.session.refresh(request)
        logger.info(f"Permission request {request_id} canceled by {user_id}")
        return request


def request_to_dict(request: PermissionRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "userId": request.user_id,
        "permission": request.permission,
        "bundleId": request.bundle_id,
        "justification": request.justification,
        "requestedDuration": "temporary" if request.temporary else "permanent",
        "requestedExpiration": (
            ensure_utc(request.requested_expiration).isoformat() if request.requested_expiration else None
        ),
        "resourceType": request.resource_type,
        "resourceId": request.resource_id,
        "status": request.status.value if isinstance(request.status, PermissionRequestStatus) else request.status,
        "reviewedBy": request.reviewed_by,
        "reviewNotes": request.review_notes,
        "reviewedAt": ensure_utc(request.reviewed_at).isoformat() if request.reviewed_at else None,
        "statusHistory": list(request.status_history or []),
        "createdAt": ensure_utc(request.created_at).isoformat(),
        "updatedAt": ensure_utc(request.updated_at).isoformat(),
    }
