from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.clients import IdentityProviderClient
from src.core.database import get_session
from src.domain.permissions.cache import PermissionCache
from src.domain.permissions.engine import PermissionEngine
from src.domain.roles.resolver import (
    ResolvedIdentity,
    dashboard_path,
    get_dashboard_for_role,
    is_admin,
    is_approved_agent,
    is_pending_agent,
    resolve,
)
from src.domain.roles.sync import RoleSynchronizer
from src.domain.roles.taxonomy import role_display_name
from src.domain.users.models import UserRecord
from src.domain.users.repository import UserRepository

router = APIRouter(prefix="/auth", tags=["Authentication"])

SESSION_KEY = "identity_user_id"
PERMISSION_DENIED = "You do not have permission to perform this action."


def get_permission_cache(request: Request) -> PermissionCache:
    """The process-wide cache built at app creation."""
    return request.app.state.permission_cache


def get_identity_client(request: Request) -> IdentityProviderClient:
    return request.app.state.identity_client


def get_synchronizer(
    session: Annotated[AsyncSession, Depends(get_session)],
    identity: Annotated[IdentityProviderClient, Depends(get_identity_client)],
    cache: Annotated[PermissionCache, Depends(get_permission_cache)],
) -> RoleSynchronizer:
    return RoleSynchronizer(UserRepository(session), identity, cache)


def get_permission_engine(
    session: Annotated[AsyncSession, Depends(get_session)],
    cache: Annotated[PermissionCache, Depends(get_permission_cache)],
) -> PermissionEngine:
    return PermissionEngine(session, cache)


async def get_identity_user_id(
    request: Request, identity: Annotated[IdentityProviderClient, Depends(get_identity_client)]
) -> str:
    """Authenticates the caller from the signed session cookie or a bearer session id.

    A verified bearer session is cached in the cookie session so later requests
    skip the provider round-trip.

    Raises:
        HTTPException: 401 if neither credential yields an active session.
    """
    user_id = request.session.get(SESSION_KEY)
    if user_id:
        return user_id

    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and token:
        user_id = await identity.verify_session(token.strip())
        if user_id:
            request.session[SESSION_KEY] = user_id
            logger.info(f"Authenticated {user_id} via bearer session")
            return user_id

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required.")


@dataclass
class RequestContext:
    user_id: str
    user: UserRecord
    resolved: ResolvedIdentity
    permissions: frozenset[str]

    @property
    def dashboard(self) -> str:
        return get_dashboard_for_role(self.user).value


async def get_request_context(
    request: Request,
    user_id: Annotated[str, Depends(get_identity_user_id)],
    synchronizer: Annotated[RoleSynchronizer, Depends(get_synchronizer)],
    engine: Annotated[PermissionEngine, Depends(get_permission_engine)],
) -> RequestContext:
    """Loads (or provisions on first sight) the caller's record and attaches role and permissions."""
    user = await synchronizer.load_record(user_id)
    if user is None:
        logger.info(f"First authenticated request from {user_id}; provisioning from identity")
        await synchronizer.full_user_sync(user_id)
        user = await synchronizer.load_record(user_id)
        if user is None:
            # Soft-deleted accounts are never re-provisioned
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=PERMISSION_DENIED)

    context = RequestContext(
        user_id=user_id,
        user=user,
        resolved=resolve(user),
        permissions=await engine.get_user_permissions(user_id, user=user),
    )
    request.state.context = context
    return context


def require_admin(context: Annotated[RequestContext, Depends(get_request_context)]) -> RequestContext:
    if not is_admin(context.user):
        logger.warning(f"Admin gate rejected {context.user_id} (role={context.resolved.role.value})")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=PERMISSION_DENIED)
    return context


def require_permission(permission: str) -> Callable[..., Awaitable[RequestContext]]:
    """Builds a dependency that admits callers holding ``permission``."""

    async def _dependency(context: Annotated[RequestContext, Depends(get_request_context)]) -> RequestContext:
        if permission not in context.permissions:
            logger.warning(f"Permission gate rejected {context.user_id}: missing {permission}")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=PERMISSION_DENIED)
        return context

    return _dependency


@router.get("/me")
async def me(context: Annotated[RequestContext, Depends(get_request_context)]) -> dict[str, Any]:
    """Returns the caller's resolved role, approval, dashboard, and permission set."""
    user = context.user
    return {
        "userId": context.user_id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "role": context.resolved.role.value,
        "roleName": role_display_name(context.resolved.role),
        "approved": context.resolved.approved,
        "isAdmin": is_admin(user),
        "isApprovedAgent": is_approved_agent(user),
        "isPendingAgent": is_pending_agent(user),
        "dashboard": context.dashboard,
        "permissions": sorted(context.permissions),
    }


@router.get("/dashboard")
async def dashboard(context: Annotated[RequestContext, Depends(get_request_context)]) -> dict[str, str]:
    return {"dashboard": context.dashboard, "path": dashboard_path(context.user)}


@router.get("/logout")
async def logout(request: Request) -> dict[str, str]:
    """Clears the cached identity from the session."""
    request.session.pop(SESSION_KEY, None)
    return {"status": "logged_out"}
