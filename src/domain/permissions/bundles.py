from typing import Any

from loguru import logger
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.database import db_operation
from src.core.errors import NotFoundError, ValidationError
from src.domain.permissions.audit import log_grant_change
from src.domain.permissions.cache import PermissionCache
from src.domain.permissions.catalog import is_known_permission
from src.domain.permissions.models import PermissionBundle, PermissionGrant, PermissionLogAction
from src.domain.users.models import utcnow

DEFAULT_BUNDLES: tuple[dict[str, Any], ...] = (
    {
        "name": "Basic User",
        "description": "Default permissions for regular users",
        "permissions": ["LISTINGS:VIEW_OWN", "MESSAGES:SEND", "MESSAGES:RECEIVE"],
    },
    {
        "name": "Listing Manager",
        "description": "Permissions for managing listings",
        "permissions": [
            "LISTINGS:VIEW_OWN",
            "LISTINGS:VIEW_ALL",
            "LISTINGS:CREATE",
            "LISTINGS:EDIT_OWN",
            "LISTINGS:DELETE_OWN",
        ],
    },
    {
        "name": "Full Agent",
        "description": "Comprehensive permissions for real estate agents",
        "permissions": [
            "LISTINGS:VIEW_OWN",
            "LISTINGS:VIEW_ALL",
            "LISTINGS:CREATE",
            "LISTINGS:EDIT_OWN",
            "LISTINGS:DELETE_OWN",
            "LISTINGS:PUBLISH",
            "MESSAGES:SEND",
            "MESSAGES:RECEIVE",
            "MESSAGES:VIEW_OWN",
            "INSPECTIONS:CREATE",
            "INSPECTIONS:SCHEDULE",
        ],
    },
    {
        "name": "Content Moderator",
        "description": "Permissions for content moderation",
        "permissions": ["LISTINGS:VIEW_ALL", "LISTINGS:APPROVE", "LISTINGS:FLAG", "MESSAGES:VIEW_ALL"],
    },
)


def _checked_permissions(permissions: list[str] | None) -> list[str]:
    if not isinstance(permissions, list):
        raise ValidationError("Bundle requires a permissions array")
    invalid = [p for p in permissions if not is_known_permission(p)]
    if invalid:
        raise ValidationError(f"Invalid permissions: {', '.join(invalid)}")
    return list(dict.fromkeys(permissions))


class BundleService:
    """CRUD for permission bundles.

    Deleting a bundle also revokes every grant it produced, so the affected
    users' cached permission sets are invalidated in the same call.
    """

    def __init__(self, session: AsyncSession, cache: PermissionCache) -> None:
        self.session = session
        self.cache = cache

    async def list_bundles(self) -> list[PermissionBundle]:
        async with db_operation("list_bundles"):
            result = await self.session.exec(select(PermissionBundle).order_by(col(PermissionBundle.name)))
            return list(result.all())

    async def get_bundle(self, bundle_id: int) -> PermissionBundle:
        async with db_operation("get_bundle"):
            bundle = await self.session.get(PermissionBundle, bundle_id)
        if bundle is None:
            raise NotFoundError(f"Bundle with ID {bundle_id} not found")
        return bundle

    async def _find_by_name(self, name: str) -> PermissionBundle | None:
        async with db_operation("find_bundle_by_name"):
            result = await self.session.exec(select(PermissionBundle).where(PermissionBundle.name == name))
            return result.first()

    async def create_bundle(self, name: str, permissions: list[str], description: str = "") -> PermissionBundle:
        if not name or not name.strip():
            raise ValidationError("Bundle requires a name and permissions array")
        permissions = _checked_permissions(permissions)
        if await self._find_by_name(name.strip()):
            raise ValidationError(f"A bundle named '{name.strip()}' already exists")

        bundle = PermissionBundle(name=name.strip(), description=description or "", permissions=permissions)
        async with db_operation("create_bundle"):
            self.session.add(bundle)
            await self.session.commit()
            await self.session.refresh(bundle)
        logger.info(f"Created permission bundle '{bundle.name}' with {len(permissions)} permission(s)")
        return bundle

    async def update_bundle(
        self,
        bundle_id: int,
        name: str | None = None,
        description: str | None = None,
        permissions: list[str] | None = None,
    ) -> PermissionBundle:
        """Updates a bundle definition.

        Grants already handed out keep the permissions they were applied with;
        re-apply the bundle to pick up a changed definition.
        """
        bundle = await self.get_bundle(bundle_id)

        if name is not None and name.strip() != bundle.name:
            existing = await self._find_by_name(name.strip())
            if existing and existing.id != bundle.id:
                raise ValidationError(f"A bundle named '{name.strip()}' already exists")
            bundle.name = name.strip()
        if description is not None:
            bundle.description = description
        if permissions is not None:
            bundle.permissions = _checked_permissions(permissions)
        bundle.updated_at = utcnow()

        async with db_operation("update_bundle"):
            self.session.add(bundle)
            await self.session.commit()
            await self.session.refresh(bundle)
        logger.info(f"Updated permission bundle {bundle_id} ('{bundle.name}')")
        return bundle

    async def delete_bundle(self, bundle_id: int, deleted_by: str | None = None) -> dict[str, Any]:
        bundle = await self.get_bundle(bundle_id)

        async with db_operation("delete_bundle"):
            result = await self.session.exec(select(PermissionGrant).where(PermissionGrant.bundle_id == bundle_id))
            grants = list(result.all())
            affected_users = {grant.user_id for grant in grants}
            for grant in grants:
                log_grant_change(
                    self.session,
                    PermissionLogAction.BUNDLE_REVOKED,
                    grant,
                    admin_id=deleted_by,
                    reason=f"Bundle '{bundle.name}' deleted",
                )
                await self.session.delete(grant)
            await self.session.delete(bundle)
            await self.session.commit()

        self.cache.invalidate_many(affected_users)
        logger.info(
            f"Deleted bundle '{bundle.name}'; revoked {len(grants)} grant(s) from {len(affected_users)} user(s)"
        )
        return {"deleted": True, "revokedGrants": len(grants), "affectedUsers": sorted(affected_users)}

    async def initialize_default_bundles(self) -> int:
        created = 0
        for definition in DEFAULT_BUNDLES:
            if await self._find_by_name(definition["name"]) is None:
                await self.create_bundle(**definition)
                created += 1
        logger.info(f"Initialized {created} default permission bundles")
        return created


def bundle_to_dict(bundle: PermissionBundle) -> dict[str, Any]:
    return {
        "id": bundle.id,
        "name": bundle.name,
        "description": bundle.description,
        "permissions": list(bundle.permissions),
        "createdAt": bundle.created_at.isoformat() if bundle.created_at else None,
        "updatedAt": bundle.updated_at.isoformat() if bundle.updated_at else None,
    }
