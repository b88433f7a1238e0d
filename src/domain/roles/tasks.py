from typing import Any, ClassVar

import redis.asyncio as redis
from arq import Retry, cron
from arq.connections import RedisSettings
from loguru import logger
from redis.exceptions import LockError

from src.config.settings import settings
from src.core.clients import HTTPClientManager, IdentityProviderClient
from src.core.database import async_session_maker, init_db
from src.core.errors import RoleSystemError, TransientProviderError, UserNotFoundError
from src.core.logger import configure_logging
from src.domain.permissions.cache import PermissionCache
from src.domain.permissions.engine import PermissionEngine
from src.domain.roles.sync import RoleSynchronizer
from src.domain.users.repository import UserRepository

ROLES_QUEUE = "roles_queue"


def _synchronizer(ctx: dict[Any, Any], session: Any) -> RoleSynchronizer:
    return RoleSynchronizer(UserRepository(session), ctx["identity"], ctx["permission_cache"])


async def sync_identity_user_task(ctx: dict[Any, Any], user_id: str) -> dict[str, Any]:
    """Runs a full identity -> database sync for one user (webhook user.created/user.updated).

    A per-user Redis lock serializes bursts of events for the same user.
    Transient failures that survive the synchronizer's own retries are handed
    back to arq with a growing defer.
    """
    job_id = ctx.get("job_id", "unknown")
    task_logger = logger.bind(job_id=job_id, operation="sync_identity_user")
    lock_key = f"lock:roles:user:{user_id}"

    try:
        async with ctx["redis"].lock(lock_key, timeout=30.0, blocking_timeout=5.0):
            async with async_session_maker() as session:
                result = await _synchronizer(ctx, session).full_user_sync(user_id)
    except LockError as err:
        task_logger.warning(f"Sync for {user_id} locked by a concurrent job. Yielding.")
        raise Retry(defer=ctx.get("job_try", 1) * 5) from err
    except UserNotFoundError:
        task_logger.warning(f"User {user_id} no longer exists in the identity provider. Dropping job.")
        return {"userId": user_id, "success": False, "reason": "not_found"}
    except TransientProviderError as err:
        task_logger.warning(f"Transient failure syncing {user_id}: {err}. Deferring.")
        raise Retry(defer=ctx.get("job_try", 1) * 10) from err

    task_logger.info(f"Synced {user_id} from identity webhook")
    return result.to_dict()


async def soft_delete_user_task(ctx: dict[Any, Any], user_id: str) -> dict[str, Any]:
    """Marks the user deleted locally (webhook user.deleted); records are never hard-deleted."""
    async with async_session_maker() as session:
        deleted = await UserRepository(session).soft_delete_user(user_id)

    ctx["permission_cache"].invalidate(user_id)
    if deleted:
        logger.info(f"Soft-deleted {user_id} after identity deletion event")
    else:
        logger.info(f"Deletion event for unknown or already deleted user {user_id}")
    return {"userId": user_id, "deleted": deleted}


async def process_expired_permissions_task(ctx: dict[Any, Any]) -> dict[str, int]:
    """Hourly sweep of temporary grants whose expiry has passed."""
    async with async_session_maker() as session:
        stats = await PermissionEngine(session, ctx["permission_cache"]).purge_expired_grants()
    logger.debug(f"Expired permission sweep: {stats}")
    return stats


async def reconcile_all_users_task(ctx: dict[Any, Any]) -> dict[str, int]:
    """Nightly catch-up: pages through every identity user and runs a full sync.

    Covers webhooks that were never delivered. One failing user is logged and
    counted without aborting the run.
    """
    identity: IdentityProviderClient = ctx["identity"]
    stats = {"seen": 0, "synced": 0, "errors": 0}
    offset = 0

    while True:
        page = await identity.list_users(limit=settings.IDENTITY_PAGE_SIZE, offset=offset)
        if not page:
            break

        for identity_user in page:
            stats["seen"] += 1
            try:
                async with async_session_maker() as session:
                    await _synchronizer(ctx, session).full_user_sync(identity_user.id)
                stats["synced"] += 1
            except RoleSystemError as e:
                logger.error(f"Nightly reconcile failed for {identity_user.id}: {e}")
                stats["errors"] += 1

        if len(page) < settings.IDENTITY_PAGE_SIZE:
            break
        offset += settings.IDENTITY_PAGE_SIZE

    logger.info(f"Nightly reconcile complete: {stats}")
    return stats


class WorkerSettings:
    """Configuration for the roles ARQ worker."""

    functions: ClassVar[list[Any]] = [
        sync_identity_user_task,
        soft_delete_user_task,
        process_expired_permissions_task,
        reconcile_all_users_task,
    ]
    redis_settings: ClassVar[Any] = RedisSettings.from_dsn(settings.REDIS_URL)
    queue_name: ClassVar[str] = ROLES_QUEUE
    health_check_key: ClassVar[str] = f"{ROLES_QUEUE}:health-check"
    max_tries: ClassVar[int] = 5

    cron_jobs: ClassVar[list[Any]] = [
        cron(process_expired_permissions_task, minute={0}),
        cron(reconcile_all_users_task, hour={3}, minute={0}),
    ]

    @staticmethod
    async def on_startup(ctx: dict[Any, Any]) -> None:
        configure_logging()
        logger.info("Roles worker starting up")

        ctx["redis"] = redis.from_url(settings.REDIS_URL)
        ctx["permission_cache"] = PermissionCache()
        ctx["identity"] = IdentityProviderClient()

        await init_db()

    @staticmethod
    async def on_shutdown(ctx: dict[Any, Any]) -> None:
        logger.info("Roles worker shutting down")
        await HTTPClientManager.teardown()
        if "redis" in ctx:
            await ctx["redis"].aclose()
