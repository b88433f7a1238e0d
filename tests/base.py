import unittest
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from tenacity import wait_none

# Ensure canonical imports are resolved
import src.domain.permissions.models  # noqa: F401
import src.domain.users.models  # noqa: F401
from src.core.clients import IdentityProviderClient, IdentityUser
from src.core.errors import NotFoundError
from src.domain.permissions.cache import PermissionCache
from src.domain.roles.sync import RoleSynchronizer
from src.domain.users.models import UserRecord
from src.domain.users.repository import UserRepository


@asynccontextmanager
async def dummy_async_context(*args, **kwargs):
    """Provides a safe, non-blocking mock for 'async with' Redis lock blocks."""
    yield MagicMock()


def make_identity_user(
    user_id: str,
    role: str | None = "user",
    approved: Any = None,
    email: str = "jane@example.com",
    first_name: str = "Jane",
    last_name: str = "Doe",
    **metadata: Any,
) -> IdentityUser:
    """Builds an identity-provider payload the way the API returns it."""
    public_metadata = dict(metadata)
    if role is not None:
        public_metadata["role"] = role
    if approved is not None:
        public_metadata["approved"] = approved
    return IdentityUser(
        id=user_id,
        first_name=first_name,
        last_name=last_name,
        email_addresses=[{"id": "idn_1", "email_address": email}],
        primary_email_address_id="idn_1",
        image_url=f"https://img.example.com/{user_id}.png",
        public_metadata=public_metadata,
    )


class BaseTest(unittest.IsolatedAsyncioTestCase):
    """Base test class providing strict, ephemeral database isolation."""

    async def asyncSetUp(self) -> None:
        """Bootstraps a pure in-memory database and intercepts worker connections."""
        # Explicit in-memory URI mapped to StaticPool to keep schema alive
        # for the duration of a single test's async execution context.
        self.test_engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        self.test_session_maker = sessionmaker(bind=self.test_engine, class_=AsyncSession, expire_on_commit=False)

        # Intercept the worker's DB connection globally
        self.session_patcher = patch("src.domain.roles.tasks.async_session_maker", self.test_session_maker)
        self.session_patcher.start()

        # Build the schema in memory
        async with self.test_engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

        self.session: AsyncSession = self.test_session_maker()
        self.cache = PermissionCache(ttl_seconds=60, max_size=100, enabled=True)

        # Identity provider double; every coroutine method becomes an AsyncMock
        self.identity = AsyncMock(spec=IdentityProviderClient)
        self.identity_users: dict[str, IdentityUser] = {}
        self.identity.get_user.side_effect = self._identity_get_user
        self.identity.update_user_metadata.side_effect = self._identity_update_metadata

        self.repository = UserRepository(self.session)
        self.synchronizer = RoleSynchronizer(self.repository, self.identity, self.cache, retry_wait=wait_none())

        # Reusable Redis Mock Context
        self.mock_redis = AsyncMock()
        self.mock_redis.lock = MagicMock(side_effect=dummy_async_context)
        self.ctx = {
            "redis": self.mock_redis,
            "job_id": "test_job_1",
            "identity": self.identity,
            "permission_cache": self.cache,
        }

    async def asyncTearDown(self) -> None:
        """Destroys the in-memory database and restores the original engine."""
        self.session_patcher.stop()
        await self.session.close()

        async with self.test_engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.drop_all)

        await self.test_engine.dispose()

    async def _identity_get_user(self, user_id: str) -> IdentityUser:
        if user_id not in self.identity_users:
            raise NotFoundError(f"Identity provider has no resource at /users/{user_id}")
        return self.identity_users[user_id]

    async def _identity_update_metadata(self, user_id: str, public_metadata: dict[str, Any]) -> IdentityUser:
        current = await self._identity_get_user(user_id)
        updated = current.model_copy(update={"public_metadata": {**current.public_metadata, **public_metadata}})
        self.identity_users[user_id] = updated
        return updated

    def add_identity_user(self, user_id: str, **kwargs: Any) -> IdentityUser:
        identity_user = make_identity_user(user_id, **kwargs)
        self.identity_users[user_id] = identity_user
        return identity_user

    async def create_user(
        self, user_id: str, role: str = "user", approved: bool = False, in_identity: bool = True, **fields: Any
    ) -> UserRecord:
        """Seeds a consistent user in the database and, by default, the identity double."""
        record = UserRecord(
            external_id=user_id,
            role=role,
            approved=approved,
            email=fields.pop("email", "jane@example.com"),
            first_name=fields.pop("first_name", "Jane"),
            last_name=fields.pop("last_name", "Doe"),
            profile_image=f"https://img.example.com/{user_id}.png",
            **fields,
        )
        self.session.add(record)
        await self.session.commit()
        await self.session.refresh(record)
        if in_identity:
            self.add_identity_user(user_id, role=role, approved=approved)
        return record
