import threading
from typing import Any, ClassVar

import httpx
from fastapi import status
from loguru import logger
from pydantic import BaseModel, Field

from src.config.settings import settings
from src.core.errors import ErrorCategory, NotFoundError, ProviderError, TransientProviderError


class HTTPClientManager:
    """Process-wide pool of httpx clients, one per base URL."""

    _clients: ClassVar[dict[str, httpx.AsyncClient]] = {}
    _lock: ClassVar[threading.Lock] = threading.Lock()

    @classmethod
    def get_client(
        cls,
        base_url: str,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
        timeout: float = 15.0,
    ) -> httpx.AsyncClient:
        """Returns the shared client for a base URL, creating it on first use.

        Headers and auth are only applied when the client is created; later calls
        for the same base URL reuse the existing connection pool as-is.
        """
        key = base_url.rstrip("/")
        with cls._lock:
            client = cls._clients.get(key)
            if client is None or client.is_closed:
                client = httpx.AsyncClient(base_url=key, headers=headers or {}, auth=auth, timeout=timeout)
                cls._clients[key] = client
            return client

    @classmethod
    async def teardown(cls) -> None:
        """Closes every pooled transport. Called from the app and worker shutdown hooks."""
        with cls._lock:
            clients = list(cls._clients.values())
            cls._clients.clear()
        for client in clients:
            await client.aclose()


class BaseClient:
    """Base asynchronous client for external API interactions."""

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.client = client or HTTPClientManager.get_client(
            self.base_url, headers=self.headers, auth=auth, timeout=timeout
        )


class EmailAddress(BaseModel):
    id: str
    email_address: str


class IdentityUser(BaseModel):
    """User record as returned by the identity provider."""

    id: str
    first_name: str | None = None
    last_name: str | None = None
    email_addresses: list[EmailAddress] = Field(default_factory=list)
    primary_email_address_id: str | None = None
    image_url: str | None = None
    public_metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}

    @property
    def primary_email(self) -> str | None:
        for address in self.email_addresses:
            if address.id == self.primary_email_address_id:
                return address.email_address
        return self.email_addresses[0].email_address if self.email_addresses else None

    @property
    def metadata_role(self) -> Any:
        return self.public_metadata.get("role")

    @property
    def metadata_approved(self) -> Any:
        return self.public_metadata.get("approved")


class IdentityProviderClient(BaseClient):
    """Adapter for the identity provider's backend API (users, metadata, sessions)."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        headers = {"Authorization": f"Bearer {settings.IDENTITY_API_KEY}", "Accept": "application/json"}
        super().__init__(
            settings.IDENTITY_API_URL,
            headers=headers,
            timeout=settings.IDENTITY_TIMEOUT_SECONDS,
            client=client,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Issues a request and maps every failure onto the error taxonomy.

        Raises:
            NotFoundError: The provider answered 404.
            TransientProviderError: Timeouts, connection failures, 429 and 5xx answers.
            ProviderError: Any other non-success answer.
        """
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(
                f"Identity provider timed out on {method} {path}", category=ErrorCategory.TIMEOUT
            ) from e
        except httpx.RequestError as e:
            raise TransientProviderError(
                f"Identity provider unreachable on {method} {path}: {e!s}", category=ErrorCategory.CONNECTION_FAILED
            ) from e

        if response.status_code == status.HTTP_404_NOT_FOUND:
            raise NotFoundError(f"Identity provider has no resource at {path}")
        if response.status_code == status.HTTP_429_TOO_MANY_REQUESTS:
            raise TransientProviderError(
                f"Identity provider rate limited {method} {path}", category=ErrorCategory.RATE_LIMITED
            )
        if response.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            raise TransientProviderError(
                f"Identity provider error [{response.status_code}] on {method} {path}",
                category=ErrorCategory.UNKNOWN,
            )
        if response.status_code >= status.HTTP_400_BAD_REQUEST:
            logger.error(f"Identity provider rejected {method} {path} [{response.status_code}]: {response.text}")
            raise ProviderError(
                f"Identity provider rejected {method} {path} [{response.status_code}]",
                category=ErrorCategory.UNKNOWN,
            )
        return response

    async def get_user(self, user_id: str) -> IdentityUser:
        response = await self._request("GET", f"/users/{user_id}")
        return IdentityUser.model_validate(response.json())

    async def update_user_metadata(self, user_id: str, public_metadata: dict[str, Any]) -> IdentityUser:
        """Merges the given keys into the user's public metadata.

        The provider performs a shallow merge, so untouched keys survive.
        """
        response = await self._request(
            "PATCH", f"/users/{user_id}/metadata", json={"public_metadata": public_metadata}
        )
        return IdentityUser.model_validate(response.json())

    async def list_users(self, limit: int = 100, offset: int = 0) -> list[IdentityUser]:
        response = await self._request("GET", "/users", params={"limit": limit, "offset": offset})
        return [IdentityUser.model_validate(item) for item in response.json()]

    async def verify_session(self, session_id: str) -> str | None:
        """Resolves a session id to its user id.

        Returns:
            str | None: The owning user id when the session is active, otherwise None.
        """
        try:
            response = await self._request("GET", f"/sessions/{session_id}")
        except NotFoundError:
            return None
        payload = response.json()
        if payload.get("status") != "active":
            logger.info(f"Session {session_id} is not active (status={payload.get('status')})")
            return None
        return payload.get("user_id")

    async def ping(self) -> tuple[bool, str]:
        """Verifies API connectivity and authentication validity.

        Returns:
            tuple[bool, str]: A boolean indicating success, and a detailed status message.
        """
        try:
            await self._request("GET", "/users", params={"limit": 1})
            return True, "Connected & Authenticated"
        except ProviderError as e:
            return False, f"{e.category.value}: {e.message}"
        except NotFoundError as e:
            return False, e.message
