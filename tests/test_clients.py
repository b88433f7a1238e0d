import asyncio
import json
import unittest
from unittest.mock import AsyncMock

import httpx

from src.core.clients import HTTPClientManager, IdentityProviderClient
from src.core.errors import ErrorCategory, NotFoundError, ProviderError, TransientProviderError


class TestHTTPClientManager(unittest.IsolatedAsyncioTestCase):
    """Test suite for the thread-safe HTTP connection pool manager."""

    async def asyncTearDown(self) -> None:
        """Ensures the global state is purged after each test."""
        await HTTPClientManager.teardown()

    def test_get_client_enforces_singleton_by_base_url(self) -> None:
        """Verifies that multiple requests for the same domain yield the exact same memory reference."""
        url = "https://identity.test/v1"

        client_a = HTTPClientManager.get_client(url, headers={}, auth=None)
        client_b = HTTPClientManager.get_client(f"{url}/", headers={"Authorization": "Bearer x"}, auth=None)

        self.assertIs(client_a, client_b, "Manager instantiated multiple connection pools for the same domain.")

    def test_get_client_isolates_different_domains(self) -> None:
        identity_client = HTTPClientManager.get_client("https://identity.test", headers={}, auth=None)
        seq_client = HTTPClientManager.get_client("https://seq.internal", headers={}, auth=None)

        self.assertIsNot(identity_client, seq_client)

    async def test_teardown_closes_all_transports(self) -> None:
        """Verifies that teardown cascades the aclose() command to all active transports."""
        identity_client = HTTPClientManager.get_client("https://identity.test", headers={}, auth=None)
        seq_client = HTTPClientManager.get_client("https://seq.internal", headers={}, auth=None)

        identity_client.aclose = AsyncMock()
        seq_client.aclose = AsyncMock()

        await HTTPClientManager.teardown()

        identity_client.aclose.assert_awaited_once()
        seq_client.aclose.assert_awaited_once()
        self.assertEqual(len(HTTPClientManager._clients), 0, "Manager dictionary was not cleared after teardown.")

    async def test_thread_safety_under_load(self) -> None:
        """Verifies that highly concurrent requests do not bypass the dictionary lock."""
        await HTTPClientManager.teardown()
        url = "https://race.condition.test"

        async def fetch_client():
            await asyncio.sleep(0.01)
            return HTTPClientManager.get_client(url, headers={}, auth=None)

        results = await asyncio.gather(*[fetch_client() for _ in range(50)])

        self.assertEqual(len(HTTPClientManager._clients), 1)
        for client in results:
            self.assertIs(client, results[0])


class TestIdentityProviderClient(unittest.IsolatedAsyncioTestCase):
    """Test suite for identity API calls and error categorization."""

    def _client(self, handler) -> IdentityProviderClient:
        transport = httpx.MockTransport(handler)
        http = httpx.AsyncClient(base_url="https://identity.test/v1", transport=transport)
        return IdentityProviderClient(client=http)

    async def test_get_user_parses_payload(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.path, "/v1/users/user_1")
            return httpx.Response(
                200,
                json={
                    "id": "user_1",
                    "first_name": "Jane",
                    "email_addresses": [
                        {"id": "e1", "email_address": "old@example.com"},
                        {"id": "e2", "email_address": "jane@example.com"},
                    ],
                    "primary_email_address_id": "e2",
                    "public_metadata": {"role": "agent", "approved": True},
                    "unrelated_field": 1,
                },
            )

        user = await self._client(handler).get_user("user_1")

        self.assertEqual(user.primary_email, "jane@example.com")
        self.assertEqual(user.metadata_role, "agent")
        self.assertTrue(user.metadata_approved)

    async def test_update_metadata_sends_patch(self) -> None:
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "user_1", "public_metadata": captured["body"]["public_metadata"]})

        user = await self._client(handler).update_user_metadata("user_1", {"role": "admin", "approved": True})

        self.assertEqual(captured["method"], "PATCH")
        self.assertEqual(captured["body"], {"public_metadata": {"role": "admin", "approved": True}})
        self.assertEqual(user.metadata_role, "admin")

    async def test_status_codes_map_to_error_categories(self) -> None:
        cases = [
            (404, NotFoundError, None),
            (429, TransientProviderError, ErrorCategory.RATE_LIMITED),
            (503, TransientProviderError, ErrorCategory.UNKNOWN),
            (422, ProviderError, ErrorCategory.UNKNOWN),
        ]
        for status_code, error_type, category in cases:
            with self.subTest(status_code=status_code):
                client = self._client(lambda request, code=status_code: httpx.Response(code, json={}))
                with self.assertRaises(error_type) as ctx:
                    await client.get_user("user_1")
                if category is not None:
                    self.assertEqual(ctx.exception.category, category)

    async def test_network_failures_are_transient(self) -> None:
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        def refused(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(TransientProviderError) as ctx:
            await self._client(timeout).get_user("user_1")
        self.assertEqual(ctx.exception.category, ErrorCategory.TIMEOUT)

        with self.assertRaises(TransientProviderError) as ctx:
            await self._client(refused).get_user("user_1")
        self.assertEqual(ctx.exception.category, ErrorCategory.CONNECTION_FAILED)

    async def test_verify_session(self) -> None:
        sessions = {
            "sess_active": {"status": "active", "user_id": "user_1"},
            "sess_ended": {"status": "ended", "user_id": "user_1"},
        }

        def handler(request: httpx.Request) -> httpx.Response:
            session_id = request.url.path.rsplit("/", 1)[-1]
            if session_id not in sessions:
                return httpx.Response(404, json={})
            return httpx.Response(200, json=sessions[session_id])

        client = self._client(handler)
        self.assertEqual(await client.verify_session("sess_active"), "user_1")
        self.assertIsNone(await client.verify_session("sess_ended"))
        self.assertIsNone(await client.verify_session("sess_missing"))

    async def test_ping_reports_failure_category(self) -> None:
        ok, detail = await self._client(lambda request: httpx.Response(200, json=[])).ping()
        self.assertTrue(ok)

        ok, detail = await self._client(lambda request: httpx.Response(401, json={})).ping()
        self.assertFalse(ok)
        self.assertIn("unknown", detail)


if __name__ == "__main__":
    unittest.main()
