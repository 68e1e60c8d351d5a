"""Tests for the pairing HTTP API."""

import time
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from wapair.errors import (
    ConflictError,
    ConnectTimeoutError,
    ExpiryError,
    PairingCodeError,
    ValidationError,
)
from wapair.protocols import StatusRecord
from wapair.server import PAIR_MESSAGE, PairingServer, RateLimiter, status_code_for


class TestRateLimiter:
    """Tests for rate limiter."""

    def test_allows_up_to_limit(self):
        """Allows requests up to limit."""
        limiter = RateLimiter(max_requests=3, window_seconds=60)
        assert limiter.is_allowed("1.2.3.4") is True
        assert limiter.is_allowed("1.2.3.4") is True
        assert limiter.is_allowed("1.2.3.4") is True
        assert limiter.is_allowed("1.2.3.4") is False

    def test_different_keys_independent(self):
        """Different keys have independent limits."""
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        limiter.is_allowed("a")
        assert limiter.is_allowed("a") is False
        assert limiter.is_allowed("b") is True

    def test_window_reset(self):
        """Requests reset after window."""
        limiter = RateLimiter(max_requests=1, window_seconds=1)
        limiter.is_allowed("a")
        assert limiter.is_allowed("a") is False

        limiter.requests["a"] = [time.time() - 2]
        assert limiter.is_allowed("a") is True

    def test_idle_clients_are_forgotten(self):
        """Keys whose requests all fell out of the window are removed."""
        limiter = RateLimiter(max_requests=5, window_seconds=1)
        for i in range(100):
            limiter.is_allowed(f"10.0.0.{i}")
        assert len(limiter.requests) == 100

        for key in limiter.requests:
            limiter.requests[key] = [time.time() - 2]
        limiter.is_allowed("10.0.1.1")

        assert list(limiter.requests) == ["10.0.1.1"]

    def test_prune_without_requests(self):
        """Pruning drops expired keys even when no new request arrives."""
        limiter = RateLimiter(max_requests=5, window_seconds=60)
        limiter.is_allowed("a")

        limiter.prune(now=time.time() + 120)

        assert limiter.requests == {}


class TestStatusCodeFor:
    """Tests for error to HTTP status mapping."""

    @pytest.mark.parametrize(
        "error,status",
        [
            (ValidationError("bad"), 400),
            (ConflictError("dup"), 409),
            (PairingCodeError("no code"), 500),
            (ConnectTimeoutError("slow"), 504),
            (ExpiryError("late"), 504),
            (RuntimeError("other"), 500),
        ],
    )
    def test_mapping(self, error, status):
        assert status_code_for(error) == status


class TestPairingRoutes:
    """Routes driven by a real pairing manager with fake collaborators."""

    @pytest.fixture
    def app(self, manager):
        return PairingServer(manager).app

    @pytest.mark.asyncio
    async def test_health_endpoint(self, aiohttp_client, app):
        """Health endpoint returns OK."""
        client = await aiohttp_client(app)
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.text() == "OK"

    @pytest.mark.asyncio
    async def test_index_banner(self, aiohttp_client, app):
        """Root returns the service banner."""
        client = await aiohttp_client(app)
        resp = await client.get("/")
        data = await resp.json()
        assert resp.status == 200
        assert data["message"] == "Server is running!"
        assert "POST /pair - Start pairing" in data["endpoints"]

    @pytest.mark.asyncio
    async def test_pair_returns_code(self, aiohttp_client, app, manager):
        """A valid request is answered with the pairing code."""
        client = await aiohttp_client(app)
        resp = await client.post(
            "/pair", json={"phoneNumber": "+1 (555) 123-4567", "userId": "alice"}
        )
        data = await resp.json()

        assert resp.status == 200
        assert data["success"] is True
        assert data["pairingCode"] == "ABCD1234"
        assert data["sessionId"].startswith("test_alice_")
        assert data["message"] == PAIR_MESSAGE

        session = manager.get_session(data["sessionId"])
        assert session.phone_number == "15551234567"

    @pytest.mark.asyncio
    async def test_pair_invalid_json(self, aiohttp_client, app):
        """Unparseable bodies are rejected with 400."""
        client = await aiohttp_client(app)
        resp = await client.post("/pair", data=b"not json")
        data = await resp.json()
        assert resp.status == 400
        assert data == {"success": False, "error": "Phone number and user ID are required"}

    @pytest.mark.asyncio
    async def test_pair_non_object_body(self, aiohttp_client, app):
        """A JSON array is not a pairing request."""
        client = await aiohttp_client(app)
        resp = await client.post("/pair", json=["alice"])
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_pair_missing_fields(self, aiohttp_client, app):
        """Missing fields are rejected with 400."""
        client = await aiohttp_client(app)
        resp = await client.post("/pair", json={"userId": "alice"})
        data = await resp.json()
        assert resp.status == 400
        assert data["success"] is False

    @pytest.mark.asyncio
    async def test_pair_short_phone(self, aiohttp_client, app):
        """Too few digits are rejected with 400."""
        client = await aiohttp_client(app)
        resp = await client.post("/pair", json={"phoneNumber": "123", "userId": "alice"})
        data = await resp.json()
        assert resp.status == 400
        assert data["error"] == "Please enter a valid phone number"

    @pytest.mark.asyncio
    async def test_pair_conflict(self, aiohttp_client, app):
        """A second request for an active user is rejected with 409."""
        client = await aiohttp_client(app)
        body = {"phoneNumber": "15551234567", "userId": "alice"}
        first = await client.post("/pair", json=body)
        assert first.status == 200

        second = await client.post("/pair", json=body)
        assert second.status == 409
        assert (await second.json())["success"] is False

    @pytest.mark.asyncio
    async def test_status_of_active_session(self, aiohttp_client, app):
        """Sessions in memory report their live state."""
        client = await aiohttp_client(app)
        resp = await client.post(
            "/pair", json={"phoneNumber": "15551234567", "userId": "alice"}
        )
        session_id = (await resp.json())["sessionId"]

        resp = await client.get(f"/status/{session_id}")
        data = await resp.json()

        assert resp.status == 200
        assert data["success"] is True
        assert data["sessionId"] == session_id
        assert data["userId"] == "alice"
        assert data["state"] == "awaiting_user_confirmation"
        assert data["connected"] is False
        assert data["sessionActive"] is True
        assert data["displayStatus"]

    @pytest.mark.asyncio
    async def test_status_unknown_session(self, aiohttp_client, app):
        """Unknown ids are not an error."""
        client = await aiohttp_client(app)
        resp = await client.get("/status/nope")
        data = await resp.json()

        assert resp.status == 200
        assert data == {
            "success": True,
            "sessionId": "nope",
            "connected": False,
            "message": "not found",
        }

    @pytest.mark.asyncio
    async def test_status_falls_back_to_store(self, aiohttp_client, app, status_store):
        """Finished sessions are answered from the status store."""
        await status_store.insert(
            StatusRecord(
                user_id="bob",
                phone_number="15550000000",
                session_id="test_bob_abcdefghij",
                status="deployed",
                app_name="wapair-bob-1",
            )
        )
        client = await aiohttp_client(app)
        resp = await client.get("/status/test_bob_abcdefghij")
        data = await resp.json()

        assert data["success"] is True
        assert data["userId"] == "bob"
        assert data["status"] == "deployed"
        assert data["displayStatus"] == "Bot deployed and ready!"
        assert data["completed"] is True
        assert data["sessionActive"] is False
        assert data["appName"] == "wapair-bob-1"

    @pytest.mark.asyncio
    async def test_sessions_list_hides_codes(self, aiohttp_client, app, status_store):
        """Recent records are listed without pairing codes."""
        await status_store.insert(
            StatusRecord(
                user_id="bob",
                phone_number="15550000000",
                session_id="s_bob",
                status="failed",
                pairing_code="SECRET12",
            )
        )
        client = await aiohttp_client(app)
        resp = await client.get("/sessions")
        data = await resp.json()

        assert data["success"] is True
        assert data["total"] == 1
        record = data["sessions"][0]
        assert record["session_id"] == "s_bob"
        assert "pairing_code" not in record
        assert record["display_status"] == "Failed - please try again"

    @pytest.mark.asyncio
    async def test_admin_sessions(self, aiohttp_client, app):
        """Active in-memory sessions are listed."""
        client = await aiohttp_client(app)
        await client.post("/pair", json={"phoneNumber": "15551234567", "userId": "alice"})

        resp = await client.get("/admin/sessions")
        data = await resp.json()

        assert data["totalActive"] == 1
        active = data["activeSessions"][0]
        assert active["userId"] == "alice"
        assert active["pairingCode"] == "ABCD1234"

    @pytest.mark.asyncio
    async def test_cleanup_deletes_stale_records(self, aiohttp_client, app, status_store):
        """Old records that never deployed are removed."""
        old = datetime.now() - timedelta(days=30)
        await status_store.insert(
            StatusRecord(
                user_id="old",
                phone_number="15550000000",
                session_id="s_old",
                status="failed",
                created_at=old,
            )
        )
        await status_store.insert(
            StatusRecord(
                user_id="kept",
                phone_number="15550000001",
                session_id="s_kept",
                status="deployed",
                created_at=old,
            )
        )
        client = await aiohttp_client(app)
        resp = await client.delete("/cleanup")
        data = await resp.json()

        assert resp.status == 200
        assert data == {"success": True, "message": "Cleaned up 1 old sessions"}
        assert await status_store.get_by_user("old") is None
        assert await status_store.get_by_user("kept") is not None

    @pytest.mark.asyncio
    async def test_unknown_endpoint(self, aiohttp_client, app):
        """Unknown routes get a JSON 404."""
        client = await aiohttp_client(app)
        resp = await client.get("/nowhere")
        assert resp.status == 404
        assert await resp.json() == {"success": False, "error": "Endpoint not found"}

    @pytest.mark.asyncio
    async def test_wrong_method(self, aiohttp_client, app):
        """A known path with the wrong method is also a JSON 404."""
        client = await aiohttp_client(app)
        resp = await client.get("/pair")
        assert resp.status == 404


class TestPairingErrors:
    """Error mapping with a mocked pairing manager."""

    @pytest.fixture
    def mock_pairing_manager(self):
        manager = MagicMock()
        manager.get_session = MagicMock(return_value=None)
        manager.get_status_record = AsyncMock(return_value=None)
        manager.pair = AsyncMock()
        return manager

    @pytest.fixture
    def mock_store(self):
        store = MagicMock()
        store.list_recent = AsyncMock(return_value=[])
        store.delete_older_than = AsyncMock(return_value=0)
        return store

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,status",
        [
            (PairingCodeError("Failed to generate pairing code. Please try again."), 500),
            (ConnectTimeoutError("Timed out"), 504),
            (ExpiryError("Pairing code expired"), 504),
        ],
    )
    async def test_pair_failures(
        self, aiohttp_client, mock_pairing_manager, mock_store, error, status
    ):
        """Pairing failures keep their message and map to an HTTP status."""
        mock_pairing_manager.pair.side_effect = error
        server = PairingServer(mock_pairing_manager, status_store=mock_store)
        client = await aiohttp_client(server.app)

        resp = await client.post(
            "/pair", json={"phoneNumber": "15551234567", "userId": "alice"}
        )
        data = await resp.json()

        assert resp.status == status
        assert data == {"success": False, "error": str(error)}

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_json_500(
        self, aiohttp_client, mock_pairing_manager, mock_store
    ):
        """Unhandled exceptions become a generic JSON 500."""
        mock_pairing_manager.pair.side_effect = RuntimeError("boom")
        server = PairingServer(mock_pairing_manager, status_store=mock_store)
        client = await aiohttp_client(server.app)

        resp = await client.post(
            "/pair", json={"phoneNumber": "15551234567", "userId": "alice"}
        )
        assert resp.status == 500
        assert await resp.json() == {"success": False, "error": "Internal server error"}

    @pytest.mark.asyncio
    async def test_rate_limited(self, aiohttp_client, mock_pairing_manager, mock_store):
        """Requests over the per-IP limit get 429 without reaching the manager."""
        mock_pairing_manager.pair.side_effect = ValidationError("bad")
        server = PairingServer(
            mock_pairing_manager, status_store=mock_store, rate_limit_requests=1
        )
        client = await aiohttp_client(server.app)

        first = await client.post("/pair", json={})
        second = await client.post("/pair", json={})

        assert first.status == 400
        assert second.status == 429
        assert mock_pairing_manager.pair.await_count == 1

    @pytest.mark.asyncio
    async def test_sessions_store_failure(
        self, aiohttp_client, mock_pairing_manager, mock_store
    ):
        """Store errors on /sessions are reported as 500."""
        mock_store.list_recent.side_effect = RuntimeError("db down")
        server = PairingServer(mock_pairing_manager, status_store=mock_store)
        client = await aiohttp_client(server.app)

        resp = await client.get("/sessions")
        assert resp.status == 500
        assert (await resp.json())["error"] == "Failed to get sessions"

    @pytest.mark.asyncio
    async def test_cleanup_uses_retention(
        self, aiohttp_client, mock_pairing_manager, mock_store
    ):
        """Cleanup passes the configured retention to the store."""
        server = PairingServer(
            mock_pairing_manager, status_store=mock_store, retention_days=3
        )
        client = await aiohttp_client(server.app)

        resp = await client.delete("/cleanup")
        assert resp.status == 200
        mock_store.delete_older_than.assert_awaited_once_with(3)

    @pytest.mark.asyncio
    async def test_cleanup_failure(self, aiohttp_client, mock_pairing_manager, mock_store):
        """Store errors on /cleanup are reported as 500."""
        mock_store.delete_older_than.side_effect = RuntimeError("db down")
        server = PairingServer(mock_pairing_manager, status_store=mock_store)
        client = await aiohttp_client(server.app)

        resp = await client.delete("/cleanup")
        assert resp.status == 500
        assert (await resp.json())["error"] == "Cleanup failed"
