"""HTTP API for pairing requests and status queries.

Routes:
    GET    /                     service banner
    GET    /health               liveness check
    POST   /pair                 start pairing, answer with the pairing code
    GET    /status/{session_id}  session status (never 404)
    GET    /sessions             recent status records
    GET    /admin/sessions       in-memory sessions
    DELETE /cleanup              delete stale status records
"""

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, Optional

from aiohttp import web

from wapair import __version__
from wapair.errors import (
    ConflictError,
    ConnectTimeoutError,
    ExpiryError,
    PairingCodeError,
    ValidationError,
    WapairError,
)
from wapair.protocols import StatusRecord, StatusStoreProtocol
from wapair.status import display_status, status_for_state

if TYPE_CHECKING:
    from wapair.pairing.pairing_manager import PairingManager

logger = logging.getLogger(__name__)

PAIR_MESSAGE = "Enter this code in WhatsApp Linked Devices → Link a Device"

LINKED_STATUSES = frozenset({"connected", "deploying", "deployed"})

ERROR_STATUS = {
    ValidationError: 400,
    ConflictError: 409,
    PairingCodeError: 500,
    ConnectTimeoutError: 504,
    ExpiryError: 504,
}


class RateLimiter:
    """Sliding-window limit on /pair requests per client IP.

    Keys with no request inside the window are dropped.
    """

    def __init__(self, max_requests: int, window_seconds: int):
        """Initialize rate limiter.

        Args:
            max_requests: Maximum requests allowed in window.
            window_seconds: Window size in seconds.
        """
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Dict[str, list[float]] = {}

    def is_allowed(self, key: str) -> bool:
        """Record a request for key if it is within the limit.

        Args:
            key: Rate limit key (client IP).

        Returns:
            True if request is allowed, False if rate limited.
        """
        now = time.time()
        self.prune(now)

        recent = self.requests.setdefault(key, [])
        if len(recent) >= self.max_requests:
            return False
        recent.append(now)
        return True

    def prune(self, now: Optional[float] = None) -> None:
        """Drop timestamps outside the window and keys left empty."""
        cutoff = (time.time() if now is None else now) - self.window_seconds
        for key in list(self.requests):
            recent = [t for t in self.requests[key] if t > cutoff]
            if recent:
                self.requests[key] = recent
            else:
                del self.requests[key]


def error_response(message: str, status: int) -> web.Response:
    """JSON error body used by every route."""
    return web.json_response({"success": False, "error": message}, status=status)


def status_code_for(error: Exception) -> int:
    """HTTP status for an error raised while pairing."""
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return status
    return 500


@web.middleware
async def json_error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Turn unknown routes and unhandled exceptions into JSON errors."""
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return error_response("Endpoint not found", 404)
    except web.HTTPMethodNotAllowed:
        return error_response("Endpoint not found", 404)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Unhandled error on {request.method} {request.path}: {e}")
        return error_response("Internal server error", 500)


class PairingServer:
    """HTTP front end for the pairing manager.

    Rate limits POST /pair by client IP. The manager answers each pairing
    request exactly once; this layer only maps the outcome to HTTP.
    """

    def __init__(
        self,
        pairing_manager: "PairingManager",
        status_store: Optional[StatusStoreProtocol] = None,
        retention_days: int = 7,
        rate_limit_requests: int = 10,
        rate_limit_window: int = 60,
    ):
        """Initialize pairing server.

        Args:
            pairing_manager: Pairing manager that owns the sessions.
            status_store: Store for /sessions and /cleanup. Defaults to the
                manager's store.
            retention_days: Age limit used by DELETE /cleanup.
            rate_limit_requests: Max /pair requests per client IP per window.
            rate_limit_window: Rate limit window in seconds.
        """
        self.pairing_manager = pairing_manager
        self.status_store = status_store or pairing_manager.status_store
        self.retention_days = retention_days
        self.ip_limiter = RateLimiter(rate_limit_requests, rate_limit_window)
        self.app = web.Application(middlewares=[json_error_middleware])
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up HTTP routes."""
        self.app.router.add_get("/", self._handle_index)
        self.app.router.add_get("/health", self._handle_health)
        self.app.router.add_post("/pair", self._handle_pair)
        self.app.router.add_get("/status/{session_id}", self._handle_status)
        self.app.router.add_get("/sessions", self._handle_sessions)
        self.app.router.add_get("/admin/sessions", self._handle_admin_sessions)
        self.app.router.add_delete("/cleanup", self._handle_cleanup)

    async def _handle_index(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "wapair pairing API",
                "version": __version__,
                "message": "Server is running!",
                "endpoints": [
                    "POST /pair - Start pairing",
                    "GET /status/{sessionId} - Check status",
                    "GET /sessions - List recent sessions",
                ],
            }
        )

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.Response(text="OK")

    async def _handle_pair(self, request: web.Request) -> web.Response:
        """Handle a pairing request.

        Body: {"phoneNumber": str, "userId": str}

        Returns:
            200 with the pairing code, or a JSON error.
        """
        client_ip = request.remote or "unknown"
        if not self.ip_limiter.is_allowed(client_ip):
            logger.warning(f"Rate limited /pair from {client_ip}")
            return error_response("Too many requests. Please try again later.", 429)

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = None
        if not isinstance(body, dict):
            return error_response("Phone number and user ID are required", 400)

        logger.info(f"Pairing request received for {body.get('userId')!r}")
        try:
            session, code = await self.pairing_manager.pair(
                body.get("userId"), body.get("phoneNumber")
            )
        except WapairError as e:
            status = status_code_for(e)
            if status >= 500:
                logger.error(f"Pairing failed: {e}")
            return error_response(str(e), status)

        return web.json_response(
            {
                "success": True,
                "pairingCode": code,
                "sessionId": session.session_id,
                "message": PAIR_MESSAGE,
            }
        )

    async def _handle_status(self, request: web.Request) -> web.Response:
        """Report a session's status from memory, else from the status store."""
        session_id = request.match_info["session_id"]

        session = self.pairing_manager.get_session(session_id)
        if session is not None:
            status = session.status or status_for_state(session.state)
            body = session.to_dict()
            body.update(
                success=True,
                status=status,
                displayStatus=display_status(status),
                sessionActive=not session.state.is_terminal,
            )
            return web.json_response(body)

        record = await self.pairing_manager.get_status_record(session_id)
        if record is None:
            return web.json_response(
                {
                    "success": True,
                    "sessionId": session_id,
                    "connected": False,
                    "message": "not found",
                }
            )

        return web.json_response(
            {
                "success": True,
                "sessionId": record.session_id,
                "userId": record.user_id,
                "connected": False,
                "state": record.status,
                "status": record.status,
                "displayStatus": display_status(record.status),
                "sessionActive": False,
                "completed": record.status in LINKED_STATUSES,
                "appName": record.app_name,
            }
        )

    async def _handle_sessions(self, request: web.Request) -> web.Response:
        try:
            records = await self.status_store.list_recent(limit=50)
        except Exception as e:
            logger.error(f"Sessions list failed: {e}")
            return error_response("Failed to get sessions", 500)

        sessions = [_public_record(r) for r in records]
        return web.json_response(
            {"success": True, "total": len(sessions), "sessions": sessions}
        )

    async def _handle_admin_sessions(self, request: web.Request) -> web.Response:
        active = [
            {
                "sessionId": s.session_id,
                "userId": s.user_id,
                "phoneNumber": s.phone_number,
                "state": s.state.value,
                "connected": s.connected,
                "pairingCode": s.pairing_code,
            }
            for s in self.pairing_manager.registry.list_all()
            if not s.state.is_terminal
        ]
        return web.json_response(
            {"success": True, "activeSessions": active, "totalActive": len(active)}
        )

    async def _handle_cleanup(self, request: web.Request) -> web.Response:
        try:
            count = await self.status_store.delete_older_than(self.retention_days)
        except Exception as e:
            logger.error(f"Cleanup failed: {e}")
            return error_response("Cleanup failed", 500)

        logger.info(f"Cleaned up {count} old status records")
        return web.json_response(
            {"success": True, "message": f"Cleaned up {count} old sessions"}
        )

    async def start(self, host: str, port: int) -> web.AppRunner:
        """Start the HTTP server.

        Args:
            host: Host to bind to.
            port: Port to bind to.

        Returns:
            App runner (for cleanup).
        """
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info(f"Pairing server started on {host}:{port}")
        return runner


def _public_record(record: StatusRecord) -> dict[str, Any]:
    """Status record fields exposed by GET /sessions."""
    data = record.to_dict()
    data.pop("pairing_code", None)
    data["display_status"] = display_status(record.status)
    return data

