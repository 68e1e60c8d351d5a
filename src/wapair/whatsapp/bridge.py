"""WhatsApp client backed by a WAHA-compatible HTTP bridge.

The bridge runs the multi-device protocol; this module drives one bridge
session per pairing session over its REST API and turns the session
status it reports into ConnectionUpdate events:

    STARTING      -> connection="connecting"
    SCAN_QR_CODE  -> ready=True (a pairing code may be requested)
    WORKING       -> credentials snapshot, then connection="open"
    FAILED/STOPPED -> connection="close"

Usage:
    factory = BridgeClientFactory(config.bridge)
    client = await factory.connect(session_id, store, on_update, on_credentials)
    code = await client.request_pairing_code("15551234567")
"""

import asyncio
import json
import logging
from typing import Any, Optional

import aiohttp

from wapair.config import BridgeConfig
from wapair.errors import BridgeError
from wapair.protocols import ConnectionUpdate, CredentialsCallback, UpdateCallback

logger = logging.getLogger(__name__)

STATUS_UPDATES = {
    "STARTING": ConnectionUpdate(connection="connecting"),
    "SCAN_QR_CODE": ConnectionUpdate(ready=True),
}

CLOSED_STATUSES = frozenset({"FAILED", "STOPPED"})

CREDENTIALS_FILE = "creds.json"


class BridgeClient:
    """One bridge session bound to one pairing session.

    Status is polled in a background task; events are delivered through
    the callbacks given at construction, in the order they are observed.
    """

    # Consecutive poll failures tolerated before reporting a close
    MAX_POLL_FAILURES = 5

    def __init__(
        self,
        session_name: str,
        base_url: str,
        http_session: aiohttp.ClientSession,
        on_update: UpdateCallback,
        on_credentials: CredentialsCallback,
        api_key: Optional[str] = None,
        poll_interval: float = 1.0,
        request_timeout: float = 30.0,
    ):
        """Initialize bridge client.

        Args:
            session_name: Bridge session name (the pairing session id).
            base_url: Bridge base URL.
            http_session: Shared aiohttp session.
            on_update: Connection-update callback.
            on_credentials: Credential snapshot callback.
            api_key: Optional X-Api-Key header value.
            poll_interval: Seconds between status polls.
            request_timeout: Per-request timeout in seconds.
        """
        self.session_name = session_name
        self._base_url = base_url.rstrip("/")
        self._session = http_session
        self._on_update = on_update
        self._on_credentials = on_credentials
        self._api_key = api_key
        self._poll_interval = poll_interval
        self._request_timeout = request_timeout

        self._last_status: Optional[str] = None
        self._me: Optional[dict[str, Any]] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def is_running(self) -> bool:
        """Check if the status poller is running."""
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self) -> None:
        """Start the bridge session and begin polling its status.

        Raises:
            BridgeError: If the bridge refuses to start the session.
        """
        await self._request(
            "POST",
            "/api/sessions/start",
            payload={"name": self.session_name},
            accept=(422,),  # already started
        )
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.debug(f"Bridge session started: {self.session_name}")

    async def request_pairing_code(self, phone_number: str) -> str:
        """Ask the bridge for a pairing code for the phone number.

        Raises:
            BridgeError: If the request fails or no code is returned.
        """
        data = await self._request(
            "POST",
            f"/api/{self.session_name}/auth/request-code",
            payload={"phoneNumber": phone_number},
        )
        code = data.get("code") if isinstance(data, dict) else None
        if not code:
            raise BridgeError("Bridge returned no pairing code")
        return str(code)

    async def send_message(self, text: str) -> None:
        """Send a text message to the linked account's own chat."""
        if not self._me or not self._me.get("id"):
            raise BridgeError("Account not linked yet")
        await self._request(
            "POST",
            "/api/sendText",
            payload={
                "session": self.session_name,
                "chatId": self._me["id"],
                "text": text,
            },
        )

    async def close(self) -> None:
        """Stop polling and stop the bridge session. Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        if self._poll_task and self._poll_task is not asyncio.current_task():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
        self._poll_task = None

        try:
            await self._request(
                "POST", "/api/sessions/stop", payload={"name": self.session_name}
            )
        except BridgeError as e:
            logger.debug(f"Bridge stop failed for {self.session_name}: {e}")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        failures = 0
        while not self._closed:
            try:
                data = await self._request("GET", f"/api/sessions/{self.session_name}")
                failures = 0
            except BridgeError as e:
                failures += 1
                logger.warning(
                    f"Status poll failed for {self.session_name} "
                    f"({failures}/{self.MAX_POLL_FAILURES}): {e}"
                )
                if failures >= self.MAX_POLL_FAILURES:
                    await self._emit(ConnectionUpdate(connection="close", reason=str(e)))
                    failures = 0
            else:
                status = data.get("status") if isinstance(data, dict) else None
                if status and status != self._last_status:
                    self._last_status = status
                    await self._handle_status(status)
            await asyncio.sleep(self._poll_interval)

    async def _handle_status(self, status: str) -> None:
        logger.debug(f"Bridge session {self.session_name} status: {status}")
        if status in STATUS_UPDATES:
            await self._emit(STATUS_UPDATES[status])
        elif status == "WORKING":
            await self._snapshot_credentials()
            await self._emit(ConnectionUpdate(connection="open"))
        elif status in CLOSED_STATUSES:
            await self._emit(ConnectionUpdate(connection="close", reason=status))

    async def _snapshot_credentials(self) -> None:
        """Fetch the linked account and hand it to the credentials callback."""
        try:
            me = await self._request("GET", f"/api/sessions/{self.session_name}/me")
        except BridgeError as e:
            logger.warning(f"Could not read account for {self.session_name}: {e}")
            return
        if not isinstance(me, dict):
            return
        self._me = me
        snapshot = {"session": self.session_name, "me": me}
        await self._on_credentials(
            {CREDENTIALS_FILE: json.dumps(snapshot, indent=2).encode()}
        )

    async def _emit(self, update: ConnectionUpdate) -> None:
        try:
            await self._on_update(update)
        except Exception as e:
            logger.error(f"Update callback failed for {self.session_name}: {e}")

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
        accept: tuple[int, ...] = (),
    ) -> Any:
        """Call the bridge API and return the decoded JSON body (or None).

        Raises:
            BridgeError: On network errors and unexpected status codes.
        """
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["X-Api-Key"] = self._api_key

        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(
                method,
                url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self._request_timeout),
            ) as response:
                if response.status >= 400 and response.status not in accept:
                    body = await response.text()
                    raise BridgeError(
                        f"{method} {path} failed with status {response.status}: "
                        f"{body[:200]}"
                    )
                if response.content_type != "application/json":
                    return None
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BridgeError(f"{method} {path} failed: {e}") from e


class BridgeClientFactory:
    """Opens BridgeClient connections sharing one aiohttp session."""

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize factory.

        Args:
            config: Bridge configuration.
            http_session: Optional aiohttp session (created lazily if None).
        """
        self.config = config or BridgeConfig()
        self._session = http_session
        self._owns_session = http_session is None

    async def connect(
        self,
        session_id: str,
        credentials: Any,
        on_update: UpdateCallback,
        on_credentials: CredentialsCallback,
    ) -> BridgeClient:
        """Start a bridge session for a pairing session.

        The bridge keeps its own auth state; the credential store receives
        the snapshot delivered through on_credentials.

        Raises:
            BridgeError: If the bridge session could not be started.
        """
        if self._session is None:
            self._session = aiohttp.ClientSession()

        client = BridgeClient(
            session_name=session_id,
            base_url=self.config.base_url,
            http_session=self._session,
            on_update=on_update,
            on_credentials=on_credentials,
            api_key=self.config.api_key,
            poll_interval=self.config.poll_interval,
            request_timeout=self.config.request_timeout,
        )
        await client.start()
        return client

    async def close(self) -> None:
        """Close the HTTP session if this factory created it."""
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None
