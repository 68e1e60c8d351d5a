"""Pairing manager orchestrates the pairing-session lifecycle.

Coordinates the WhatsApp client connection, the single pairing-code
request, the single HTTP response, expiry, and the deploy handoff once
the device is linked.
"""

import asyncio
import logging
import time
from datetime import datetime
from functools import partial
from typing import Any, Coroutine, Iterable, Optional

from wapair.config import PairingConfig
from wapair.errors import (
    ConflictError,
    ConnectTimeoutError,
    DeployError,
    ExpiryError,
    PairingCodeError,
    WapairError,
)
from wapair.pairing.credentials import CredentialRoot
from wapair.pairing.registry import SessionRegistry
from wapair.pairing.session import PairingSession, PairingState
from wapair.protocols import (
    ClientFactoryProtocol,
    ConnectionUpdate,
    DeployPipelineProtocol,
    StatusRecord,
    StatusStoreProtocol,
)
from wapair.status import NullStatusStore, status_for_state
from wapair.validation import (
    generate_session_id,
    normalize_phone_number,
    validate_user_id,
)

logger = logging.getLogger(__name__)

PRE_CONNECT_STATES = frozenset(
    {
        PairingState.INITIALIZING,
        PairingState.AWAITING_PAIRING_CODE,
        PairingState.AWAITING_USER_CONFIRMATION,
    }
)

WELCOME_MESSAGE = (
    "Hello! You're now connected.\n\n"
    "Your bot is being deployed to Heroku...\n"
    "Please wait a moment while we set up everything!"
)

DEPLOYED_MESSAGE = (
    "Deployment Successful!\n\n"
    "Your bot is now live!\n"
    "Heroku App: {app_name}\n"
    "Bot is ready to use!"
)


class PairingManager:
    """Orchestrates pairing sessions from creation to a terminal state.

    Every state change for a session happens under that session's lock,
    which keeps the pairing code and the HTTP response single-shot. Network
    calls (pairing-code request, deploy handoff) run outside the lock.
    """

    def __init__(
        self,
        client_factory: ClientFactoryProtocol,
        deploy_pipeline: DeployPipelineProtocol,
        credential_root: CredentialRoot,
        status_store: Optional[StatusStoreProtocol] = None,
        config: Optional[PairingConfig] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        """Initialize pairing manager.

        Args:
            client_factory: Opens WhatsApp client connections.
            deploy_pipeline: Receives credential artifacts once linked.
            credential_root: Provisions per-session credential stores.
            status_store: Optional durable status sink.
            config: Pairing timeouts and policy.
            registry: Session registry (created if not given).
        """
        self.client_factory = client_factory
        self.deploy_pipeline = deploy_pipeline
        self.credential_root = credential_root
        self.status_store = status_store or NullStatusStore()
        self.config = config or PairingConfig()
        self.registry = registry or SessionRegistry()
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_session(self, user_id: Any, phone_number: Any) -> PairingSession:
        """Validate input and register a new session.

        Args:
            user_id: Caller-supplied user id.
            phone_number: Raw phone number.

        Returns:
            The new session in INITIALIZING state.

        Raises:
            ValidationError: If input is malformed.
            ConflictError: If the user already has an active session.
        """
        user_id = validate_user_id(user_id)
        phone = normalize_phone_number(phone_number, self.config.min_phone_digits)

        self._check_no_active_session(user_id)
        if self.config.unique_user_ids:
            existing = await self.status_store.get_by_user(user_id)
            if existing is not None:
                raise ConflictError(
                    "User ID already exists. Please choose a different one."
                )
            # Another request may have registered while we awaited
            self._check_no_active_session(user_id)

        session_id = generate_session_id(self.config.session_prefix, user_id)
        credentials = self.credential_root.provision(session_id)
        session = PairingSession(
            session_id=session_id,
            user_id=user_id,
            phone_number=phone,
            credentials=credentials,
        )
        session.status = status_for_state(session.state)
        self.registry.add(session)
        session.expiry_task = self._spawn(self._expire_after(session))

        try:
            await self.status_store.insert(
                StatusRecord(
                    user_id=user_id,
                    phone_number=phone,
                    session_id=session_id,
                    status=status_for_state(session.state),
                )
            )
        except Exception as e:
            logger.warning(f"Status store insert failed for {user_id}: {e}")

        logger.info(f"Pairing session created: {session_id} for {user_id}")
        return session

    async def start_pairing(self, session: PairingSession) -> str:
        """Connect the WhatsApp client and wait for the pairing code.

        Returns:
            The pairing code.

        Raises:
            PairingCodeError: If the client could not produce a code.
            ConnectTimeoutError: If no code arrived within connect_timeout.
            ExpiryError: If the session expired first.
            ValueError: If pairing was already started for the session.
        """
        async with session.lock:
            if session.state is not PairingState.INITIALIZING:
                raise ValueError(f"Pairing already started: {session.state}")
            session.transition_to(PairingState.AWAITING_PAIRING_CODE)
            # connect_timeout covers the connect itself, not just the code
            session.connect_task = self._spawn(self._connect(session))

        return await self._await_code(session)

    async def pair(self, user_id: Any, phone_number: Any) -> tuple[PairingSession, str]:
        """Create a session and run it up to the pairing code."""
        session = await self.create_session(user_id, phone_number)
        code = await self.start_pairing(session)
        return session, code

    def get_session(self, session_id: str) -> Optional[PairingSession]:
        """Get a pairing session by ID."""
        return self.registry.get(session_id)

    async def get_status_record(self, session_id: str) -> Optional[StatusRecord]:
        """Look up the durable record for a session no longer in memory."""
        try:
            return await self.status_store.get_by_session(session_id)
        except Exception as e:
            logger.warning(f"Status store lookup failed: {e}")
            return None

    async def stop(self) -> None:
        """Close every session's client and cancel background tasks."""
        for session in self.registry.list_all():
            session.cancel_expiry()
            await self._close_client(session)
            if session.state in PRE_CONNECT_STATES:
                session.credentials.release()
            self.registry.remove(session.session_id)

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info("Pairing manager stopped")

    # ------------------------------------------------------------------
    # Pairing code
    # ------------------------------------------------------------------

    def _check_no_active_session(self, user_id: str) -> None:
        if self.registry.find_active_by_user(user_id) is not None:
            raise ConflictError("User ID already has an active pairing session")

    async def _connect(self, session: PairingSession) -> None:
        try:
            client = await self.client_factory.connect(
                session.session_id,
                session.credentials,
                on_update=partial(self._on_connection_update, session.session_id),
                on_credentials=partial(self._on_credentials, session.session_id),
            )
        except Exception as e:
            logger.error(f"WhatsApp connect failed for {session.session_id}: {e}")
            await self._terminate(
                session,
                PairingState.FAILED,
                PairingCodeError("Failed to generate pairing code. Please try again."),
            )
            return
        await self._attach_client(session, client)

    async def _attach_client(self, session: PairingSession, client: Any) -> None:
        """Bind the connected client, or close it if the session already ended."""
        async with session.lock:
            if session.state.is_terminal:
                stale = True
            else:
                stale = False
                session.client = client
                self._maybe_request_code(session)

        if stale:
            logger.debug(f"Closing client for ended session {session.session_id}")
            await client.close()

    def _maybe_request_code(self, session: PairingSession) -> None:
        """Issue the pairing-code request once. Caller holds session.lock."""
        if (
            session.code_requested
            or not session.client_ready
            or session.client is None
            or session.state is not PairingState.AWAITING_PAIRING_CODE
        ):
            return
        session.code_requested = True
        self._spawn(self._request_code(session, session.client))

    async def _request_code(self, session: PairingSession, client: Any) -> None:
        logger.info(f"Requesting pairing code for {session.session_id}")
        try:
            code = await client.request_pairing_code(session.phone_number)
        except Exception as e:
            logger.error(f"Pairing code request failed for {session.session_id}: {e}")
            await self._terminate(
                session,
                PairingState.FAILED,
                PairingCodeError("Failed to generate pairing code. Please try again."),
            )
            return

        async with session.lock:
            if session.state is not PairingState.AWAITING_PAIRING_CODE:
                logger.warning(
                    f"Ignoring pairing code for {session.session_id} "
                    f"in state {session.state.value}"
                )
                return
            session.set_pairing_code(code)
            session.transition_to(PairingState.AWAITING_USER_CONFIRMATION)
            session.send_response(code)

        logger.info(f"Pairing code issued for {session.session_id}")
        await self._record(
            session,
            status=status_for_state(session.state),
            pairing_code=code,
        )

    async def _await_code(self, session: PairingSession) -> str:
        """Wait for the single response, bounded by connect_timeout."""
        try:
            response = await asyncio.wait_for(
                session.wait_response(), timeout=self.config.connect_timeout
            )
        except asyncio.TimeoutError:
            await self._terminate(
                session,
                PairingState.FAILED,
                ConnectTimeoutError("Timed out waiting for pairing code"),
                from_states=(
                    PairingState.INITIALIZING,
                    PairingState.AWAITING_PAIRING_CODE,
                ),
            )
            response = await session.wait_response()

        if isinstance(response, Exception):
            raise response
        return response

    # ------------------------------------------------------------------
    # Client events
    # ------------------------------------------------------------------

    async def _on_connection_update(self, session_id: str, update: ConnectionUpdate) -> None:
        """Single event entry point for one session's client."""
        session = self.registry.get(session_id)
        if session is None:
            return

        status = None
        linked = False
        async with session.lock:
            if update.ready and not session.client_ready:
                session.client_ready = True
                self._maybe_request_code(session)

            if update.connection == "connecting":
                if session.state in PRE_CONNECT_STATES:
                    status = "connecting"

            elif update.connection == "open":
                if session.state is PairingState.AWAITING_USER_CONFIRMATION:
                    session.transition_to(PairingState.CONNECTED)
                    session.connected_at = time.time()
                    session.disconnected = False
                    session.cancel_expiry()
                    linked = True
                else:
                    logger.debug(
                        f"Ignoring open for {session_id} in {session.state.value}"
                    )

            elif update.connection == "close":
                if session.state is PairingState.AWAITING_USER_CONFIRMATION:
                    # Transport closes after the code is issued; user still linking
                    status = "waiting_for_user"
                elif session.state.is_linked:
                    session.disconnected = True
                    if session.state is not PairingState.DEPLOYED:
                        status = "disconnected"
                    logger.info(
                        f"Connection closed for {session_id} "
                        f"({update.reason or 'no reason'})"
                    )

        if linked:
            logger.info(f"Device linked for session {session_id}")
            await self._record(
                session,
                status=status_for_state(PairingState.CONNECTED),
                connected_at=_as_datetime(session.connected_at),
            )
            session.deploy_task = self._spawn(self._on_linked(session))
        elif status:
            await self._record(session, status=status)

    async def _on_credentials(self, session_id: str, files: dict[str, bytes]) -> None:
        """Persist credential files emitted by the client."""
        session = self.registry.get(session_id)
        if session is None:
            return
        async with session.lock:
            if session.state.is_terminal:
                return
            session.credentials.write_many(files)

    # ------------------------------------------------------------------
    # Deploy handoff
    # ------------------------------------------------------------------

    async def _on_linked(self, session: PairingSession) -> None:
        await self._send_best_effort(session, WELCOME_MESSAGE)
        if self.config.deploy_delay > 0:
            # Let the client flush its final credential writes
            await asyncio.sleep(self.config.deploy_delay)
        await self._deploy(session)

    async def _deploy(self, session: PairingSession) -> None:
        async with session.lock:
            if session.state is not PairingState.CONNECTED:
                return
            session.transition_to(PairingState.DEPLOYING)

        logger.info(f"Deploying session {session.session_id} for {session.user_id}")
        await self._record(session, status=status_for_state(PairingState.DEPLOYING))

        try:
            artifacts = session.credentials.read_all()
            session.credentials.handed_off = True
            result = await self.deploy_pipeline.submit(
                session.session_id,
                artifacts,
                {"user_id": session.user_id, "phone_number": session.phone_number},
            )
        except Exception as e:
            error = e if isinstance(e, DeployError) else DeployError(str(e))
            logger.error(f"Deploy failed for {session.session_id}: {error}")
            # Credentials stay on disk for a manual retry
            await self._terminate(
                session,
                PairingState.FAILED,
                error,
                status="deployment_failed",
                from_states=(PairingState.DEPLOYING,),
                release_credentials=False,
            )
            return

        async with session.lock:
            if session.state is not PairingState.DEPLOYING:
                return
            session.transition_to(PairingState.DEPLOYED)
            session.deployed_at = time.time()
            session.app_name = result.app_name

        logger.info(f"Bot deployed for {session.user_id}: {result.app_name}")
        await self._record(
            session,
            status=status_for_state(PairingState.DEPLOYED),
            app_name=result.app_name,
            deployed_at=_as_datetime(session.deployed_at),
        )
        await self._send_best_effort(
            session, DEPLOYED_MESSAGE.format(app_name=result.app_name)
        )
        await self._cleanup(session, release_credentials=True)

    async def _send_best_effort(self, session: PairingSession, text: str) -> None:
        client = session.client
        if client is None:
            return
        try:
            await client.send_message(text)
        except Exception as e:
            logger.warning(f"Could not send message for {session.session_id}: {e}")

    # ------------------------------------------------------------------
    # Expiry and cleanup
    # ------------------------------------------------------------------

    async def _expire_after(self, session: PairingSession) -> None:
        await asyncio.sleep(self.config.expiry_timeout)
        expired = await self._terminate(
            session,
            PairingState.EXPIRED,
            ExpiryError("Pairing code expired"),
            from_states=PRE_CONNECT_STATES,
        )
        if expired:
            logger.info(f"Pairing session expired: {session.session_id}")

    async def _terminate(
        self,
        session: PairingSession,
        new_state: PairingState,
        error: WapairError,
        status: Optional[str] = None,
        from_states: Optional[Iterable[PairingState]] = None,
        release_credentials: bool = True,
    ) -> bool:
        """Move a session to FAILED or EXPIRED and clean it up.

        Returns:
            True if this call performed the transition.
        """
        async with session.lock:
            if session.state.is_terminal:
                return False
            if from_states is not None and session.state not in from_states:
                return False
            session.transition_to(new_state)
            session.error = str(error)
            session.cancel_expiry()
            session.send_response(error)

        await self._record(session, status=status or status_for_state(new_state))
        await self._cleanup(session, release_credentials=release_credentials)
        return True

    async def _cleanup(self, session: PairingSession, release_credentials: bool) -> None:
        """Release resources of a terminal session and schedule removal."""
        session.cancel_expiry()
        connect_task, session.connect_task = session.connect_task, None
        if (
            connect_task is not None
            and not connect_task.done()
            and connect_task is not asyncio.current_task()
        ):
            connect_task.cancel()
        await self._close_client(session)
        if release_credentials:
            session.credentials.release()
        session.removal_task = self._spawn(self._remove_after_grace(session.session_id))
        logger.info(
            f"Pairing session cleaned up: {session.session_id} "
            f"({session.state.value})"
        )

    async def _close_client(self, session: PairingSession) -> None:
        client, session.client = session.client, None
        if client is None:
            return
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"Error closing client for {session.session_id}: {e}")

    async def _remove_after_grace(self, session_id: str) -> None:
        if self.config.cleanup_grace > 0:
            await asyncio.sleep(self.config.cleanup_grace)
        if self.registry.remove(session_id) is not None:
            logger.debug(f"Removed session {session_id} from registry")

    async def _record(self, session: PairingSession, **fields: Any) -> None:
        """Write to the status store; failures never affect the session."""
        if "status" in fields:
            session.status = fields["status"]
        try:
            await self.status_store.update(session.user_id, **fields)
        except Exception as e:
            logger.warning(f"Status store update failed for {session.user_id}: {e}")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Pairing task failed: {task.exception()!r}")


def _as_datetime(timestamp: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(timestamp) if timestamp is not None else None
