"""Pytest configuration and shared fixtures."""

import asyncio
from typing import Any, Optional

import pytest
import pytest_asyncio

from wapair.config import PairingConfig
from wapair.pairing.credentials import CredentialRoot
from wapair.pairing.pairing_manager import PairingManager
from wapair.protocols import ConnectionUpdate, DeployResult
from wapair.status import JsonStatusStore


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from wapair.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def cleanup_aiohttp_sessions():
    """Give aiohttp sessions time to clean up their connectors."""
    yield
    await asyncio.sleep(0)


class FakeWhatsAppClient:
    """Scriptable WhatsApp client.

    Tests drive connection events through emit(); the manager's callbacks
    run exactly as they would for a real client.
    """

    def __init__(self, on_update, on_credentials, code: str = "ABCD1234"):
        self.on_update = on_update
        self.on_credentials = on_credentials
        self.code = code
        self.code_error: Optional[Exception] = None
        self.code_delay = 0.0
        self.code_requests: list[str] = []
        self.sent: list[str] = []
        self.send_error: Optional[Exception] = None
        self.closed = False

    async def request_pairing_code(self, phone_number: str) -> str:
        self.code_requests.append(phone_number)
        if self.code_delay:
            await asyncio.sleep(self.code_delay)
        if self.code_error is not None:
            raise self.code_error
        return self.code

    async def send_message(self, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True

    async def emit(self, **kwargs: Any) -> None:
        await self.on_update(ConnectionUpdate(**kwargs))

    async def save_credentials(self, files: dict[str, bytes]) -> None:
        await self.on_credentials(files)


class FakeClientFactory:
    """Client factory recording every connection it opens.

    Args:
        auto_ready: Emit a ready update right after connecting.
        connect_error: Raise this from connect().
        code_error: Raise this from request_pairing_code().
        code_delay: Seconds request_pairing_code() takes.
    """

    def __init__(
        self,
        auto_ready: bool = True,
        connect_error: Optional[Exception] = None,
        code: str = "ABCD1234",
        code_error: Optional[Exception] = None,
        code_delay: float = 0.0,
    ):
        self.auto_ready = auto_ready
        self.connect_error = connect_error
        self.code = code
        self.code_error = code_error
        self.code_delay = code_delay
        self.clients: dict[str, FakeWhatsAppClient] = {}
        self._tasks: set[asyncio.Task] = set()

    async def connect(self, session_id, credentials, on_update, on_credentials):
        if self.connect_error is not None:
            raise self.connect_error
        client = FakeWhatsAppClient(on_update, on_credentials, code=self.code)
        client.code_error = self.code_error
        client.code_delay = self.code_delay
        self.clients[session_id] = client
        if self.auto_ready:
            task = asyncio.create_task(client.emit(ready=True))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return client


class FakeDeployPipeline:
    """Deploy pipeline that records submissions."""

    def __init__(self, error: Optional[Exception] = None, app_name: str = "wapair-app"):
        self.error = error
        self.app_name = app_name
        self.submissions: list[tuple[str, dict[str, bytes], dict[str, str]]] = []
        self.submitted = asyncio.Event()

    async def submit(self, session_id, artifacts, metadata):
        self.submissions.append((session_id, artifacts, metadata))
        self.submitted.set()
        if self.error is not None:
            raise self.error
        return DeployResult(app_name=self.app_name)


@pytest.fixture
def pairing_config():
    """Pairing config with short timers for tests."""
    return PairingConfig(
        connect_timeout=2.0,
        expiry_timeout=5.0,
        cleanup_grace=0.0,
        deploy_delay=0.0,
        session_prefix="test",
    )


@pytest.fixture
def credential_root(tmp_path):
    """Credential root under a temp dir."""
    return CredentialRoot(tmp_path / "sessions")


@pytest.fixture
def status_store(tmp_path):
    """JSON status store under a temp dir."""
    return JsonStatusStore(tmp_path / "status.json")


@pytest.fixture
def client_factory():
    """Client factory whose clients become ready immediately."""
    return FakeClientFactory()


@pytest.fixture
def deploy_pipeline():
    """Deploy pipeline that succeeds."""
    return FakeDeployPipeline()


@pytest_asyncio.fixture
async def manager(client_factory, deploy_pipeline, credential_root, status_store, pairing_config):
    """Pairing manager wired to fakes."""
    manager = PairingManager(
        client_factory=client_factory,
        deploy_pipeline=deploy_pipeline,
        credential_root=credential_root,
        status_store=status_store,
        config=pairing_config,
    )
    yield manager
    await manager.stop()


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    """The wait_for polling helper."""
    return wait_for


@pytest.fixture
def make_client_factory():
    """Build client factories with custom behaviour."""
    return FakeClientFactory


@pytest.fixture
def make_deploy_pipeline():
    """Build deploy pipelines with custom behaviour."""
    return FakeDeployPipeline


@pytest_asyncio.fixture
async def make_manager(credential_root, status_store, pairing_config):
    """Build pairing managers around given collaborators; stopped on teardown."""
    created = []

    def _make(client_factory, deploy_pipeline, **config_overrides):
        config = pairing_config
        for key, value in config_overrides.items():
            setattr(config, key, value)
        manager = PairingManager(
            client_factory=client_factory,
            deploy_pipeline=deploy_pipeline,
            credential_root=credential_root,
            status_store=status_store,
            config=config,
        )
        created.append(manager)
        return manager

    yield _make
    for manager in created:
        await manager.stop()
