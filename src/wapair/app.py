"""Service composition: wires every component from one Config.

Usage:
    service = await build_service(config)
    await run_service(service)   # until Ctrl+C or service.stop()
"""

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from aiohttp import web

from wapair.config import Config
from wapair.deploy import GitHerokuPipeline, GitPublisher
from wapair.errors import StatusStoreError
from wapair.pairing import CredentialRoot, PairingManager
from wapair.protocols import (
    ClientFactoryProtocol,
    DeployPipelineProtocol,
    StatusStoreProtocol,
)
from wapair.server import PairingServer
from wapair.status import JsonStatusStore, NullStatusStore
from wapair.whatsapp import BridgeClientFactory

logger = logging.getLogger(__name__)


@dataclass
class Service:
    """Container for the wired service components."""

    config: Config
    status_store: Any
    client_factory: Any
    deploy_pipeline: Any
    manager: PairingManager
    server: PairingServer
    runner: Optional[web.AppRunner] = None
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    async def start(self) -> None:
        """Start the HTTP server."""
        self.runner = await self.server.start(
            self.config.bind_address, self.config.port
        )

    def stop(self) -> None:
        """Ask run_service to shut down."""
        self._stop_event.set()

    async def wait_stopped(self) -> None:
        """Wait until stop() is called."""
        await self._stop_event.wait()

    async def shutdown(self) -> None:
        """Stop sessions, then the server, then close external clients."""
        logger.info("Shutting down service...")
        await self.manager.stop()

        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        if hasattr(self.client_factory, "close"):
            await self.client_factory.close()
        if hasattr(self.status_store, "close"):
            await self.status_store.close()

        logger.info("Service shutdown complete")


async def create_status_store(config: Config) -> StatusStoreProtocol:
    """Create the status store selected by config.status_store.backend.

    Raises:
        StatusStoreError: If the backend is unknown or misconfigured.
    """
    settings = config.status_store
    backend = settings.backend.lower()

    if backend == "none":
        return NullStatusStore()
    if backend == "json":
        return JsonStatusStore(Path(settings.path).expanduser())
    if backend == "postgres":
        if not settings.database_url:
            raise StatusStoreError("status_store.database_url is required for postgres")
        # asyncpg is only needed for this backend
        from wapair.status.postgres_store import PostgresStatusStore

        return await PostgresStatusStore.connect(settings.database_url)

    raise StatusStoreError(f"Unknown status store backend: {settings.backend}")


async def build_service(
    config: Config,
    client_factory: Optional[ClientFactoryProtocol] = None,
    deploy_pipeline: Optional[DeployPipelineProtocol] = None,
    status_store: Optional[StatusStoreProtocol] = None,
) -> Service:
    """Create all components with properly wired dependencies.

    Args:
        config: Service configuration.
        client_factory: Optional injected WhatsApp client factory (for testing).
        deploy_pipeline: Optional injected deploy pipeline (for testing).
        status_store: Optional injected status store (for testing).

    Returns:
        Service ready to start.
    """
    if status_store is None:
        status_store = await create_status_store(config)

    if client_factory is None:
        client_factory = BridgeClientFactory(config.bridge)

    if deploy_pipeline is None:
        deploy_pipeline = GitHerokuPipeline(
            github=config.github,
            heroku=config.heroku,
            publisher=GitPublisher(config.github),
        )
        if not config.heroku.api_key:
            logger.warning("HEROKU_API_KEY is not set; deploys will fail")

    manager = PairingManager(
        client_factory=client_factory,
        deploy_pipeline=deploy_pipeline,
        credential_root=CredentialRoot(Path(config.pairing.sessions_dir)),
        status_store=status_store,
        config=config.pairing,
    )
    server = PairingServer(
        manager,
        status_store=status_store,
        retention_days=config.status_store.retention_days,
        rate_limit_requests=config.pairing.rate_limit_requests,
        rate_limit_window=config.pairing.rate_limit_window,
    )

    return Service(
        config=config,
        status_store=status_store,
        client_factory=client_factory,
        deploy_pipeline=deploy_pipeline,
        manager=manager,
        server=server,
    )


async def run_service(service: Service) -> None:
    """Start the service and run until stopped or signalled."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, service.stop)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            pass

    try:
        await service.start()
        await service.wait_stopped()
    finally:
        await service.shutdown()
