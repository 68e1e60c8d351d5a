"""Deploy pipeline: publish credentials, then build a Heroku app."""

import asyncio
import logging
import re
import time
from typing import Callable, Optional

from wapair.config import GithubConfig, HerokuConfig
from wapair.deploy.git import GitPublisher
from wapair.deploy.heroku import HerokuClient
from wapair.errors import DeployError, HerokuError
from wapair.protocols import DeployResult

logger = logging.getLogger(__name__)

MAX_APP_NAME_LENGTH = 30

_APP_NAME_INVALID = re.compile(r"[^a-z0-9-]")


def make_app_name(prefix: str, user_id: str, epoch_ms: int) -> str:
    """Build a Heroku app name for a user.

    Args:
        prefix: App name prefix.
        user_id: User id.
        epoch_ms: Milliseconds since the epoch, for uniqueness.

    Returns:
        Lowercase name of at most 30 characters from [a-z0-9-].
    """
    raw = f"{prefix}-{user_id}-{epoch_ms}".lower()
    return _APP_NAME_INVALID.sub("", raw)[:MAX_APP_NAME_LENGTH]


class GitHerokuPipeline:
    """Pushes session artifacts to git and triggers a Heroku build.

    Failures surface as DeployError subclasses; nothing is retried here.
    """

    def __init__(
        self,
        github: Optional[GithubConfig] = None,
        heroku: Optional[HerokuConfig] = None,
        publisher: Optional[GitPublisher] = None,
        heroku_client_factory: Optional[Callable[[], HerokuClient]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize pipeline.

        Args:
            github: Repository settings.
            heroku: Heroku settings.
            publisher: Git publisher (created from github config if None).
            heroku_client_factory: Builds one Heroku client per deploy.
                Defaults to a client created from the heroku config.
            clock: Time source, injectable for tests.
        """
        self.heroku_config = heroku or HerokuConfig()
        self.publisher = publisher or GitPublisher(github)
        self._heroku_client_factory = heroku_client_factory or self._new_heroku_client
        self._clock = clock

    async def submit(
        self,
        session_id: str,
        artifacts: dict[str, bytes],
        metadata: dict[str, str],
    ) -> DeployResult:
        """Publish artifacts and deploy an app for the session.

        Args:
            session_id: Session id.
            artifacts: Credential files keyed by relative path.
            metadata: Carries user_id and phone_number.

        Returns:
            DeployResult with the created app name.

        Raises:
            DeployError: If publishing or any Heroku call fails.
        """
        user_id = metadata.get("user_id", "")
        if not self.heroku_config.api_key:
            raise DeployError("HEROKU_API_KEY is not configured", retryable=False)

        await self.publisher.publish(session_id, artifacts)

        app_name = make_app_name(
            self.heroku_config.app_prefix, user_id, int(self._clock() * 1000)
        )
        config_vars = dict(self.heroku_config.config_vars)
        config_vars.update(USER_ID=user_id, SESSION_ID=session_id)

        try:
            await asyncio.wait_for(
                self._deploy_app(app_name, config_vars),
                timeout=self.heroku_config.build_timeout,
            )
        except asyncio.TimeoutError as e:
            raise HerokuError(
                f"Heroku deploy of {app_name} timed out", retryable=True
            ) from e

        logger.info(f"Deployed {app_name} for session {session_id}")
        return DeployResult(app_name=app_name)

    def _new_heroku_client(self) -> HerokuClient:
        return HerokuClient(
            self.heroku_config.api_key,
            timeout=self.heroku_config.request_timeout,
        )

    async def _deploy_app(self, app_name: str, config_vars: dict[str, str]) -> None:
        # Concurrent deploys each get their own client and connection pool
        async with self._heroku_client_factory() as client:
            await client.create_app(app_name)
            await client.set_config_vars(app_name, config_vars)
            build = await client.create_build(app_name, self.heroku_config.tarball_url)
        logger.debug(f"Build for {app_name}: {build.get('status', 'unknown')}")
