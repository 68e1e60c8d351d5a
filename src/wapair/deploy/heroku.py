"""Heroku platform API client.

This module provides:
- HerokuClient: create apps, set config vars and trigger tarball builds

All calls go to https://api.heroku.com with the v3 Accept header and a
bearer token. Network errors and 5xx responses raise a retryable
HerokuError; other failures are permanent.
"""

import logging
from typing import Any, Optional

import httpx

from wapair.errors import HerokuError

__all__ = [
    "HEROKU_API_URL",
    "HerokuClient",
    "HerokuError",
]

logger = logging.getLogger(__name__)

HEROKU_API_URL = "https://api.heroku.com"


class HerokuClient:
    """Client for the Heroku platform API.

    Attributes:
        api_key: Heroku API key.
        base_url: API base URL.
        http_client: httpx client (created on demand if None).
    """

    def __init__(
        self,
        api_key: Optional[str],
        http_client: httpx.AsyncClient | None = None,
        base_url: str = HEROKU_API_URL,
        timeout: float = 30.0,
    ) -> None:
        """Initialize Heroku client.

        Args:
            api_key: Heroku API key. Calls fail permanently without one.
            http_client: Optional httpx client (for DI).
            base_url: API base URL.
            timeout: Request timeout in seconds.
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.timeout = timeout
        self._owns_client = False

    async def __aenter__(self) -> "HerokuClient":
        """Enter async context, creating http client if needed."""
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context, closing http client if we own it."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close the http client if this instance created it."""
        if self._owns_client and self.http_client:
            await self.http_client.aclose()
            self.http_client = None
            self._owns_client = False

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/vnd.heroku+json; version=3",
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, payload: Any) -> dict[str, Any]:
        """Send one API request and return the decoded body.

        Raises:
            HerokuError: On missing key, network error or error status.
        """
        if not self.api_key:
            raise HerokuError("Heroku API key is not configured", retryable=False)
        if self.http_client is None:
            raise HerokuError("HTTP client not initialized", retryable=False)

        try:
            response = await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise HerokuError(f"{method} {path} failed: {e}", retryable=True) from e

        if response.status_code >= 400:
            message = _error_message(response)
            raise HerokuError(
                f"{method} {path} returned {response.status_code}: {message}",
                retryable=response.status_code >= 500,
            )

        try:
            return response.json()
        except ValueError:
            return {}

    async def create_app(self, name: str) -> dict[str, Any]:
        """Create an app.

        Args:
            name: App name (lowercase letters, digits and dashes).

        Returns:
            App resource as returned by the API.
        """
        logger.info(f"Creating Heroku app {name}")
        return await self._request("POST", "/apps", {"name": name})

    async def set_config_vars(
        self, name: str, config_vars: dict[str, str]
    ) -> dict[str, Any]:
        """Set config vars on an app."""
        return await self._request("PATCH", f"/apps/{name}/config-vars", config_vars)

    async def create_build(self, name: str, tarball_url: str) -> dict[str, Any]:
        """Trigger a build from a source tarball.

        Returns:
            Build resource; its "status" is usually "pending".
        """
        logger.info(f"Triggering build for {name}")
        return await self._request(
            "POST", f"/apps/{name}/builds", {"source_blob": {"url": tarball_url}}
        )


def _error_message(response: httpx.Response) -> str:
    """Pull the API's error message out of a failed response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text[:200]
