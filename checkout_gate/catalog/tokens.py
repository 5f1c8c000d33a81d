"""
Storefront GraphQL token provider.

The storefront GraphQL API authenticates with a short-lived bearer token
minted through the management API. The provider keeps the current token in
memory and mints a new one on demand.
"""

import asyncio
import logging
import time
from typing import List, Optional

import httpx

from ..errors import CatalogUnavailable

logger = logging.getLogger(__name__)


class StorefrontTokenProvider:
    """
    Caches and mints storefront API tokens.

    Args:
        http_client: Shared async HTTP client
        store_url: Management API base (``.../stores/{hash}``)
        access_token: Management API token sent as ``X-Auth-Token``
        allowed_origins: CORS origins the token is valid for
        channel_id: Storefront channel
        lifetime_seconds: Requested token lifetime
        initial_token: Token to use before the first mint
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        store_url: str,
        access_token: str,
        allowed_origins: List[str],
        channel_id: int = 1,
        lifetime_seconds: int = 3600,
        initial_token: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self._http = http_client
        self._url = f"{store_url}/v3/storefront/api-token"
        self._access_token = access_token
        self._allowed_origins = allowed_origins
        self._channel_id = channel_id
        self._lifetime = lifetime_seconds
        self._timeout = httpx.Timeout(timeout)

        self._token: Optional[str] = initial_token
        self._lock = asyncio.Lock()

    async def get_token(self) -> str:
        if self._token:
            return self._token
        return await self.refresh()

    async def refresh(self) -> str:
        """
        Mint a new storefront token and cache it.

        Raises:
            CatalogUnavailable: If the management API rejects the request
                or returns an unexpected body
        """
        async with self._lock:
            payload = {
                "allowed_cors_origins": self._allowed_origins,
                "channel_id": self._channel_id,
                "expires_at": int(time.time()) + self._lifetime,
            }
            try:
                response = await self._http.post(
                    self._url,
                    json=payload,
                    headers={
                        "X-Auth-Token": self._access_token,
                        "Accept": "application/json",
                    },
                    timeout=self._timeout,
                )
            except httpx.TimeoutException:
                logger.error("Storefront token request timed out")
                raise CatalogUnavailable("Storefront token request timed out")
            except httpx.HTTPError as e:
                logger.error(f"Storefront token request failed: {e}")
                raise CatalogUnavailable(f"Unable to mint storefront token: {e}")

            if not response.is_success:
                logger.error(
                    f"Storefront token request returned {response.status_code}",
                    extra={"status_code": response.status_code},
                )
                raise CatalogUnavailable(
                    "Failed to refresh storefront token",
                    upstream_status=response.status_code,
                )

            try:
                token = response.json()["data"]["token"]
            except (ValueError, KeyError, TypeError):
                raise CatalogUnavailable("Invalid response format while refreshing storefront token")

            self._token = token

        logger.info("Storefront token refreshed", extra={"channel_id": self._channel_id})
        return token


__all__ = ["StorefrontTokenProvider"]
