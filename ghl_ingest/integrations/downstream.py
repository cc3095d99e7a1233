"""
Downstream client - the calls the pipeline makes out of process.

setup_location and sync_agency hit our own API (location bootstrap, agency token fan-out).
refresh_location_token exchanges a refresh token at the GHL OAuth endpoint.
Every call carries an explicit timeout; non-2xx responses raise DownstreamError.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

TIMEOUT = 15.0


class DownstreamError(Exception):
    """A downstream call returned a non-2xx response."""

    def __init__(self, status_code: int, body: str, operation: str = ""):
        self.status_code = status_code
        self.body = body
        self.operation = operation
        super().__init__(f"{operation or 'downstream'} failed: HTTP {status_code}: {body[:200]}")


class DownstreamClient(ABC):
    """Abstract interface for side-effect calls made by handlers and drivers."""

    @abstractmethod
    async def setup_location(self, location_id: str, full_sync: bool = True) -> dict:
        """Kick off the initial data sync for a freshly installed location."""
        ...

    @abstractmethod
    async def sync_agency(self, company_id: str) -> dict:
        """Fetch location tokens for every sub-account of an agency install."""
        ...

    @abstractmethod
    async def refresh_location_token(self, location) -> dict:
        """
        Exchange the location's refresh token.
        Returns the raw token response: {"access_token", "refresh_token", "expires_in", ...}
        """
        ...


class HttpDownstreamClient(DownstreamClient):
    """httpx implementation against api_base_url and the GHL OAuth endpoint."""

    def __init__(
        self,
        base_url: str,
        oauth_url: str,
        client_id: str = "",
        client_secret: str = "",
        timeout: float = TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.oauth_url = oauth_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @staticmethod
    def _check(response: httpx.Response, operation: str) -> dict:
        if response.status_code >= 300:
            raise DownstreamError(response.status_code, response.text, operation)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    async def _post_json(self, path: str, body: dict, operation: str) -> dict:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}{path}",
                json=body,
                headers={"Content-Type": "application/json"},
            )
        return self._check(response, operation)

    async def setup_location(self, location_id: str, full_sync: bool = True) -> dict:
        logger.info("Triggering setup for location %s", location_id)
        return await self._post_json(
            "/api/locations/setup-location",
            {"locationId": location_id, "fullSync": full_sync},
            "setup_location",
        )

    async def sync_agency(self, company_id: str) -> dict:
        logger.info("Syncing agency locations for company %s", company_id)
        return await self._post_json(
            "/api/oauth/get-location-tokens",
            {"companyId": company_id},
            "sync_agency",
        )

    async def refresh_location_token(self, location) -> dict:
        oauth = location.oauth or {}
        refresh_token = oauth.get("refreshToken")
        if not refresh_token:
            raise ValueError(f"Location {location.location_id} has no refresh token")

        async with self._client() as client:
            response = await client.post(
                self.oauth_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "user_type": "Location",
                },
                headers={"Accept": "application/json"},
            )
        return self._check(response, "refresh_location_token")


def build_downstream_client() -> DownstreamClient:
    from ghl_ingest.config import get_settings
    settings = get_settings()
    return HttpDownstreamClient(
        base_url=settings.api_base_url,
        oauth_url=settings.ghl_oauth_url,
        client_id=settings.ghl_client_id,
        client_secret=settings.ghl_client_secret,
        timeout=settings.downstream_timeout_seconds,
    )
