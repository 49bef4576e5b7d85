"""
Base API Client

Shared HTTP request handling for external catalog clients: one aiohttp
session per client, rate limiting, bounded retries with backoff and a
single error type for callers to catch.
"""

import asyncio
import json
import random
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp
import structlog

from ..exceptions import CatalogError
from .rate_limiter import UnifiedRateLimiter

logger = structlog.get_logger(__name__)

MAX_BACKOFF_SECONDS = 30.0


class BaseAPIClient(ABC):
    """
    Base HTTP client used as an async context manager.

    Subclasses supply authentication headers and decode service specific
    error bodies.
    """

    def __init__(
        self,
        base_url: str,
        rate_limiter: UnifiedRateLimiter,
        timeout: int = 10,
        service_name: str = "api"
    ):
        """
        Initialize base API client.

        Args:
            base_url: Base URL for the API
            rate_limiter: Rate limiter shared with other clients
            timeout: Total request timeout in seconds
            service_name: Service name for logging
        """
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.service_name = service_name
        self.session: Optional[aiohttp.ClientSession] = None

        self.logger = logger.bind(service=service_name, component="BaseAPIClient")

    async def __aenter__(self):
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    def _default_headers(self) -> Dict[str, str]:
        return {"User-Agent": f"DualGravity-{self.service_name}/1.0"}

    async def _make_request(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
        retries: int = 2
    ) -> Dict[str, Any]:
        """
        Make a rate-limited request with retries.

        Args:
            endpoint: Path relative to base_url
            params: Query parameters
            method: HTTP method
            retries: Extra attempts after the first one

        Returns:
            Parsed JSON body

        Raises:
            CatalogError: When the request cannot be completed
        """
        if not self.session:
            raise CatalogError(f"{self.service_name} client not initialized. Use async context manager.")

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = self._default_headers()

        for attempt in range(retries + 1):
            await self.rate_limiter.wait_if_needed()
            try:
                async with self.session.request(
                    method=method, url=url, params=params, headers=headers
                ) as response:
                    if response.status == 200:
                        data = await self._parse_response(response)
                        error_info = self._extract_api_error(data)
                        if error_info:
                            raise CatalogError(f"{self.service_name} API error: {error_info}", status=200)
                        return data

                    if response.status == 429:
                        wait_time = self._retry_after(response, attempt)
                        self.logger.warning(
                            "Rate limited - backing off",
                            endpoint=endpoint,
                            attempt=attempt + 1,
                            wait_time=wait_time
                        )
                        if attempt == retries:
                            raise CatalogError(f"{self.service_name} rate limited", status=429)
                        await asyncio.sleep(wait_time)
                        continue

                    self.logger.warning(
                        "HTTP error",
                        endpoint=endpoint,
                        status=response.status,
                        attempt=attempt + 1
                    )
                    # 4xx other than 429 will not succeed on retry
                    if 400 <= response.status < 500 or attempt == retries:
                        raise CatalogError(
                            f"{self.service_name} request failed with status {response.status}",
                            status=response.status
                        )

            except asyncio.TimeoutError:
                self.logger.warning("Request timeout", endpoint=endpoint, attempt=attempt + 1)
                if attempt == retries:
                    raise CatalogError(f"{self.service_name} request timed out")

            except aiohttp.ClientError as e:
                self.logger.warning(
                    "HTTP client error",
                    endpoint=endpoint,
                    error=str(e),
                    attempt=attempt + 1
                )
                if attempt == retries:
                    raise CatalogError(f"{self.service_name} client error: {e}")

            await self._exponential_backoff(attempt)

        raise CatalogError(f"{self.service_name} request failed after {retries + 1} attempts")

    async def _parse_response(self, response: aiohttp.ClientResponse) -> Dict[str, Any]:
        try:
            return await response.json()
        except (json.JSONDecodeError, aiohttp.ContentTypeError) as e:
            self.logger.error("Invalid JSON response", error=str(e))
            raise CatalogError(f"{self.service_name} returned invalid JSON")

    @abstractmethod
    def _extract_api_error(self, data: Dict[str, Any]) -> Optional[str]:
        """
        Extract a service specific error from a 200 response body.

        Args:
            data: Parsed response data

        Returns:
            Error message if found, None otherwise
        """

    def _retry_after(self, response: aiohttp.ClientResponse, attempt: int) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(float(retry_after), MAX_BACKOFF_SECONDS)
            except ValueError:
                pass
        return min(2 ** attempt, MAX_BACKOFF_SECONDS)

    async def _exponential_backoff(self, attempt: int, base_delay: float = 0.5):
        delay = base_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * delay
        await asyncio.sleep(min(delay + jitter, MAX_BACKOFF_SECONDS))
