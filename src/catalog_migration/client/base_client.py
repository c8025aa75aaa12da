"""Base HTTP client for Catalog Bridge.

This module provides a base async HTTP client with connection pooling,
optional request pacing, structured request logging and status-code to
exception mapping shared by the legacy and destination clients.
"""

import asyncio
import time
from typing import Any
from urllib.parse import urljoin

import httpx

from catalog_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    RateLimitError,
    ServerError,
    TransientNetworkError,
)
from catalog_migration.utils.logging import (
    get_logger,
    log_api_request,
    sanitize_payload,
    should_log_payloads,
    truncate_payload,
)

logger = get_logger(__name__)


class BaseAPIClient:
    """Base async HTTP client.

    This client provides:
    - Connection pooling
    - Optional requests-per-second pacing
    - Request/response logging
    - Exception mapping for error responses

    It never retries; callers wrap calls with ``utils.retry`` when they want to.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        verify_ssl: bool = True,
        timeout: float = 30,
        rate_limit: float = 0,
        max_connections: int = 50,
        max_keepalive_connections: int = 20,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize base API client.

        Args:
            base_url: Base URL for API requests
            token: Authentication token (header built by ``_build_headers``)
            verify_ssl: Whether to verify SSL certificates
            timeout: Request timeout in seconds
            rate_limit: Maximum requests per second (0 disables pacing)
            max_connections: Maximum number of connections in pool
            max_keepalive_connections: Maximum keep-alive connections
            log_payloads: Enable request/response payload logging at DEBUG level
            max_payload_size: Maximum payload size (chars) to log before truncation
            transport: Custom httpx transport (tests use ``httpx.MockTransport``)
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.verify_ssl = verify_ssl

        self.log_payloads = log_payloads
        self.max_payload_size = max_payload_size

        self.rate_limit = rate_limit
        self._rate_limit_lock = asyncio.Lock()
        self._last_request_time: float = 0
        self._min_request_interval = 1.0 / rate_limit if rate_limit > 0 else 0

        self.client = httpx.AsyncClient(
            headers=self._build_headers(),
            timeout=httpx.Timeout(timeout, connect=10.0),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_keepalive_connections,
            ),
            verify=verify_ssl,
            follow_redirects=True,
            transport=transport,
        )

        logger.debug(
            "client_initialized",
            client=type(self).__name__,
            base_url=self.base_url,
            max_connections=max_connections,
        )

    def _build_headers(self) -> dict[str, str]:
        """Build HTTP headers for requests."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _build_url(self, endpoint: str) -> str:
        """Build full URL from an endpoint path (absolute URLs pass through)."""
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return urljoin(f"{self.base_url}/", endpoint.lstrip("/"))

    async def _rate_limit_wait(self) -> None:
        """Space requests at least ``1 / rate_limit`` seconds apart."""
        if self._min_request_interval > 0:
            async with self._rate_limit_lock:
                time_since_last = time.monotonic() - self._last_request_time
                if time_since_last < self._min_request_interval:
                    await asyncio.sleep(self._min_request_interval - time_since_last)
                self._last_request_time = time.monotonic()

    def _handle_error_response(self, response: httpx.Response) -> None:
        """Raise the exception matching an error response.

        Raises:
            AuthenticationError: For 401 responses
            AuthorizationError: For 403 responses
            NotFoundError: For 404 responses
            RateLimitError: For 429 responses
            ServerError: For 5xx responses
            APIError: For other error responses
        """
        status_code = response.status_code

        try:
            error_data: Any = response.json()
        except ValueError:
            error_data = {"detail": response.text}

        if isinstance(error_data, dict):
            error_message = error_data.get(
                "detail", error_data.get("message", error_data.get("errors", "Unknown error"))
            )
        else:
            error_message = str(error_data) if error_data else "Unknown error"

        if status_code == 401:
            raise AuthenticationError("Authentication failed", status_code, error_data)
        if status_code == 403:
            raise AuthorizationError("Authorization failed", status_code, error_data)
        if status_code == 404:
            raise NotFoundError("Resource not found", status_code, error_data)
        if status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "Rate limit exceeded",
                status_code=status_code,
                response=error_data,
                retry_after=float(retry_after) if retry_after else None,
            )
        if 500 <= status_code < 600:
            raise ServerError(f"Server error: {error_message}", status_code, error_data)
        raise APIError(f"API error: {error_message}", status_code, error_data)

    def _log_payload(self, event: str, method: str, url: str, payload: Any, **extra: Any) -> None:
        logger.debug(
            event,
            method=method,
            url=url,
            payload=truncate_payload(sanitize_payload(payload), self.max_payload_size),
            **extra,
        )

    async def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        **kwargs: Any,
    ) -> Any:
        """Make an HTTP request and return its decoded JSON body.

        Args:
            method: HTTP method (GET, POST, ...)
            endpoint: API endpoint path or absolute URL
            params: Query parameters
            json_data: JSON request body
            **kwargs: Additional arguments passed to httpx

        Returns:
            Decoded JSON (dict or list); ``{}`` for an empty body

        Raises:
            TransientNetworkError: For connection failures and timeouts
            APIError subclasses: For error responses
        """
        url = self._build_url(endpoint)
        await self._rate_limit_wait()

        log_payloads = should_log_payloads(logger, self.log_payloads)
        if log_payloads and json_data is not None:
            self._log_payload("api_request_payload", method, url, json_data)

        start_time = time.monotonic()
        try:
            response = await self.client.request(
                method=method, url=url, params=params, json=json_data, **kwargs
            )
        except httpx.TimeoutException as e:
            logger.error("timeout_error", method=method, url=url, error=str(e))
            raise TransientNetworkError(f"Request timeout: {e}") from e
        except httpx.TransportError as e:
            logger.error("network_error", method=method, url=url, error=str(e))
            raise TransientNetworkError(f"Network error: {e}") from e

        log_api_request(
            logger,
            method=method,
            url=url,
            status_code=response.status_code,
            duration_ms=(time.monotonic() - start_time) * 1000,
        )

        if response.status_code >= 400:
            self._handle_error_response(response)

        if not response.content:
            return {}

        try:
            data = response.json()
        except ValueError as e:
            raise APIError(
                f"Response is not valid JSON: {e}",
                status_code=response.status_code,
                response=response.text[:500],
            ) from e

        if log_payloads:
            self._log_payload(
                "api_response_payload", method, url, data, status_code=response.status_code
            )
        return data

    async def get(self, endpoint: str, params: dict[str, Any] | None = None, **kwargs: Any) -> Any:
        """Make a GET request."""
        return await self.request("GET", endpoint, params=params, **kwargs)

    async def post(
        self,
        endpoint: str,
        json_data: Any = None,
        params: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> Any:
        """Make a POST request."""
        return await self.request("POST", endpoint, params=params, json_data=json_data, **kwargs)

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self.client.aclose()
        logger.debug("client_closed", base_url=self.base_url)

    async def __aenter__(self) -> "BaseAPIClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
