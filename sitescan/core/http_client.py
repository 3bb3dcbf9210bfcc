"""
Shared HTTP plumbing for the remote analysis services.

Discovery, capacity estimation and ownership detection are all JSON POST
endpoints. ServiceClient sends one payload to one URL, retries transient
failures and turns every failure into an APIError subclass.
"""
import asyncio
import logging
import random
from typing import Any, Dict, Optional

import httpx

from sitescan.core.api_errors import (
    APIError,
    FatalError,
    RateLimitError,
    RetryableError,
    classify_http_error,
)

logger = logging.getLogger(__name__)


class ServiceClient:
    """
    Base class for the discovery and analysis clients.

    Calls are serialized per client: the analysis services are
    rate-sensitive, so one request is in flight at a time.

    Subclasses set SOURCE_NAME and call _post().
    """

    SOURCE_NAME: str = "service"

    TIMEOUT_SECONDS: float = 60.0
    CONNECT_TIMEOUT_SECONDS: float = 10.0
    MAX_BACKOFF_SECONDS: float = 30.0
    JITTER: float = 0.25

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        timeout: float = TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            url: Service endpoint
            api_key: Sent as a bearer token when set
            max_retries: Attempts per call, including the first
            backoff_factor: Base of the exponential backoff
            timeout: Read timeout in seconds
            client: Pre-built httpx client; tests pass one with a MockTransport
        """
        self.url = url
        self.api_key = api_key
        self.max_retries = max(1, max_retries)
        self.backoff_factor = backoff_factor
        self.timeout = timeout

        self._client = client
        self._owns_client = client is None
        self._in_flight = asyncio.Semaphore(1)

    @property
    def headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": f"SiteScan/{self.SOURCE_NAME}-client",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=self.CONNECT_TIMEOUT_SECONDS),
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying httpx client if this instance opened it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug(f"{self.SOURCE_NAME} client closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def _post(self, payload: Dict[str, Any], resource_id: str = "-") -> Dict[str, Any]:
        """
        POST a JSON payload, retrying transient failures.

        Returns:
            The decoded response object

        Raises:
            RetryableError: Still failing after max_retries attempts
            RateLimitError: Still throttled after max_retries attempts
            FatalError: 4xx, error payload or undecodable body
        """
        async with self._in_flight:
            attempt = 0
            while True:
                logger.debug(
                    f"[{self.SOURCE_NAME}] POST {resource_id} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                try:
                    return await self._send(payload)
                except APIError as error:
                    if not error.retryable or attempt + 1 >= self.max_retries:
                        raise
                    logger.warning(f"[{self.SOURCE_NAME}] {resource_id}: {error}; retrying")
                    await self._backoff(attempt, error)
                    attempt += 1

    async def _send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """One attempt. Every failure comes out as an APIError."""
        try:
            response = await self._http().post(self.url, json=payload, headers=self.headers)
        except httpx.TimeoutException as e:
            raise RetryableError(f"Timed out: {e}", source=self.SOURCE_NAME) from e
        except httpx.UnsupportedProtocol as e:
            raise FatalError(f"Invalid service URL {self.url!r}: {e}", source=self.SOURCE_NAME) from e
        except httpx.RequestError as e:
            raise RetryableError(f"Request failed: {e}", source=self.SOURCE_NAME) from e
        except httpx.InvalidURL as e:
            raise FatalError(f"Invalid service URL {self.url!r}: {e}", source=self.SOURCE_NAME) from e

        if response.status_code >= 400:
            error = classify_http_error(response.status_code, response.text[:500], self.SOURCE_NAME)
            if isinstance(error, RateLimitError):
                retry_after = response.headers.get("Retry-After", "")
                if retry_after.isdigit():
                    error.retry_after = int(retry_after)
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise FatalError(f"Malformed JSON response: {e}", source=self.SOURCE_NAME) from e

        self._raise_for_payload(data)
        return data

    def _raise_for_payload(self, data: Any) -> None:
        """Services report some failures with HTTP 200: {"error": ...} or {"success": false}."""
        if not isinstance(data, dict):
            raise FatalError(
                f"Expected a JSON object, got {type(data).__name__}",
                source=self.SOURCE_NAME,
            )
        error = data.get("error")
        if error:
            if isinstance(error, dict):
                error = error.get("message", error)
            raise FatalError(str(error), source=self.SOURCE_NAME, response_data=data)
        if data.get("success") is False:
            raise FatalError("Service reported success=false", source=self.SOURCE_NAME, response_data=data)

    async def _backoff(self, attempt: int, error: Optional[APIError] = None) -> None:
        """Wait before the next attempt: Retry-After when throttled, else jittered exponential."""
        if isinstance(error, RateLimitError):
            delay = float(error.retry_after)
        else:
            delay = min(self.backoff_factor ** attempt, self.MAX_BACKOFF_SECONDS)
            delay = max(0.1, delay * (1 + self.JITTER * (2 * random.random() - 1)))
        logger.debug(f"[{self.SOURCE_NAME}] sleeping {delay:.2f}s before attempt {attempt + 2}")
        await asyncio.sleep(delay)

    @staticmethod
    def unwrap_result(data: Dict[str, Any]) -> Dict[str, Any]:
        """Unwrap {"success": true, "result": {...}} envelopes."""
        result = data.get("result")
        return result if isinstance(result, dict) else data
