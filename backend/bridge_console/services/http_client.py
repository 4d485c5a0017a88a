"""
HTTP Client Infrastructure with Retry Logic
Shared async HTTP client for registry and GitHub lookups with exponential
backoff and request statistics
"""

import asyncio
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """Retry policy configuration"""

    max_retries: int = 1
    base_delay: float = 0.5  # seconds
    max_delay: float = 5.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True


class HTTPClientStats(BaseModel):
    """HTTP client statistics"""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_retries: int = 0
    last_failure: Optional[datetime] = None


class HttpClient:
    """Async HTTP client with retry logic and monitoring"""

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 5.0,
        user_agent: str = "homebridge-config-ui-x",
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = httpx.Timeout(timeout)
        self.user_agent = user_agent
        self.stats = HTTPClientStats()

        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": self.user_agent, **(headers or {})},
            follow_redirects=True,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay for exponential backoff"""
        delay = min(
            self.retry_policy.base_delay * (self.retry_policy.exponential_base**attempt),
            self.retry_policy.max_delay,
        )
        if self.retry_policy.jitter:
            delay *= 0.5 + secrets.SystemRandom().random() * 0.5
        return delay

    def _is_retryable_error(self, exception: Exception) -> bool:
        """Connection problems, timeouts and 5xx responses are worth retrying"""
        if isinstance(exception, (httpx.TimeoutException, httpx.ConnectError)):
            return True
        if isinstance(exception, httpx.HTTPStatusError):
            return 500 <= exception.response.status_code < 600
        return False

    async def _execute_request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute HTTP request with retry logic"""
        self.stats.total_requests += 1
        attempt = 0

        while True:
            try:
                logger.debug(f"HTTP {method} {url} (attempt {attempt + 1})")
                response = await self.client.request(method, url, **kwargs)
                response.raise_for_status()
                self.stats.successful_requests += 1
                return response

            except httpx.HTTPError as e:
                if attempt >= self.retry_policy.max_retries or not self._is_retryable_error(e):
                    self.stats.failed_requests += 1
                    self.stats.last_failure = datetime.now(timezone.utc)
                    raise

                self.stats.total_retries += 1
                delay = self._calculate_delay(attempt)
                logger.debug(f"HTTP {method} {url} failed ({type(e).__name__}), retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
                attempt += 1

    async def get(self, url: str, **kwargs) -> httpx.Response:
        """Execute GET request"""
        return await self._execute_request("GET", url, **kwargs)

    async def get_json(self, url: str, **kwargs) -> Any:
        """Execute GET request and decode the JSON body"""
        response = await self.get(url, **kwargs)
        return response.json()

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics"""
        return self.stats.model_dump()
