"""
Async client for the ModelScope repository listing API, with rate limiting and
circuit breaker protection.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from modelscope_cli.exceptions import NetworkError
from modelscope_cli.models.config import DEFAULT_ENDPOINT
from modelscope_cli.models.repository import FileListingResponse, RepositoryEntry
from modelscope_cli.utils.circuit_breaker import CircuitBreaker, CircuitBreakerError

from .rate_limiter import AdaptiveRateLimiter

log = logging.getLogger(__name__)


def build_session(
    max_workers: int,
    api_token: Optional[str] = None,
    timeout: Optional[aiohttp.ClientTimeout] = None,
) -> aiohttp.ClientSession:
    """Creates a pooled aiohttp session sized for ``max_workers`` concurrent requests."""
    connector = aiohttp.TCPConnector(
        limit=max_workers * 2,
        limit_per_host=max_workers,
        ttl_dns_cache=300,
        enable_cleanup_closed=True,
    )
    headers = {
        "User-Agent": "modelscope-cli",
        "Accept-Encoding": "gzip, deflate",
    }
    if api_token:
        headers["Authorization"] = f"Bearer {api_token}"
    return aiohttp.ClientSession(
        connector=connector,
        headers=headers,
        timeout=timeout or aiohttp.ClientTimeout(total=60, connect=15, sock_read=30),
    )


class RepositoryClient:
    """
    Lists the entries of one repository directory for a given revision.

    Features:
    - Connection pooling through a lazily created aiohttp session
    - Adaptive rate limiting on 429 responses
    - Circuit breaker for API resilience
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        api_token: Optional[str] = None,
        max_workers: int = 4,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initializes the API client.

        Args:
            endpoint: Base URL of the ModelScope hub, without a trailing slash.
            api_token: Optional access token for private repositories.
            max_workers: Number of concurrent workers, used to size the pool.
            session: An externally owned session; it is not closed by ``close``.
        """
        self.endpoint = endpoint.rstrip("/")
        self.api_token = api_token or None
        self.max_workers = max_workers

        self._session = session
        self._owns_session = session is None
        self._rate_limiter = AdaptiveRateLimiter()
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60,
            success_threshold=2,
        )

    async def _initialize_session(self) -> aiohttp.ClientSession:
        """Ensures an active aiohttp session is available."""
        if self._session is None or self._session.closed:
            self._session = build_session(self.max_workers, self.api_token)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Gracefully closes the aiohttp session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "RepositoryClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def files_url(self, repository_id: str) -> str:
        return f"{self.endpoint}/api/v1/models/{repository_id.strip('/')}/repo/files"

    async def api_call(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Makes a GET request with rate limiting and circuit breaker protection.

        Raises:
            NetworkError: On transport failures, timeouts, non-2xx responses,
            undecodable bodies, or while the circuit is open.
        """
        session = await self._initialize_session()
        try:
            async with self._circuit_breaker:
                await self._rate_limiter.acquire()
                start_time = time.monotonic()

                async with session.get(url, params=params) as r:
                    duration_ms = (time.monotonic() - start_time) * 1000
                    log.debug(f"GET {url} -> {r.status} in {duration_ms:.0f} ms")

                    if r.status == 429:
                        await self._rate_limiter.on_429()

                    r.raise_for_status()
                    return await r.json(content_type=None)

        except CircuitBreakerError as e:
            log.error(f"[red]Circuit breaker is open for API calls: {e}[/red]")
            raise NetworkError(str(e)) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log.debug(f"API call to {url} failed: {e!r}")
            reason = str(e) or type(e).__name__
            raise NetworkError(f"Request to {url} failed: {reason}") from e

    async def list_entries(
        self, repository_id: str, root_path: str = "", revision: str = ""
    ) -> List[RepositoryEntry]:
        """
        Lists one directory of ``repository_id``.

        ``root_path=""`` lists the repository root and ``revision=""`` selects
        the latest revision. Entries whose type is neither "tree" nor "blob"
        are dropped.
        """
        payload = await self.api_call(
            self.files_url(repository_id),
            {"Root": root_path, "Revision": revision},
        )
        try:
            response = FileListingResponse.model_validate(payload)
        except ValidationError as e:
            raise NetworkError(
                f"Unexpected listing format for '{repository_id}:{root_path}': {e}"
            ) from e

        if not response.success or response.code not in (0, 200):
            raise NetworkError(
                f"Listing '{repository_id}:{root_path}' failed with code "
                f"{response.code}: {response.message or 'no message'}"
            )

        entries = []
        for entry in response.data.files:
            if entry.kind is None:
                log.debug(f"Ignoring entry '{entry.path}' of unknown type '{entry.type}'")
                continue
            entries.append(entry)
        return entries
