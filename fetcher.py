#!/usr/bin/env python3
"""
HTTP transport for feed documents.

Fetches raw feed bytes with aiohttp, applying connect and total timeouts so a
hung source cannot hold a concurrency slot indefinitely. Retrying is left to
the ingester's per-feed backoff.
"""

from asyncio import TimeoutError
from typing import List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FetchError
from telemetry import trace_span

logger = get_logger("fetcher")

HTTP_OK = 200


class FeedFetcher:
    """Owns a lazily created aiohttp session shared by all fetches."""

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        connect_timeout: Optional[int] = None,
        total_timeout: Optional[int] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self.timeout = ClientTimeout(
            total=total_timeout or config.HTTP_TIMEOUT,
            connect=connect_timeout or config.HTTP_CONNECT_TIMEOUT,
        )
        self.user_agent = user_agent or config.USER_AGENT

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=self.timeout,
                headers={'User-Agent': self.user_agent},
            )
            self._owns_session = True
        return self._session

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"http.url": url},
    )
    async def fetch(self, url: str) -> bytes:
        """Fetch a feed document and return its body.

        Raises:
            FetchError: on network errors, timeouts and non-200 responses.
        """
        session = self._get_session()
        try:
            async with session.get(url, max_redirects=config.MAX_REDIRECTS) as response:
                if response.status != HTTP_OK:
                    raise FetchError(url, f"HTTP {response.status}", status=response.status)
                return await response.read()
        except TimeoutError as e:
            raise FetchError(url, f"Timed out after {self.timeout.total}s") from e
        except ClientError as e:
            raise FetchError(url, self._format_client_error(e)) from e

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def close(self) -> None:
        """Close the HTTP session if this fetcher created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
            logger.info("FeedFetcher closed")
        self._session = None
