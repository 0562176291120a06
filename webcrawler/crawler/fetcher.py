"""
HTTP transport for the crawler with robots.txt support.
"""

import asyncio
import aiohttp
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Tuple
from urllib.robotparser import RobotFileParser
from dataclasses import dataclass, field
from aiohttp import ClientSession, ClientTimeout

from ..utils.config import CrawlerConfig


@dataclass
class FetchRequest:
    """A single outgoing request. Listeners of 'fetchstart' may modify it."""
    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    auth: Optional[Tuple[str, str]] = None
    proxy: Optional[str] = None
    proxy_auth: Optional[Tuple[str, str]] = None


class FetchResponse:
    """
    Streaming view of a response.

    Headers are exposed with lower-cased names; the body is consumed through
    iter_chunks() so the caller can stop reading at a size limit.
    """

    def __init__(self, response: aiohttp.ClientResponse):
        self._response = response
        self.status = response.status
        self.url = str(response.url)
        self.headers: Dict[str, str] = {
            name.lower(): value for name, value in response.headers.items()
        }

    async def iter_chunks(self, chunk_size: int = 8192) -> AsyncIterator[bytes]:
        async for chunk in self._response.content.iter_chunked(chunk_size):
            yield chunk


class RobotsTxtError(Exception):
    """Raised when robots.txt could not be retrieved."""


class RobotsChecker:
    """Caches robots.txt rules per origin (protocol, host and port)."""

    def __init__(self, user_agent: str, cache_ttl: float = 3600):
        self.user_agent = user_agent
        self.robots_cache: Dict[str, RobotFileParser] = {}
        self.robots_check_time: Dict[str, float] = {}
        self.cache_ttl = cache_ttl
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def origin(protocol: str, host: str, port: int) -> str:
        return f"{protocol}://{host}:{port}"

    def is_known(self, protocol: str, host: str, port: int) -> bool:
        """Check if valid rules are cached for an origin."""
        key = self.origin(protocol, host, port)
        checked = self.robots_check_time.get(key)
        return checked is not None and time.time() - checked < self.cache_ttl

    def set_rules(self, protocol: str, host: str, port: int, robots_content: str):
        """Parse and cache a robots.txt body. An empty body allows everything."""
        key = self.origin(protocol, host, port)
        rp = RobotFileParser()
        rp.set_url(f"{key}/robots.txt")
        rp.parse(robots_content.splitlines())
        self.robots_cache[key] = rp
        self.robots_check_time[key] = time.time()

    def allow_all(self, protocol: str, host: str, port: int):
        self.set_rules(protocol, host, port, "")

    def can_fetch(self, item) -> bool:
        """Check a queue item against cached rules. Unknown origins are allowed."""
        rp = self.robots_cache.get(self.origin(item.protocol, item.host, item.port))
        if rp is None:
            return True
        return rp.can_fetch(self.user_agent, item.url)

    async def fetch(self, transport, protocol: str, host: str, port: int,
                    headers: Optional[Dict[str, str]] = None):
        """
        Fetch and cache robots.txt for an origin through the given transport.

        A 4xx response means there are no rules. Other non-2xx responses and
        transport errors propagate to the caller.
        """
        url = f"{protocol}://{host}:{port}/robots.txt"
        request = FetchRequest(url=url, headers=dict(headers or {}))

        async with transport.open(request) as response:
            if 200 <= response.status < 300:
                body = bytearray()
                async for chunk in response.iter_chunks():
                    body.extend(chunk)
                self.set_rules(protocol, host, port, bytes(body).decode('utf-8', errors='replace'))
            elif 400 <= response.status < 500:
                self.allow_all(protocol, host, port)
            else:
                raise RobotsTxtError(f"Unexpected status {response.status} fetching {url}")

        self.logger.debug(f"Loaded robots.txt for {self.origin(protocol, host, port)}")


class WebFetcher:
    """
    aiohttp transport used by the scheduler.

    Redirects are never followed: the scheduler queues Location targets as
    new items. Decompression is left to the scheduler so that corrupt bodies
    can be reported.
    """

    def __init__(self, config: CrawlerConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)

        # Session management
        self.session: Optional[ClientSession] = None

        # Statistics
        self.stats = {
            'total_requests': 0,
            'failed_requests': 0
        }

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            # Per-item timeouts are enforced by the scheduler
            timeout = ClientTimeout(total=None)

            if self.config.accept_cookies:
                # unsafe=True keeps cookies for IP address hosts
                cookie_jar = aiohttp.CookieJar(unsafe=True)
            else:
                cookie_jar = aiohttp.DummyCookieJar()

            self.session = aiohttp.ClientSession(
                timeout=timeout,
                cookie_jar=cookie_jar,
                auto_decompress=False,
                connector=aiohttp.TCPConnector(
                    limit=self.config.max_concurrency * 2,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.info("WebFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    @asynccontextmanager
    async def open(self, request: FetchRequest) -> AsyncIterator[FetchResponse]:
        """
        Send a request and yield the response once headers have arrived.

        Raises:
            aiohttp.ClientError: Connection or protocol failure
        """
        if self.session is None:
            await self.start()

        auth = aiohttp.BasicAuth(*request.auth) if request.auth else None
        proxy_auth = aiohttp.BasicAuth(*request.proxy_auth) if request.proxy_auth else None

        self.stats['total_requests'] += 1
        try:
            async with self.session.request(
                request.method,
                request.url,
                headers=request.headers,
                auth=auth,
                proxy=request.proxy,
                proxy_auth=proxy_auth,
                allow_redirects=False,
            ) as response:
                self.logger.debug(f"Response headers for {request.url}: {response.status}")
                yield FetchResponse(response)
        except (aiohttp.ClientError, asyncio.TimeoutError):
            self.stats['failed_requests'] += 1
            raise

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
