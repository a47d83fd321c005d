"""Default fetch collaborator built on aiohttp.

The orchestrator only depends on the :class:`FetchEngine` protocol; this
module provides the HTTP implementation used by the command line tool.
"""

import asyncio
import logging
import random
from typing import List, Optional, Protocol
from urllib.parse import urldefrag, urljoin, urlparse

import aiohttp
from bs4 import BeautifulSoup

from .errors import FetchError
from .models import FetchedPage
from .policy import HostThrottle

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ('text/html', 'application/xhtml+xml')
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class FetchEngine(Protocol):
    """What the orchestrator needs from a fetcher."""

    async def fetch(self, url: str, depth: int) -> FetchedPage:
        ...

    def extract_links(self, page: FetchedPage) -> List[str]:
        ...

    async def close(self) -> None:
        ...


def extract_links(content: str, base_url: str) -> List[str]:
    """Absolute http(s) links of an HTML document, in document order.

    Fragments are removed and duplicates dropped.
    """
    links: List[str] = []
    seen = set()

    try:
        soup = BeautifulSoup(content, 'html.parser')
    except Exception as e:
        logger.warning(f"Failed to extract links from {base_url}: {e}")
        return links

    base_tag = soup.find('base', href=True)
    if base_tag:
        base_url = urljoin(base_url, base_tag['href'].strip())

    for link in soup.find_all('a', href=True):
        href = link['href'].strip()
        if not href or href.startswith(('javascript:', 'mailto:', 'tel:', 'data:')):
            continue
        absolute_url = urldefrag(urljoin(base_url, href))[0]
        if urlparse(absolute_url).scheme not in ('http', 'https'):
            continue
        if absolute_url not in seen:
            seen.add(absolute_url)
            links.append(absolute_url)

    return links


class HttpFetchEngine:
    """Asynchronous HTML fetcher with retries."""

    def __init__(self,
                 user_agent: str,
                 request_timeout: float = 30,
                 max_connections: int = 8,
                 max_retries: int = 2,
                 retry_delay: float = 1.0,
                 max_retry_delay: float = 30.0,
                 throttle: Optional[HostThrottle] = None):
        """Initialize the fetcher.

        Args:
            user_agent: User agent header sent with every request
            request_timeout: Total timeout per request in seconds
            max_connections: Connection pool size
            max_retries: Retries for transient failures
            retry_delay: Base delay between retries (seconds)
            max_retry_delay: Maximum delay between retries (seconds)
            throttle: Per-host spacing that retries also respect
        """
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_connections = max_connections
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.throttle = throttle
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, config) -> 'HttpFetchEngine':
        return cls(
            user_agent=config.effective_user_agent,
            request_timeout=config.request_timeout_secs,
            max_connections=config.concurrency * 2,
        )

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=self.max_connections),
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                headers={'User-Agent': self.user_agent},
            )
        return self.session

    async def close(self):
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = self.retry_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    async def _wait_before_retry(self, url: str, delay: float):
        """Back off, then wait for the host's spacing (e.g. a robots Crawl-delay)."""
        await asyncio.sleep(delay)
        if self.throttle is not None:
            await self.throttle.wait(url)

    @staticmethod
    def _is_retryable_error(exception: Optional[BaseException], status_code: Optional[int] = None) -> bool:
        if status_code is not None:
            return status_code in RETRYABLE_STATUS_CODES
        if isinstance(exception, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
            return True
        return isinstance(exception, (aiohttp.ClientConnectionError, aiohttp.ServerDisconnectedError))

    async def fetch(self, url: str, depth: int = 0) -> FetchedPage:
        """Fetch one HTML page.

        Raises:
            FetchError: On non-2xx status, non-HTML content or when retries
                are exhausted.
        """
        session = self._ensure_session()

        for attempt in range(self.max_retries + 1):
            try:
                logger.debug(f"Fetching {url} (attempt {attempt + 1}/{self.max_retries + 1})")
                async with session.get(url, allow_redirects=True) as response:
                    status = response.status

                    if self._is_retryable_error(None, status) and attempt < self.max_retries:
                        delay = self._calculate_retry_delay(attempt)
                        logger.warning(f"Retryable status {status} for {url}, retrying in {delay:.2f}s")
                        await self._wait_before_retry(url, delay)
                        continue

                    if not 200 <= status < 300:
                        raise FetchError(url, response.reason or 'unexpected status', status)

                    content_type = response.headers.get('content-type', '')
                    if not content_type.lower().startswith(HTML_CONTENT_TYPES):
                        raise FetchError(url, f"non-HTML content type: {content_type or 'unknown'}", status)

                    html = await response.text(errors='replace')
                    final_url = None
                    if response.history:
                        final_url = urldefrag(str(response.url))[0]
                        logger.debug(f"{url} redirected to {final_url}")
                    return FetchedPage(
                        url=url,
                        status=status,
                        html=html,
                        depth=depth,
                        content_type=content_type,
                        final_url=final_url,
                    )

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                if attempt < self.max_retries and self._is_retryable_error(e):
                    delay = self._calculate_retry_delay(attempt)
                    logger.warning(f"Error fetching {url}: {e!r}, retrying in {delay:.2f}s")
                    await self._wait_before_retry(url, delay)
                    continue
                reason = 'timed out' if isinstance(e, asyncio.TimeoutError) else str(e) or type(e).__name__
                raise FetchError(url, reason)

        raise FetchError(url, 'retries exhausted')

    def extract_links(self, page: FetchedPage) -> List[str]:
        return extract_links(page.html, page.base_url)
