"""Politeness controller: depth, host scope, robots.txt and per-host spacing."""

import asyncio
import logging
import time
import urllib.robotparser
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, Optional

import aiohttp

from .errors import RobotsFetchError
from .state import CrawlState
from .urls import host_of, origin_of

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    ADMIT = "admit"
    REJECT_DEPTH = "reject_depth"
    REJECT_SUBDOMAIN = "reject_subdomain"
    REJECT_ROBOTS = "reject_robots"
    REJECT_DUPLICATE = "reject_duplicate"


@dataclass
class RobotsCache:
    """Cache entry for robots.txt data."""
    robots_parser: urllib.robotparser.RobotFileParser
    fetched_at: datetime
    ttl_hours: int = 24

    def is_expired(self) -> bool:
        """Check if the cache entry has expired."""
        return datetime.now() - self.fetched_at > timedelta(hours=self.ttl_hours)


class HostThrottle:
    """Minimum spacing between successive fetch dispatches to the same host.

    Hosts are throttled independently; waiting on one host never delays
    dispatches to another.
    """

    def __init__(self, delay: float):
        self.delay = max(0.0, delay)
        self.crawl_delays: Dict[str, float] = {}
        self.last_request_time: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def set_crawl_delay(self, host: str, seconds: float):
        self.crawl_delays[host] = seconds

    def spacing(self, host: str) -> float:
        return max(self.delay, self.crawl_delays.get(host, 0.0))

    async def wait(self, url: str):
        """Sleep until ``url``'s host may receive the next request."""
        host = host_of(url)
        lock = self._locks.setdefault(host, asyncio.Lock())

        async with lock:
            spacing = self.spacing(host)
            last = self.last_request_time.get(host)
            if last is not None and spacing > 0:
                remaining = spacing - (time.monotonic() - last)
                if remaining > 0:
                    logger.debug(f"Rate limiting {host}: sleeping {remaining:.2f}s")
                    await asyncio.sleep(remaining)
            self.last_request_time[host] = time.monotonic()


class PolicyChecker:
    """Decides whether a discovered URL may be visited.

    Checks run in a fixed order: duplicate, depth, host scope, robots.txt.
    robots.txt is fetched at most once per origin; concurrent callers for the
    same origin share the in-flight download.
    """

    def __init__(self,
                 state: CrawlState,
                 seed_urls: Iterable[str],
                 max_depth: int,
                 user_agent: str,
                 allow_subdomains: bool = False,
                 respect_robots: bool = True,
                 delay: float = 0.0,
                 request_timeout: float = 30,
                 session: Optional[aiohttp.ClientSession] = None):
        self.state = state
        self.seed_hosts = {host_of(url) for url in seed_urls}
        self.max_depth = max_depth
        self.user_agent = user_agent
        self.allow_subdomains = allow_subdomains
        self.respect_robots = respect_robots
        self.request_timeout = request_timeout
        self.throttle = HostThrottle(delay)

        self.session = session
        self._owns_session = False
        self.robots_cache: Dict[str, RobotsCache] = {}
        self._pending: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(cls, config, state: CrawlState, seed_urls: Iterable[str],
                    session: Optional[aiohttp.ClientSession] = None) -> 'PolicyChecker':
        return cls(
            state=state,
            seed_urls=seed_urls,
            max_depth=config.max_depth,
            user_agent=config.effective_user_agent,
            allow_subdomains=config.subdomains,
            respect_robots=config.respect_robots_txt,
            delay=config.delay_ms / 1000.0,
            request_timeout=config.request_timeout_secs,
            session=session,
        )

    async def close(self):
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
        if self._owns_session and self.session:
            await self.session.close()
            self.session = None

    def host_in_scope(self, url: str) -> bool:
        host = host_of(url)
        if host in self.seed_hosts:
            return True
        if self.allow_subdomains:
            return any(host.endswith('.' + seed) for seed in self.seed_hosts)
        return False

    async def should_visit(self, url: str, depth: int) -> Verdict:
        if url in self.state.visited:
            return Verdict.REJECT_DUPLICATE

        if depth > self.max_depth:
            return Verdict.REJECT_DEPTH

        if not self.host_in_scope(url):
            return Verdict.REJECT_SUBDOMAIN

        if self.respect_robots and not await self.can_fetch(url):
            logger.info(f"Disallowed by robots.txt for user-agent '{self.user_agent}': {url}")
            return Verdict.REJECT_ROBOTS

        return Verdict.ADMIT

    async def can_fetch(self, url: str) -> bool:
        robots_parser = await self.get_robots(url)
        return robots_parser.can_fetch(self.user_agent, url)

    async def get_robots(self, url: str) -> urllib.robotparser.RobotFileParser:
        """Return the (cached) robots.txt parser for ``url``'s origin."""
        domain_key = origin_of(url)

        cache_entry = self.robots_cache.get(domain_key)
        if cache_entry and not cache_entry.is_expired():
            return cache_entry.robots_parser

        task = self._pending.get(domain_key)
        if task is None:
            task = asyncio.ensure_future(self._load_robots(domain_key))
            self._pending[domain_key] = task
            task.add_done_callback(lambda _t, key=domain_key: self._pending.pop(key, None))

        return await asyncio.shield(task)

    async def _load_robots(self, domain_key: str) -> urllib.robotparser.RobotFileParser:
        robots_url = f"{domain_key}/robots.txt"

        try:
            text = await self._download_robots(robots_url)
            logger.debug(f"Fetched robots.txt for {domain_key}")
        except RobotsFetchError as e:
            logger.info(f"{e}; treating {domain_key} as unrestricted")
            text = ''

        rp = urllib.robotparser.RobotFileParser()
        rp.set_url(robots_url)
        rp.parse(text.splitlines())

        crawl_delay = rp.crawl_delay(self.user_agent)
        if crawl_delay:
            host = host_of(domain_key)
            self.throttle.set_crawl_delay(host, float(crawl_delay))
            logger.info(f"robots.txt for {host} requests a crawl delay of {crawl_delay}s")

        self.robots_cache[domain_key] = RobotsCache(robots_parser=rp, fetched_at=datetime.now())
        return rp

    async def _download_robots(self, robots_url: str) -> str:
        """Fetch robots.txt text.

        Raises:
            RobotsFetchError: On any non-2xx status or network failure.
        """
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                headers={'User-Agent': self.user_agent},
            )
            self._owns_session = True

        try:
            async with self.session.get(robots_url, allow_redirects=True) as response:
                if not 200 <= response.status < 300:
                    raise RobotsFetchError(f"robots.txt at {robots_url} returned HTTP {response.status}")
                return await response.text(errors='replace')
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RobotsFetchError(f"Error fetching robots.txt from {robots_url}: {e}")
