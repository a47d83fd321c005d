"""Crawl orchestrator for DocSkills.

Drives a crawl from seed URLs to written skills::

    Idle -> Seeding -> Running -> Draining -> Completed | Aborted

At most ``concurrency`` pages are processed at once. A URL is dispatched
at most once per run, and every dispatched page ends up counted as either
written or failed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ConfigError, CrawlAborted, FetchError, MaterializationError
from .fetcher import FetchEngine, HttpFetchEngine
from .materializer import SkillMaterializer
from .models import SkillArtifact
from .policy import PolicyChecker, Verdict
from .processor import PageProcessor
from .rules import UrlFilter
from .state import STATE_FILENAME, CrawlState, CrawlStats, seed_state
from .urls import normalize_seed, parse_url_pattern, scoping_rules

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_EVERY = 25


class CrawlStatus(str, Enum):
    IDLE = "idle"
    SEEDING = "seeding"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class CrawlReport:
    """Outcome of a crawl run."""
    status: CrawlStatus
    stats: CrawlStats
    would_write: List[Path] = field(default_factory=list)
    error: Optional[str] = None
    output_dir: Optional[Path] = None

    @property
    def succeeded(self) -> bool:
        return self.status is CrawlStatus.COMPLETED


class WebCrawler:
    """Asynchronous documentation crawler that writes one skill per page."""

    def __init__(self,
                 config,
                 fetch_engine: Optional[FetchEngine] = None,
                 output_dir: Optional[Path] = None,
                 dry_run: bool = False,
                 max_pages: Optional[int] = None,
                 resume: bool = False,
                 checkpoint_every: int = DEFAULT_CHECKPOINT_EVERY,
                 page_timeout: Optional[float] = None):
        """Initialize crawler.

        Args:
            config: Validated ``CrawlConfig`` snapshot
            fetch_engine: Fetch collaborator; an ``HttpFetchEngine`` by default
            output_dir: Overrides the directory resolved from the config
            dry_run: Run every step except writing files
            max_pages: Stop dispatching new pages after this many
            resume: Continue from the checkpoint in the output directory
            checkpoint_every: Pages between intermediate checkpoints
            page_timeout: Seconds a single page may take end to end
        """
        self.config = config
        self.output_dir = Path(output_dir) if output_dir else config.resolve_output_path()
        self.state_path = self.output_dir / STATE_FILENAME
        self.dry_run = dry_run
        self.max_pages = max_pages
        self.resume = resume
        self.checkpoint_every = max(1, checkpoint_every)
        self.page_timeout = page_timeout or config.request_timeout_secs * 3

        self._owns_engine = fetch_engine is None
        self.engine: FetchEngine = fetch_engine or HttpFetchEngine.from_config(config)
        self.processor = PageProcessor.from_config(config)
        self.materializer = SkillMaterializer(self.output_dir, flat=config.flat, dry_run=dry_run)
        self.semaphore = asyncio.Semaphore(config.concurrency)

        self.status = CrawlStatus.IDLE
        self.state: Optional[CrawlState] = None
        self.policy: Optional[PolicyChecker] = None
        self.url_filter: Optional[UrlFilter] = None
        self.cancel_event = asyncio.Event()
        self.abort_error: Optional[CrawlAborted] = None

        self._in_flight: Dict[asyncio.Task, Tuple[str, int]] = {}
        self._dispatched = 0
        self._since_checkpoint = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Release network resources."""
        if self.policy:
            await self.policy.close()
        if self._owns_engine:
            await self.engine.close()

    def _ceiling_reached(self) -> bool:
        return self.max_pages is not None and self._dispatched >= self.max_pages

    def _seed(self, seeds: Sequence[str]) -> List[str]:
        """Validate seeds, build the run's rule list and load or create state."""
        self.status = CrawlStatus.SEEDING

        normalized = [normalize_seed(seed) for seed in seeds]
        if not normalized:
            raise ConfigError("at least one seed URL is required", 'seeds')

        start_urls = []
        rules = []
        for seed in normalized:
            base, _pattern = parse_url_pattern(seed)
            start_urls.append(base)
            rules.extend(scoping_rules(seed, self.config.subdomains))
        self.url_filter = UrlFilter(rules + list(self.config.rules))

        if self.dry_run:
            for rule in self.url_filter.rules:
                logger.info(f"[dry-run] Rule: {rule.action.value} {rule.url}")

        if self.resume and self.state_path.exists():
            self.state = CrawlState.load(self.state_path)
            if not self.state.frontier:
                logger.info("Resume state has an empty frontier; nothing left to crawl")
        else:
            if self.resume:
                logger.warning(f"No resume state at {self.state_path}, starting a fresh crawl")
            self.state = seed_state(start_urls)

        self.materializer.claimed = self.state.artifacts
        self.policy = PolicyChecker.from_config(self.config, self.state, start_urls)
        if isinstance(self.engine, HttpFetchEngine) and self.engine.throttle is None:
            self.engine.throttle = self.policy.throttle
        return start_urls

    async def crawl(self, seeds: Sequence[str]) -> CrawlReport:
        """Crawl from ``seeds`` and write one skill per admitted page.

        Raises:
            ConfigError: On invalid seeds or a corrupt resume state. Raised
                before any request is made.
        """
        start_urls = self._seed(seeds)
        state = self.state

        try:
            self.materializer.ensure_output_dir()
        except MaterializationError as e:
            self._abort(e)
            return self._finish()

        logger.info(
            f"Starting crawl of {len(start_urls)} seed URL(s) into {self.output_dir} "
            f"(max_depth={self.config.max_depth}, concurrency={self.config.concurrency}"
            f"{', dry-run' if self.dry_run else ''})"
        )

        self.status = CrawlStatus.RUNNING
        try:
            await self._run(state)
        except asyncio.CancelledError:
            logger.warning("Crawl interrupted; saving progress")
            self.status = CrawlStatus.ABORTED
            await self._cancel_in_flight()
            await self._checkpoint()
            raise

        if self.abort_error is not None:
            await self._cancel_in_flight()
        else:
            self.status = CrawlStatus.DRAINING

        await self._checkpoint()
        return self._finish()

    def _finish(self) -> CrawlReport:
        if self.abort_error is not None:
            self.status = CrawlStatus.ABORTED
        else:
            self.status = CrawlStatus.COMPLETED

        stats = self.state.stats if self.state else CrawlStats()
        stats.finish()

        if self.status is CrawlStatus.COMPLETED:
            logger.info(f"Crawl completed: {stats.summary()}")
        else:
            logger.error(f"Crawl aborted: {self.abort_error}")

        return CrawlReport(
            status=self.status,
            stats=stats.snapshot(),
            would_write=list(self.materializer.would_write),
            error=str(self.abort_error) if self.abort_error else None,
            output_dir=self.output_dir,
        )

    async def _run(self, state: CrawlState):
        while not self.cancel_event.is_set():
            while state.frontier and not self._ceiling_reached() and not self.cancel_event.is_set():
                url, depth = state.pop()
                try:
                    await self.semaphore.acquire()
                except asyncio.CancelledError:
                    state.requeue(url, depth)
                    raise

                if self.cancel_event.is_set():
                    self.semaphore.release()
                    state.requeue(url, depth)
                    break

                try:
                    admitted = await self._admit(url, depth)
                except asyncio.CancelledError:
                    self.semaphore.release()
                    if url not in state.visited:
                        state.requeue(url, depth)
                    raise

                if not admitted:
                    self.semaphore.release()
                    continue

                task = asyncio.create_task(self._process_url(url, depth))
                self._in_flight[task] = (url, depth)

                if self._ceiling_reached():
                    logger.info(f"Reached page limit of {self.max_pages}; finishing in-flight pages")
                    self.status = CrawlStatus.DRAINING

            if not self._in_flight:
                break

            done, _ = await asyncio.wait(list(self._in_flight), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                await self._collect(task)

    async def _admit(self, url: str, depth: int) -> bool:
        """Apply rules and politeness to a frontier URL; count rejections."""
        if not self.url_filter.admit(url):
            logger.debug(f"Skipping {url}: {self.url_filter.explain(url)}")
            await self.state.increment('skipped_by_rule')
            return False

        verdict = await self.policy.should_visit(url, depth)
        if verdict is Verdict.REJECT_DUPLICATE:
            return False
        if verdict is not Verdict.ADMIT:
            logger.debug(f"Skipping {url}: {verdict.value}")
            await self.state.increment('skipped_by_policy')
            return False

        if not await self.state.mark_visited(url):
            return False

        self._dispatched += 1
        return True

    async def _collect(self, task: asyncio.Task):
        url, depth = self._in_flight.pop(task)
        if task.cancelled():
            return

        for link in task.result():
            if self.state.enqueue(link, depth + 1):
                await self.state.increment('discovered')

        self._since_checkpoint += 1
        if self._since_checkpoint >= self.checkpoint_every and not self.cancel_event.is_set():
            await self._checkpoint()

    async def _process_url(self, url: str, depth: int) -> List[str]:
        """Fetch, process and write one page; returns the links it discovered.

        Holds one concurrency slot, released when the page is done.
        """
        links: List[str] = []
        try:
            await self.policy.throttle.wait(url)
            links, artifact = await asyncio.wait_for(self._handle_page(url, depth), timeout=self.page_timeout)
            if artifact is not None:
                await self.state.increment('written')
        except FetchError as e:
            logger.warning(str(e))
            await self.state.increment('failed')
        except asyncio.TimeoutError:
            logger.warning(f"Timed out processing {url} after {self.page_timeout}s")
            await self.state.increment('failed')
        except MaterializationError as e:
            logger.warning(str(e))
            await self.state.increment('failed')
            if e.structural:
                self._abort(e)
        except Exception as e:
            logger.warning(f"Failed to process {url}: {type(e).__name__}: {e}")
            await self.state.increment('failed')
        finally:
            self.semaphore.release()
        return links

    async def _handle_page(self, url: str, depth: int) -> Tuple[List[str], Optional[SkillArtifact]]:
        page = await self.engine.fetch(url, depth)
        if page.redirected and not await self._follow_redirect(url, page.final_url):
            return [], None

        links = self.engine.extract_links(page)
        processed = self.processor.process(page)
        artifact = self.materializer.materialize(processed)
        await self.materializer.write(artifact)
        return links, artifact

    async def _follow_redirect(self, url: str, target: str) -> bool:
        """Apply scope checks to a redirect target.

        Raises:
            FetchError: If the target is outside the crawl scope.
        """
        if not self.policy.host_in_scope(target) or not self.url_filter.admit(target):
            raise FetchError(url, f"redirected out of scope to {target}")
        if not await self.state.record_redirect(url, target):
            logger.debug(f"Skipping {url}: redirects to already crawled {target}")
            return False
        return True

    def _abort(self, error: BaseException):
        if self.abort_error is None:
            self.abort_error = CrawlAborted(str(error))
            self.abort_error.__cause__ = error
            logger.error(f"Aborting crawl: {error}")
        self.cancel_event.set()

    async def _cancel_in_flight(self):
        """Cancel running pages and hand them back to the frontier."""
        tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in tasks:
            url, depth = self._in_flight[task]
            if task.cancelled():
                self._in_flight.pop(task)
                self.state.unvisit(url, depth)
            else:
                await self._collect(task)

    async def _checkpoint(self):
        if self.dry_run or self.state is None:
            return
        try:
            await self.state.save(self.state_path, in_flight=self._in_flight.values())
            self._since_checkpoint = 0
        except OSError as e:
            logger.warning(f"Failed to save crawl state to {self.state_path}: {e}")


async def process_single_page(url: str,
                              config,
                              output_dir: Optional[Path] = None,
                              to_stdout: bool = False,
                              fetch_engine: Optional[FetchEngine] = None) -> SkillArtifact:
    """Fetch and materialize exactly one page, bypassing rules and traversal.

    Raises:
        ConfigError: If ``url`` is not a valid http(s) URL.
        FetchError: If the page cannot be fetched.
        MaterializationError: If the skill cannot be written.
    """
    url = normalize_seed(url)
    engine = fetch_engine or HttpFetchEngine.from_config(config)
    output_dir = Path(output_dir) if output_dir else config.resolve_output_path()
    materializer = SkillMaterializer(output_dir, flat=config.flat, dry_run=to_stdout)

    try:
        page = await engine.fetch(url, 0)
    finally:
        if fetch_engine is None:
            await engine.close()

    processed = PageProcessor.from_config(config).process(page)
    artifact = materializer.materialize(processed)
    if not to_stdout:
        materializer.ensure_output_dir()
        await materializer.write(artifact)
    return artifact


# Convenience functions
async def crawl_urls(urls: Sequence[str], config=None, **kwargs) -> CrawlReport:
    """Convenience function to crawl URLs.

    Args:
        urls: Seed URLs
        config: ``CrawlConfig``; defaults are used when omitted
        **kwargs: Passed to :class:`WebCrawler`

    Returns:
        The crawl report
    """
    if config is None:
        from config.skills_config import CrawlConfig
        config = CrawlConfig()

    async with WebCrawler(config, **kwargs) as crawler:
        return await crawler.crawl(urls)


def crawl_urls_sync(urls: Sequence[str], config=None, **kwargs) -> CrawlReport:
    """Synchronous wrapper for crawl_urls."""
    return asyncio.run(crawl_urls(urls, config, **kwargs))
