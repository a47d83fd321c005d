import asyncio
import json
from unittest.mock import patch

import pytest

from fakes import FakeFetchEngine, make_page
from pipelines.crawler import CrawlStatus, WebCrawler, crawl_urls, process_single_page
from pipelines.errors import ConfigError, FetchError, MaterializationError
from pipelines.materializer import SkillMaterializer
from pipelines.rules import Action, Rule
from pipelines.state import STATE_FILENAME, CrawlState

SEED = "https://docs.example.com/guide/"


def skill_dirs(output_dir):
    return sorted(p.parent.name for p in output_dir.glob("*/SKILL.md"))


def chain_site(length):
    """/docs/ -> /docs/p1 -> /docs/p2 -> ..."""
    urls = ["https://docs.example.com/docs/"] + [f"https://docs.example.com/docs/p{i}" for i in range(1, length)]
    pages = {}
    for i, url in enumerate(urls):
        links = [urls[i + 1]] if i + 1 < len(urls) else []
        pages[url] = make_page(f"Page {i}", links=links)
    return urls, pages


class BlockingFetchEngine(FakeFetchEngine):
    """Never finishes fetching the URLs in ``blocked``."""

    def __init__(self, pages, blocked):
        super().__init__(pages)
        self.blocked = set(blocked)
        self.reached_blocked = asyncio.Event()

    async def fetch(self, url, depth=0):
        if url in self.blocked:
            self.fetched.append(url)
            self.reached_blocked.set()
            await asyncio.Event().wait()
        return await super().fetch(url, depth)


class CountingFetchEngine(FakeFetchEngine):
    """Records the highest number of simultaneous fetches."""

    def __init__(self, pages, delay):
        super().__init__(pages, delay)
        self.active = 0
        self.max_active = 0

    async def fetch(self, url, depth=0):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            return await super().fetch(url, depth)
        finally:
            self.active -= 1


class TestWebCrawler:
    """End-to-end crawls against an in-memory site"""

    @pytest.mark.asyncio
    async def test_crawl_writes_one_skill_per_page(self, crawl_config, output_dir, docs_site):
        engine = FakeFetchEngine(docs_site)
        report = await crawl_urls([SEED], crawl_config, fetch_engine=engine)

        assert report.status is CrawlStatus.COMPLETED
        assert report.succeeded
        assert skill_dirs(output_dir) == ["guide", "guide-intro", "guide-setup"]

        stats = report.stats
        assert stats.visited == 3
        assert stats.written == 3
        assert stats.failed == 0
        # Home link, other host and blog post are outside the seed scope
        assert stats.skipped_by_rule == 3
        assert stats.skipped_by_policy == 0
        assert stats.discovered == 6
        assert stats.duration is not None

        assert sorted(engine.fetched) == sorted(docs_site)
        assert not engine.closed

        content = (output_dir / "guide" / "SKILL.md").read_text(encoding="utf-8")
        assert content.startswith("---\nname: guide\ndescription: The user guide.\n")
        assert "\n# Guide\n" in content

    @pytest.mark.asyncio
    async def test_every_discovered_url_is_accounted_for(self, crawl_config, docs_site):
        report = await crawl_urls([SEED], crawl_config, fetch_engine=FakeFetchEngine(docs_site))
        stats = report.stats
        assert stats.discovered == stats.visited + stats.skipped_by_rule + stats.skipped_by_policy
        assert stats.visited == stats.written + stats.failed

    @pytest.mark.asyncio
    async def test_depth_limit(self, crawl_config, output_dir):
        urls, pages = chain_site(4)
        config = crawl_config.with_overrides(max_depth=1)
        engine = FakeFetchEngine(pages)

        report = await crawl_urls([urls[0]], config, fetch_engine=engine)

        assert report.stats.visited == 2
        assert report.stats.written == 2
        assert report.stats.skipped_by_policy == 1
        assert urls[2] not in engine.fetched
        assert urls[3] not in engine.fetched

    @pytest.mark.asyncio
    async def test_fetch_failure_is_isolated(self, crawl_config, output_dir, docs_site):
        docs_site["https://docs.example.com/guide/setup"] = FetchError(
            "https://docs.example.com/guide/setup", "Internal Server Error", 500
        )
        docs_site["https://docs.example.com/guide/intro"] = RuntimeError("parser exploded")

        report = await crawl_urls([SEED], crawl_config, fetch_engine=FakeFetchEngine(docs_site))

        assert report.status is CrawlStatus.COMPLETED
        assert report.stats.visited == 3
        assert report.stats.failed == 2
        assert report.stats.written == 1
        assert skill_dirs(output_dir) == ["guide"]

    @pytest.mark.asyncio
    async def test_ignore_rules_from_config(self, crawl_config, output_dir, docs_site):
        config = crawl_config.with_overrides(rules=(Rule(url="*/setup*", action=Action.IGNORE),))
        engine = FakeFetchEngine(docs_site)

        report = await crawl_urls([SEED], config, fetch_engine=engine)

        assert "https://docs.example.com/guide/setup" not in engine.fetched
        assert report.stats.skipped_by_rule == 4
        assert skill_dirs(output_dir) == ["guide", "guide-intro"]

    @pytest.mark.asyncio
    async def test_pattern_seed(self, crawl_config, output_dir, docs_site):
        report = await crawl_urls(
            ["https://docs.example.com/guide/in*"], crawl_config, fetch_engine=FakeFetchEngine(docs_site)
        )
        assert skill_dirs(output_dir) == ["guide", "guide-intro"]
        assert report.stats.written == 2

    @pytest.mark.asyncio
    async def test_dry_run_touches_nothing(self, crawl_config, output_dir, docs_site):
        report = await crawl_urls([SEED], crawl_config, fetch_engine=FakeFetchEngine(docs_site), dry_run=True)

        assert report.succeeded
        assert report.stats.written == 3
        assert sorted(p.parent.name for p in report.would_write) == ["guide", "guide-intro", "guide-setup"]
        assert not output_dir.exists()

    @pytest.mark.asyncio
    async def test_flat_layout(self, crawl_config, output_dir, docs_site):
        config = crawl_config.with_overrides(flat=True)
        await crawl_urls([SEED], config, fetch_engine=FakeFetchEngine(docs_site))
        assert sorted(p.name for p in output_dir.glob("*.md")) == ["guide-intro.md", "guide-setup.md", "guide.md"]

    @pytest.mark.asyncio
    async def test_colliding_names_get_distinct_artifacts(self, crawl_config, output_dir):
        pages = {
            "https://docs.example.com/docs/": make_page("Docs", links=["/docs/intro", "/docs/intro.html"]),
            "https://docs.example.com/docs/intro": make_page("Intro"),
            "https://docs.example.com/docs/intro.html": make_page("Intro (legacy)"),
        }
        report = await crawl_urls(["https://docs.example.com/docs/"], crawl_config, fetch_engine=FakeFetchEngine(pages))

        names = skill_dirs(output_dir)
        assert report.stats.written == 3
        assert len(names) == 3
        assert "docs-intro" in names
        assert any(name.startswith("docs-intro-") for name in names)

    @pytest.mark.asyncio
    async def test_page_ceiling_then_resume(self, crawl_config, output_dir, docs_site):
        first = await crawl_urls([SEED], crawl_config, fetch_engine=FakeFetchEngine(docs_site), max_pages=1)

        assert first.succeeded
        assert first.stats.visited == 1
        assert skill_dirs(output_dir) == ["guide"]

        saved = json.loads((output_dir / STATE_FILENAME).read_text())
        assert saved["visited"] == [SEED]
        assert len(saved["frontier"]) == 5

        engine = FakeFetchEngine(docs_site)
        second = await crawl_urls([SEED], crawl_config, fetch_engine=engine, resume=True)

        assert SEED not in engine.fetched
        assert second.stats.visited == 3
        assert second.stats.written == 3
        assert second.stats.discovered == 6
        assert skill_dirs(output_dir) == ["guide", "guide-intro", "guide-setup"]

    @pytest.mark.asyncio
    async def test_resume_without_state_starts_fresh(self, crawl_config, output_dir, docs_site):
        report = await crawl_urls([SEED], crawl_config, fetch_engine=FakeFetchEngine(docs_site), resume=True)
        assert report.stats.written == 3

    @pytest.mark.asyncio
    async def test_corrupt_resume_state(self, crawl_config, output_dir, docs_site):
        output_dir.mkdir(parents=True)
        (output_dir / STATE_FILENAME).write_text("{broken")
        engine = FakeFetchEngine(docs_site)

        with pytest.raises(ConfigError):
            await crawl_urls([SEED], crawl_config, fetch_engine=engine, resume=True)
        assert engine.fetched == []

    @pytest.mark.asyncio
    async def test_invalid_seed_makes_no_requests(self, crawl_config, docs_site):
        engine = FakeFetchEngine(docs_site)
        with pytest.raises(ConfigError):
            await crawl_urls(["not-a-url"], crawl_config, fetch_engine=engine)
        assert engine.fetched == []

    @pytest.mark.asyncio
    async def test_structural_write_failure_aborts(self, crawl_config, output_dir, docs_site):
        error = MaterializationError(output_dir / "guide" / "SKILL.md", "Read-only file system", structural=True)

        with patch.object(SkillMaterializer, "write", side_effect=error):
            report = await crawl_urls([SEED], crawl_config, fetch_engine=FakeFetchEngine(docs_site))

        assert report.status is CrawlStatus.ABORTED
        assert not report.succeeded
        assert "Read-only file system" in report.error
        assert report.stats.written == 0
        assert report.stats.failed == 1

    @pytest.mark.asyncio
    async def test_unwritable_output_root_aborts_before_fetching(self, crawl_config, tmp_path, docs_site):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        engine = FakeFetchEngine(docs_site)

        report = await crawl_urls([SEED], crawl_config, fetch_engine=engine, output_dir=blocker)

        assert report.status is CrawlStatus.ABORTED
        assert engine.fetched == []

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, crawl_config):
        children = [f"https://docs.example.com/docs/p{i}" for i in range(8)]
        pages = {"https://docs.example.com/docs/": make_page("Docs", links=children)}
        pages.update({url: make_page(url) for url in children})
        engine = CountingFetchEngine(pages, delay=0.01)

        report = await crawl_urls(
            ["https://docs.example.com/docs/"], crawl_config.with_overrides(concurrency=3), fetch_engine=engine
        )

        assert report.stats.written == 9
        assert engine.max_active <= 3
        assert engine.max_active > 1

    @pytest.mark.asyncio
    async def test_cancellation_saves_unfinished_pages(self, crawl_config, output_dir, docs_site):
        blocked = ["https://docs.example.com/guide/intro", "https://docs.example.com/guide/setup"]
        engine = BlockingFetchEngine(docs_site, blocked)
        crawler = WebCrawler(crawl_config.with_overrides(concurrency=2), fetch_engine=engine)

        task = asyncio.create_task(crawler.crawl([SEED]))
        await asyncio.wait_for(engine.reached_blocked.wait(), timeout=5)
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await crawler.close()

        state = CrawlState.load(output_dir / STATE_FILENAME)
        assert state.visited == {SEED}
        assert state.stats.visited == 1
        assert state.stats.written == 1
        queued = {url for url, _ in state.frontier}
        assert set(blocked) <= queued
        assert queued.isdisjoint(state.visited)

    @pytest.mark.asyncio
    async def test_slow_page_times_out_without_blocking_others(self, crawl_config, output_dir, docs_site):
        engine = BlockingFetchEngine(docs_site, ["https://docs.example.com/guide/intro"])

        report = await crawl_urls(
            [SEED], crawl_config.with_overrides(concurrency=2), fetch_engine=engine, page_timeout=0.1
        )

        assert report.status is CrawlStatus.COMPLETED
        assert report.stats.failed == 1
        assert report.stats.written == 2
        assert skill_dirs(output_dir) == ["guide", "guide-setup"]

    @pytest.mark.asyncio
    async def test_redirects_resolve_links_against_target(self, crawl_config, output_dir):
        """Relative links follow the redirect; a redirect onto a crawled page is skipped."""
        root = "https://docs.example.com/docs/"
        pages = {
            root: make_page("Docs", links=["/docs/start/", "/docs/start", "/docs/guide"]),
            root + "start/": make_page("Start"),
            root + "guide/": make_page("Guide", links=["intro"]),
            root + "guide/intro": make_page("Intro"),
        }
        redirects = {root + "start": root + "start/", root + "guide": root + "guide/"}
        engine = FakeFetchEngine(pages, redirects=redirects)

        report = await crawl_urls([root], crawl_config, fetch_engine=engine)

        assert root + "guide/intro" in engine.fetched
        assert "https://docs.example.com/docs/intro" not in engine.fetched
        assert skill_dirs(output_dir) == ["docs", "docs-guide", "docs-guide-intro", "docs-start"]

        stats = report.stats
        assert stats.written == 4
        assert stats.failed == 0
        assert stats.skipped_by_policy == 1
        assert stats.discovered == stats.visited + stats.skipped_by_rule + stats.skipped_by_policy
        assert stats.visited == stats.written + stats.failed

    @pytest.mark.asyncio
    async def test_redirect_out_of_scope_fails_page(self, crawl_config, output_dir):
        root = "https://docs.example.com/docs/"
        pages = {
            root: make_page("Docs", links=["/docs/moved"]),
            "https://other.example.org/moved": make_page("Moved", links=["/private"]),
        }
        engine = FakeFetchEngine(pages, redirects={root + "moved": "https://other.example.org/moved"})

        report = await crawl_urls([root], crawl_config, fetch_engine=engine)

        assert report.status is CrawlStatus.COMPLETED
        assert report.stats.failed == 1
        assert report.stats.written == 1
        assert skill_dirs(output_dir) == ["docs"]
        assert "https://other.example.org/private" not in engine.fetched

    @pytest.mark.asyncio
    async def test_http_engine_shares_host_throttle(self, crawl_config):
        crawler = WebCrawler(crawl_config)
        crawler._seed([SEED])
        try:
            assert crawler.engine.throttle is crawler.policy.throttle
        finally:
            await crawler.close()

    @pytest.mark.asyncio
    async def test_owned_engine_is_closed(self, crawl_config):
        crawler = WebCrawler(crawl_config)
        with patch.object(crawler.engine, "close") as close:
            await crawler.close()
        close.assert_awaited_once()


class TestProcessSinglePage:

    @pytest.mark.asyncio
    async def test_writes_one_skill(self, crawl_config, output_dir, docs_site):
        engine = FakeFetchEngine(docs_site)
        artifact = await process_single_page(SEED, crawl_config, fetch_engine=engine)

        assert engine.fetched == [SEED]
        assert artifact.path == output_dir / "guide" / "SKILL.md"
        assert artifact.path.read_text(encoding="utf-8") == artifact.content

    @pytest.mark.asyncio
    async def test_ignores_rules(self, crawl_config, output_dir, docs_site):
        config = crawl_config.with_overrides(rules=(Rule(url="*", action=Action.IGNORE),))
        artifact = await process_single_page(SEED, config, fetch_engine=FakeFetchEngine(docs_site))
        assert artifact.path.exists()

    @pytest.mark.asyncio
    async def test_to_stdout_writes_nothing(self, crawl_config, output_dir, docs_site):
        artifact = await process_single_page(SEED, crawl_config, to_stdout=True, fetch_engine=FakeFetchEngine(docs_site))
        assert artifact.content.startswith("---\nname: guide\n")
        assert not output_dir.exists()

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates(self, crawl_config):
        with pytest.raises(FetchError):
            await process_single_page("https://docs.example.com/missing", crawl_config, fetch_engine=FakeFetchEngine({}))
