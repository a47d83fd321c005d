import time

import pytest
from aiohttp import web

from fakes import serve
from pipelines.errors import FetchError
from pipelines.fetcher import HttpFetchEngine, extract_links
from pipelines.models import FetchedPage
from pipelines.policy import HostThrottle


def engine(**kwargs):
    options = dict(user_agent="DocSkills-Test/1.0", request_timeout=5, max_retries=2, retry_delay=0.0)
    options.update(kwargs)
    return HttpFetchEngine(**options)


class TestExtractLinks:
    """Link discovery from raw HTML"""

    def test_resolves_and_filters(self):
        html = """
        <a href="/guide/intro">Intro</a>
        <a href="setup#install">Setup</a>
        <a href="https://other.example.org/x">Other</a>
        <a href="mailto:docs@example.com">Mail</a>
        <a href="javascript:void(0)">JS</a>
        <a href="tel:123">Call</a>
        <a href="ftp://files.example.com/x">FTP</a>
        <a href="#top">Top</a>
        <a>No href</a>
        <a href="/guide/intro#again">Intro again</a>
        """
        links = extract_links(html, "https://docs.example.com/guide/")
        assert links == [
            "https://docs.example.com/guide/intro",
            "https://docs.example.com/guide/setup",
            "https://other.example.org/x",
            "https://docs.example.com/guide/",
        ]

    def test_base_tag(self):
        html = '<head><base href="https://cdn.example.com/docs/"></head><a href="page">Page</a>'
        assert extract_links(html, "https://docs.example.com/") == ["https://cdn.example.com/docs/page"]

    def test_engine_uses_page_url(self):
        page = FetchedPage(url="https://x.com/a/", status=200, html='<a href="b">b</a>')
        assert engine().extract_links(page) == ["https://x.com/a/b"]


class TestHttpFetchEngine:

    @pytest.mark.asyncio
    async def test_fetch_html(self):
        async def handler(request):
            assert request.headers["User-Agent"] == "DocSkills-Test/1.0"
            return web.Response(text="<h1>Hello</h1>", content_type="text/html")

        async with serve({"/page": handler}) as server, engine() as fetcher:
            page = await fetcher.fetch(str(server.make_url("/page")), depth=2)

        assert page.status == 200
        assert page.depth == 2
        assert "<h1>Hello</h1>" in page.html
        assert page.content_type.startswith("text/html")
        assert page.final_url is None
        assert not page.redirected

    @pytest.mark.asyncio
    async def test_links_resolve_against_redirect_target(self):
        async def docs(request):
            raise web.HTTPFound("/docs/")

        async def docs_index(request):
            return web.Response(text='<a href="intro">Intro</a>', content_type="text/html")

        async with serve({"/docs": docs, "/docs/": docs_index}) as server, engine() as fetcher:
            url = str(server.make_url("/docs"))
            page = await fetcher.fetch(url)
            links = fetcher.extract_links(page)

        assert page.url == url
        assert page.redirected
        assert page.final_url == str(server.make_url("/docs/"))
        assert links == [str(server.make_url("/docs/intro"))]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        hits = []

        async def handler(request):
            hits.append(request.path)
            return web.Response(status=404, text="missing")

        async with serve({"/gone": handler}) as server, engine() as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(str(server.make_url("/gone")))

        assert exc_info.value.status == 404
        assert len(hits) == 1

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self):
        hits = []

        async def handler(request):
            hits.append(request.path)
            if len(hits) == 1:
                return web.Response(status=503)
            return web.Response(text="<p>ok</p>", content_type="text/html")

        async with serve({"/flaky": handler}) as server, engine() as fetcher:
            page = await fetcher.fetch(str(server.make_url("/flaky")))

        assert page.status == 200
        assert len(hits) == 2

    @pytest.mark.asyncio
    async def test_retries_respect_host_spacing(self):
        hits = []

        async def handler(request):
            hits.append(time.monotonic())
            if len(hits) == 1:
                return web.Response(status=429)
            return web.Response(text="<p>ok</p>", content_type="text/html")

        throttle = HostThrottle(0.3)
        async with serve({"/limited": handler}) as server, engine(throttle=throttle) as fetcher:
            url = str(server.make_url("/limited"))
            await throttle.wait(url)
            page = await fetcher.fetch(url)

        assert page.status == 200
        assert len(hits) == 2
        assert hits[1] - hits[0] >= 0.25

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        hits = []

        async def handler(request):
            hits.append(request.path)
            return web.Response(status=502)

        async with serve({"/down": handler}) as server, engine(max_retries=1) as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(str(server.make_url("/down")))

        assert exc_info.value.status == 502
        assert len(hits) == 2

    @pytest.mark.asyncio
    async def test_non_html_content(self):
        async def handler(request):
            return web.json_response({"not": "html"})

        async with serve({"/api": handler}) as server, engine() as fetcher:
            with pytest.raises(FetchError, match="non-HTML"):
                await fetcher.fetch(str(server.make_url("/api")))

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        async with serve({}) as server:
            url = str(server.make_url("/"))
        # The server is gone; nothing listens on the port any more
        async with engine(max_retries=1) as fetcher:
            with pytest.raises(FetchError):
                await fetcher.fetch(url)

    def test_retry_delay_is_capped(self):
        fetcher = engine(retry_delay=1.0, max_retry_delay=5.0)
        assert 1.0 <= fetcher._calculate_retry_delay(0) <= 1.3
        assert fetcher._calculate_retry_delay(10) == 5.0

    def test_from_config(self, crawl_config):
        fetcher = HttpFetchEngine.from_config(crawl_config)
        assert fetcher.user_agent == crawl_config.effective_user_agent
        assert fetcher.request_timeout == crawl_config.request_timeout_secs
        assert fetcher.max_connections == crawl_config.concurrency * 2
