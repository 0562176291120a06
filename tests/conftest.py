"""
Shared fixtures: an in-process aiohttp site with a fixed link graph, and a
fake transport for cases a real server makes slow or flaky.
"""

import asyncio
import gzip
from contextlib import asynccontextmanager
from typing import Dict, List, Optional
from urllib.parse import urlsplit

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from webcrawler.crawler.scheduler import CrawlerScheduler


ETAG = '"v1"'


async def home(request):
    return web.Response(text="Home. <a href='/stage2'>stage2</a>", content_type='text/html')


async def stage2(request):
    return web.Response(text=f"Stage2. http://{request.host}/stage/3", content_type='text/html')


async def stage3(request):
    return web.Response(text="Stage3. <a href='../stage4'>stage4</a>", content_type='text/html')


async def stage4(request):
    raise web.HTTPMovedPermanently('/stage5')


async def stage5(request):
    return web.Response(text="Crawl complete!", content_type='text/html')


async def gone(request):
    raise web.HTTPGone()


async def server_error(request):
    raise web.HTTPInternalServerError()


async def etag(request):
    if request.headers.get('If-None-Match') == ETAG:
        return web.Response(status=304, headers={'ETag': ETAG})
    return web.Response(text="Cached resource", content_type='text/plain', headers={'ETag': ETAG})


async def compressed(request):
    body = gzip.compress(b"Compressed. <a href='/stage5'>stage5</a>")
    return web.Response(body=body, content_type='text/html', headers={'Content-Encoding': 'gzip'})


def build_site() -> web.Application:
    app = web.Application()
    app.router.add_get('/', home)
    app.router.add_get('/stage2', stage2)
    app.router.add_get('/stage/3', stage3)
    app.router.add_get('/stage4', stage4)
    app.router.add_get('/stage5', stage5)
    app.router.add_get('/gone', gone)
    app.router.add_get('/error', server_error)
    app.router.add_get('/etag', etag)
    app.router.add_get('/compressed', compressed)
    return app


@pytest_asyncio.fixture
async def site():
    """Running test site. Unknown paths (including /robots.txt) answer 404."""
    server = TestServer(build_site(), host='127.0.0.1')
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def site_url(site):
    def url(path: str = '/') -> str:
        return f"http://127.0.0.1:{site.port}{path}"
    return url


@pytest.fixture
def make_crawler(site_url):
    def make(path: str = '/', **options) -> CrawlerScheduler:
        options.setdefault('interval', 0.01)
        options.setdefault('timeout', 5)
        return CrawlerScheduler.from_url(site_url(path), **options)
    return make


class FakeResponse:
    """Canned response for FakeFetcher."""

    def __init__(self, status: int = 200, body: bytes = b'', headers: Optional[Dict[str, str]] = None,
                 delay: float = 0.0, error: Optional[BaseException] = None):
        self.status = status
        self.body = body
        self.headers = {'content-type': 'text/html'}
        self.headers.update({name.lower(): value for name, value in (headers or {}).items()})
        self.delay = delay
        self.error = error

    async def iter_chunks(self, chunk_size: int = 16):
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start:start + chunk_size]


class FakeFetcher:
    """
    Transport double keyed by path. Records requests and the highest number
    of requests open at the same time.
    """

    def __init__(self, routes: Dict[str, FakeResponse]):
        self.routes = routes
        self.requests: List = []
        self.active = 0
        self.max_active = 0

    @asynccontextmanager
    async def open(self, request):
        path = urlsplit(request.url).path
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            response = self.routes.get(path, FakeResponse(404))
            if response.delay:
                await asyncio.sleep(response.delay)
            if response.error is not None:
                raise response.error
            yield response
        finally:
            self.active -= 1

    def paths(self) -> List[str]:
        return [urlsplit(request.url).path for request in self.requests]


@pytest.fixture
def fake_crawler():
    def make(routes: Dict[str, FakeResponse], **options):
        options.setdefault('interval', 0.005)
        options.setdefault('timeout', 5)
        fetcher = FakeFetcher(routes)
        scheduler = CrawlerScheduler.from_url("http://example.com/", fetcher=fetcher, **options)
        return scheduler, fetcher
    return make
