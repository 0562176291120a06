"""Tests for the crawl scheduler, against the test site and the fake transport."""

import asyncio
import gzip

import pytest

from webcrawler.crawler.queue import FetchQueue, QueueItemStatus
from webcrawler.crawler.scheduler import CrawlerScheduler
from webcrawler.storage.cache import Cache, FilesystemBackend
from webcrawler.utils.config import ConfigurationError, CrawlerConfig

from .conftest import FakeResponse


def html(text: str) -> bytes:
    return text.encode('utf-8')


class TestConstruction:
    """Scheduler construction and signal registration."""

    def test_from_url_sets_seed(self):
        scheduler = CrawlerScheduler.from_url("https://Example.com:8443/start?x=1")

        assert scheduler.config.host == "example.com"
        assert scheduler.config.initial_protocol == "https"
        assert scheduler.config.initial_port == 8443
        assert scheduler.config.initial_path == "/start?x=1"

    def test_invalid_port_rejected(self):
        with pytest.raises(ConfigurationError, match="Port must be a number"):
            CrawlerScheduler(CrawlerConfig(host="example.com", initial_port="http"))

        with pytest.raises(ConfigurationError):
            CrawlerScheduler(CrawlerConfig(host="example.com", initial_port=70000))

    def test_empty_host_rejected(self):
        with pytest.raises(ConfigurationError):
            CrawlerScheduler(CrawlerConfig(host=""))

    def test_unknown_signal_rejected(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/")

        with pytest.raises(ValueError):
            scheduler.on('fetchsomething', lambda: None)
        with pytest.raises(ValueError):
            scheduler.emit('nosuchsignal')

    def test_listener_errors_do_not_propagate(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/")
        calls = []

        def broken():
            raise RuntimeError("listener bug")

        scheduler.on('crawlstart', broken)
        scheduler.on('crawlstart', lambda: calls.append('second'))
        scheduler.emit('crawlstart')

        assert calls == ['second']

    def test_off_removes_listener(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/")
        calls = []

        def listener():
            calls.append(1)

        scheduler.on('crawlstart', listener)
        assert scheduler.off('crawlstart', listener) is True
        assert scheduler.off('crawlstart', listener) is False

        scheduler.emit('crawlstart')
        assert calls == []

    def test_request_options(self):
        scheduler = CrawlerScheduler.from_url(
            "http://example.com/",
            custom_headers={'X-Test': '1'},
        )
        scheduler.config.auth.enabled = True
        scheduler.config.auth.user = "user"
        scheduler.config.auth.password = "secret"
        item = scheduler.process_url("/page", scheduler.process_url("http://example.com/"))

        request = scheduler.get_request_options(item)

        assert request.url == "http://example.com/page"
        assert request.headers['Referer'] == "http://example.com/"
        assert request.headers['X-Test'] == '1'
        assert request.headers['Accept-Encoding'] == 'gzip, deflate'
        assert request.auth == ("user", "secret")
        assert request.proxy is None


class TestQueueing:
    """queue_url / process_url / clean_expand_resources."""

    @pytest.mark.asyncio
    async def test_seed_depth_and_child_depth(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/")

        assert await scheduler.queue_url("http://example.com/") is True
        seed = scheduler.queue.get(0)
        assert await scheduler.queue_url("/child", seed) is True
        child = scheduler.queue.get(1)

        assert seed.depth == 1
        assert seed.referrer is None
        assert child.depth == 2
        assert child.referrer == "http://example.com/"

    @pytest.mark.asyncio
    async def test_duplicate_emits_signal(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/")
        duplicates = []
        scheduler.on('queueduplicate', lambda item: duplicates.append(item.url))

        assert await scheduler.queue_url("http://example.com/a") is True
        assert await scheduler.queue_url("http://EXAMPLE.com:80/a#frag") is False

        assert duplicates == ["http://example.com/a"]
        assert len(scheduler.queue) == 1

    @pytest.mark.asyncio
    async def test_force_allows_duplicate(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/")

        await scheduler.queue_url("http://example.com/a")
        assert await scheduler.queue_url("http://example.com/a", force=True) is True
        assert len(scheduler.queue) == 2

    @pytest.mark.asyncio
    async def test_other_domain_not_queued(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/")

        assert await scheduler.queue_url("http://other.org/") is False
        assert await scheduler.queue_url("http://www.example.com/www") is True
        assert await scheduler.queue_url("ftp://example.com/file") is False

    @pytest.mark.asyncio
    async def test_fetch_condition_veto(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/")
        prevented = []
        scheduler.on('fetchprevented', lambda item, referrer: prevented.append(item.path))
        scheduler.add_fetch_condition(lambda item, referrer: not item.path.endswith('.pdf'))

        assert await scheduler.queue_url("http://example.com/doc.pdf") is False
        assert await scheduler.queue_url("http://example.com/doc.html") is True
        assert prevented == ["/doc.pdf"]

    @pytest.mark.asyncio
    async def test_async_fetch_condition(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/")

        async def allow_short_paths(item, referrer):
            await asyncio.sleep(0)
            return len(item.path) < 10

        scheduler.add_fetch_condition(allow_short_paths)

        assert await scheduler.queue_url("http://example.com/a") is True
        assert await scheduler.queue_url("http://example.com/a-very-long-path") is False

    @pytest.mark.asyncio
    async def test_fetch_condition_error(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/")
        errors = []
        scheduler.on('fetchconditionerror', lambda item, error: errors.append(error))

        def broken(item, referrer):
            raise KeyError("boom")

        condition_id = scheduler.add_fetch_condition(broken)

        assert await scheduler.queue_url("http://example.com/a") is False
        assert errors[0].condition_id == condition_id
        assert isinstance(errors[0].error, KeyError)

    @pytest.mark.asyncio
    async def test_veto_skips_later_conditions(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/")
        prevented = []
        errors = []
        scheduler.on('fetchprevented', lambda item, referrer: prevented.append(item.path))
        scheduler.on('fetchconditionerror', lambda item, error: errors.append(error))

        def broken(item, referrer):
            raise RuntimeError("must not run")

        scheduler.add_fetch_condition(lambda item, referrer: False)
        scheduler.add_fetch_condition(broken)

        assert await scheduler.queue_url("http://example.com/a") is False
        assert prevented == ["/a"]
        assert errors == []
        assert len(scheduler.queue) == 0

    @pytest.mark.asyncio
    async def test_strip_and_sort_querystring(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/", sort_query_parameters=True)
        await scheduler.queue_url("http://example.com/search?b=2&a=1")
        assert scheduler.queue.get(0).url == "http://example.com/search?a=1&b=2"

        scheduler.config.strip_querystring = True
        await scheduler.queue_url("http://example.com/other?b=2&a=1")
        assert scheduler.queue.get(1).url == "http://example.com/other"

    def test_clean_expand_resources(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/dir/")
        context = scheduler.process_url("http://example.com/dir/page")

        children = scheduler.clean_expand_resources(
            ["a", "./a", "../b", "http://other.org/", "mailto:me@example.com", "/../../c"],
            context,
        )

        assert [child.url for child in children] == [
            "http://example.com/dir/a",
            "http://example.com/b",
        ]
        assert all(child.depth == 2 for child in children)

    @pytest.mark.asyncio
    async def test_max_depth_limits_queueing(self):
        scheduler = CrawlerScheduler.from_url("http://example.com/", max_depth=1)

        await scheduler.queue_url("http://example.com/")
        seed = scheduler.queue.get(0)

        assert await scheduler.queue_url("/child", seed) is False
        assert len(scheduler.queue) == 1


class TestCrawlAgainstSite:
    """End to end crawls of the in-process test site."""

    @pytest.mark.asyncio
    async def test_crawls_whole_route_graph(self, make_crawler):
        scheduler = make_crawler()
        completed = []
        redirects = []
        finished = []
        scheduler.on('fetchcomplete', lambda item, body, response: completed.append(item.path))
        scheduler.on('fetchredirect', lambda item, target, response: redirects.append((item.path, target.path)))
        scheduler.on('complete', lambda: finished.append(True))

        await asyncio.wait_for(scheduler.run(), timeout=10)

        assert sorted(completed) == ['/', '/stage/3', '/stage2', '/stage5']
        assert redirects == [('/stage4', '/stage5')]
        assert finished == [True]
        assert len(scheduler.queue) == 5
        assert all(item.fetched for item in scheduler.queue)

    @pytest.mark.asyncio
    async def test_depth_follows_links_and_redirects(self, make_crawler):
        scheduler = make_crawler()

        await asyncio.wait_for(scheduler.run(), timeout=10)

        depths = {item.path: item.depth for item in scheduler.queue}
        assert depths == {'/': 1, '/stage2': 2, '/stage/3': 3, '/stage4': 4, '/stage5': 5}

    @pytest.mark.asyncio
    async def test_max_depth(self, make_crawler):
        scheduler = make_crawler(max_depth=2)

        await asyncio.wait_for(scheduler.run(), timeout=10)

        assert [item.path for item in scheduler.queue] == ['/', '/stage2']

    @pytest.mark.asyncio
    async def test_state_data_recorded(self, make_crawler):
        scheduler = make_crawler()

        await asyncio.wait_for(scheduler.run(), timeout=10)

        seed = scheduler.queue.get(0)
        assert seed.status == QueueItemStatus.DOWNLOADED
        assert seed.state_data.code == 200
        assert seed.state_data.content_type.startswith('text/html')
        assert seed.state_data.actual_data_size == len("Home. <a href='/stage2'>stage2</a>")
        assert seed.state_data.sent_incorrect_size is False
        assert seed.state_data.request_time >= seed.state_data.request_latency >= 0

    @pytest.mark.asyncio
    async def test_not_found_and_gone(self, make_crawler):
        for path in ('/missing', '/gone'):
            scheduler = make_crawler(path)
            not_found = []
            scheduler.on('fetch404', lambda item, response: not_found.append(response.status))

            await asyncio.wait_for(scheduler.run(), timeout=10)

            assert scheduler.queue.get(0).status == QueueItemStatus.NOT_FOUND
            assert len(not_found) == 1

    @pytest.mark.asyncio
    async def test_server_error(self, make_crawler):
        scheduler = make_crawler('/error')
        errors = []
        scheduler.on('fetcherror', lambda item, response: errors.append(response.status))

        await asyncio.wait_for(scheduler.run(), timeout=10)

        assert errors == [500]
        assert scheduler.queue.get(0).status == QueueItemStatus.FAILED

    @pytest.mark.asyncio
    async def test_gzip_body_is_decompressed(self, make_crawler):
        scheduler = make_crawler('/compressed')
        bodies = []
        scheduler.on('fetchcomplete', lambda item, body, response: bodies.append((item.path, body)))

        await asyncio.wait_for(scheduler.run(), timeout=10)

        assert bodies[0] == ('/compressed', b"Compressed. <a href='/stage5'>stage5</a>")
        assert [item.path for item in scheduler.queue] == ['/compressed', '/stage5']

    @pytest.mark.asyncio
    async def test_not_modified_with_cache(self, make_crawler, tmp_path):
        first = make_crawler('/etag', cache=Cache(FilesystemBackend(str(tmp_path))))
        await asyncio.wait_for(first.run(), timeout=10)
        assert first.queue.get(0).status == QueueItemStatus.DOWNLOADED
        assert (tmp_path / "cacheindex.json").exists()

        second = make_crawler('/etag', cache=Cache(FilesystemBackend(str(tmp_path))))
        not_modified = []
        second.on('notmodified', lambda item, response, cached: not_modified.append(cached.etag))

        await asyncio.wait_for(second.run(), timeout=10)

        assert not_modified == ['"v1"']
        assert second.queue.get(0).status == QueueItemStatus.NOT_MODIFIED
        assert second.queue.get(0).fetched is True

    @pytest.mark.asyncio
    async def test_freeze_and_resume(self, make_crawler, tmp_path):
        snapshot = tmp_path / "queue.json"
        scheduler = make_crawler()

        async def halt(item, body, response):
            await scheduler.stop(abort=True)

        scheduler.on('fetchcomplete', halt)
        await scheduler.start()
        await asyncio.wait_for(scheduler.join(), timeout=10)
        await scheduler.close()
        scheduler.queue.freeze(snapshot)

        resumed = make_crawler()
        resumed.queue.defrost(snapshot)
        started = []
        resumed.on('fetchstart', lambda item, request: started.append(item.path))

        await asyncio.wait_for(resumed.run(), timeout=10)

        assert '/' not in started
        assert [item.path for item in resumed.queue] == ['/', '/stage2', '/stage/3', '/stage4', '/stage5']
        assert all(item.fetched for item in resumed.queue)


class TestCrawlWithFakeTransport:
    """Timing, concurrency and failure cases driven by the fake transport."""

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, fake_crawler):
        links = " ".join(f"<a href='/p{i}'>p{i}</a>" for i in range(12))
        routes = {'/': FakeResponse(body=html(links))}
        for i in range(12):
            routes[f'/p{i}'] = FakeResponse(body=b"leaf", delay=0.05)

        scheduler, fetcher = fake_crawler(routes, max_concurrency=3, interval=0.001)
        await asyncio.wait_for(scheduler.run(), timeout=10)

        assert fetcher.max_active <= 3
        assert scheduler.open_requests == 0
        assert scheduler.queue.completed_count == 13

    @pytest.mark.asyncio
    async def test_timeout(self, fake_crawler):
        routes = {'/': FakeResponse(body=b"slow", delay=1.0)}
        scheduler, fetcher = fake_crawler(routes, timeout=0.1)
        timeouts = []
        scheduler.on('fetchtimeout', lambda item, timeout: timeouts.append(timeout))

        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert timeouts == [0.1]
        assert scheduler.queue.get(0).status == QueueItemStatus.TIMEOUT
        assert scheduler.queue.get(0).fetched is True

    @pytest.mark.asyncio
    async def test_client_error(self, fake_crawler):
        routes = {'/': FakeResponse(error=ConnectionResetError("reset by peer"))}
        scheduler, fetcher = fake_crawler(routes)
        errors = []
        scheduler.on('fetchclienterror', lambda item, error: errors.append(error))

        await asyncio.wait_for(scheduler.run(), timeout=5)

        item = scheduler.queue.get(0)
        assert item.status == QueueItemStatus.FAILED
        assert item.state_data.code == 600
        assert isinstance(errors[0], ConnectionResetError)

    @pytest.mark.asyncio
    async def test_oversized_body_truncated(self, fake_crawler):
        routes = {'/': FakeResponse(body=b"x" * 100, headers={'Content-Length': '100'})}
        scheduler, fetcher = fake_crawler(routes, max_resource_size=10)
        data_errors = []
        scheduler.on('fetchdataerror', lambda item, response: data_errors.append(item.url))

        await asyncio.wait_for(scheduler.run(), timeout=5)

        item = scheduler.queue.get(0)
        assert data_errors == ["http://example.com/"]
        assert item.status == QueueItemStatus.DOWNLOADED
        assert item.state_data.actual_data_size == 10
        assert item.state_data.sent_incorrect_size is True

    @pytest.mark.asyncio
    async def test_corrupt_gzip(self, fake_crawler):
        routes = {'/': FakeResponse(body=b"not gzip at all", headers={'Content-Encoding': 'gzip'})}
        scheduler, fetcher = fake_crawler(routes)
        gzip_errors = []
        scheduler.on('gziperror', lambda item, error, data: gzip_errors.append(data))

        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert gzip_errors == [b"not gzip at all"]
        assert scheduler.queue.get(0).status == QueueItemStatus.DOWNLOADED

    @pytest.mark.asyncio
    async def test_download_condition_prevents_body(self, fake_crawler):
        routes = {
            '/': FakeResponse(body=html("<a href='/next'>next</a>")),
            '/next': FakeResponse(body=b"next"),
        }
        scheduler, fetcher = fake_crawler(routes)
        prevented = []
        scheduler.on('downloadprevented', lambda item, response: prevented.append(item.path))
        scheduler.add_download_condition(lambda item, response: False)

        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert prevented == ['/']
        assert scheduler.queue.get(0).status == QueueItemStatus.DOWNLOAD_PREVENTED
        assert len(scheduler.queue) == 1

    @pytest.mark.asyncio
    async def test_download_condition_error(self, fake_crawler):
        routes = {'/': FakeResponse(body=b"body")}
        scheduler, fetcher = fake_crawler(routes)
        errors = []
        scheduler.on('downloadconditionerror', lambda item, error: errors.append(error))

        async def broken(item, response):
            raise ValueError("bad condition")

        scheduler.add_download_condition(broken)
        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert len(errors) == 1
        assert scheduler.queue.get(0).status == QueueItemStatus.DOWNLOAD_PREVENTED

    @pytest.mark.asyncio
    async def test_robots_txt_disallow(self, fake_crawler):
        routes = {
            '/robots.txt': FakeResponse(body=b"User-agent: *\nDisallow: /private\n",
                                        headers={'Content-Type': 'text/plain'}),
            '/': FakeResponse(body=html("<a href='/private/a'>a</a> <a href='/public'>b</a>")),
            '/public': FakeResponse(body=b"public"),
        }
        scheduler, fetcher = fake_crawler(routes)
        disallowed = []
        scheduler.on('fetchdisallowed', lambda item: disallowed.append(item.path))

        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert disallowed == ['/private/a']
        assert '/private/a' not in fetcher.paths()
        assert [item.path for item in scheduler.queue] == ['/', '/public']

    @pytest.mark.asyncio
    async def test_robots_txt_error_allows_crawl(self, fake_crawler):
        routes = {
            '/robots.txt': FakeResponse(status=503),
            '/': FakeResponse(body=b"home"),
        }
        scheduler, fetcher = fake_crawler(routes)
        errors = []
        scheduler.on('robotstxterror', lambda error: errors.append(error))

        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert len(errors) == 1
        assert scheduler.queue.get(0).status == QueueItemStatus.DOWNLOADED

    @pytest.mark.asyncio
    async def test_wait_holds_completion(self, fake_crawler):
        routes = {'/': FakeResponse(body=b"home")}
        scheduler, fetcher = fake_crawler(routes)
        events = []

        def hold(item, body, response):
            done = scheduler.wait()

            async def release():
                await asyncio.sleep(0.05)
                events.append('released')
                done()

            return release()

        scheduler.on('fetchcomplete', hold)
        scheduler.on('complete', lambda: events.append('complete'))

        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert events == ['released', 'complete']
        assert scheduler.open_listeners == 0

    @pytest.mark.asyncio
    async def test_initial_domain_change(self, fake_crawler):
        routes = {
            '/': FakeResponse(status=301, headers={'Location': 'http://www2.example.org/'}),
        }
        scheduler, fetcher = fake_crawler(routes, allow_initial_domain_change=True)

        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert scheduler.config.host == "www2.example.org"
        redirected = scheduler.queue.get(1)
        assert redirected.url == "http://www2.example.org/"
        assert redirected.depth == 1

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, fake_crawler):
        routes = {'/': FakeResponse(body=b"home", delay=0.05)}
        scheduler, fetcher = fake_crawler(routes)

        await scheduler.start()
        await scheduler.start()
        await asyncio.wait_for(scheduler.join(), timeout=5)
        await scheduler.close()

        assert fetcher.paths().count('/') == 1

    @pytest.mark.asyncio
    async def test_stats(self, fake_crawler):
        routes = {'/': FakeResponse(body=b"home")}
        scheduler, fetcher = fake_crawler(routes)

        await asyncio.wait_for(scheduler.run(), timeout=5)
        stats = scheduler.get_stats()

        assert stats['queue_length'] == 1
        assert stats['completed'] == 1
        assert stats['statuses'] == {'downloaded': 1}
        assert stats['bytes_downloaded'] == 4


class TestQueueResumeInMemory:
    """Restarting a stopped crawler without a freeze/defrost cycle."""

    @pytest.mark.asyncio
    async def test_restart_after_abort_requeues_in_flight(self, fake_crawler):
        routes = {
            '/': FakeResponse(body=html("<a href='/slow'>slow</a>")),
            '/slow': FakeResponse(body=b"slow", delay=0.2),
        }
        scheduler, fetcher = fake_crawler(routes)

        async def halt(item, request):
            if item.path == '/slow':
                await asyncio.sleep(0.02)
                await scheduler.stop(abort=True)

        scheduler.on('fetchstart', halt)
        await scheduler.start()
        await asyncio.wait_for(scheduler.join(), timeout=5)
        assert scheduler.queue.get(1).fetched is False

        scheduler.off('fetchstart', halt)
        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert scheduler.queue.get(1).status == QueueItemStatus.DOWNLOADED
        assert isinstance(scheduler.queue, FetchQueue)

    @pytest.mark.asyncio
    async def test_freeze_mid_crawl_does_not_refetch(self, fake_crawler, tmp_path):
        snapshot = tmp_path / "queue.json"
        routes = {
            '/': FakeResponse(body=html("<a href='/a'>a</a> <a href='/b'>b</a>")),
            '/a': FakeResponse(body=b"a", delay=0.2),
            '/b': FakeResponse(body=b"b", delay=0.2),
        }
        scheduler, fetcher = fake_crawler(routes)
        frozen = []

        def freeze_on_last(item, request):
            if item.path == '/b':
                frozen.append(scheduler.queue.freeze(snapshot))

        scheduler.on('fetchstart', freeze_on_last)
        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert fetcher.paths().count('/a') == 1
        assert fetcher.paths().count('/b') == 1
        assert all(item.status == QueueItemStatus.DOWNLOADED for item in scheduler.queue)
        statuses = {entry['path']: entry['status'] for entry in frozen[0]['items']}
        assert statuses['/a'] == statuses['/b'] == 'queued'

        resumed = FetchQueue().defrost(snapshot)
        assert resumed.oldest_unfetched_item().path == '/a'
