"""
Crawler scheduler that drives the crawl: a timed runloop dispatching queued
items to the transport under a concurrency limit, and the signals that report
every step.
"""

import asyncio
import inspect
import logging
import time
import zlib
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Set, Union

import aiohttp

from .conditions import ConditionError, ConditionRegistry
from .discoverer import ResourceDiscoverer
from .fetcher import FetchRequest, RobotsChecker, WebFetcher
from .policy import CrawlPolicy
from .queue import DuplicateError, FetchQueue, QueueError, QueueItem, QueueItemStatus
from .url_normalizer import ResolvedURL, resolve, sort_query, strip_query
from ..storage.cache import Cache
from ..utils.config import ConfigurationError, CrawlerConfig, validate_crawler_config
from ..utils.logger import get_crawler_logger


SIGNALS = (
    'crawlstart',
    'queueadd',
    'queueduplicate',
    'queueerror',
    'fetchstart',
    'fetchheaders',
    'fetchcomplete',
    'fetchdataerror',
    'notmodified',
    'fetchredirect',
    'fetch404',
    'fetcherror',
    'fetchclienterror',
    'fetchtimeout',
    'fetchprevented',
    'fetchdisallowed',
    'robotstxterror',
    'gziperror',
    'downloadprevented',
    'downloadconditionerror',
    'fetchconditionerror',
    'discoverycomplete',
    'complete',
)

# Status code recorded for transport level failures
CLIENT_ERROR_CODE = 600


def _ms(seconds: float) -> float:
    return round(seconds * 1000, 3)


def _decompress(data: bytes, encoding: str) -> bytes:
    if encoding == 'deflate':
        try:
            return zlib.decompress(data)
        except zlib.error:
            # Raw deflate stream without zlib header
            return zlib.decompress(data, -zlib.MAX_WBITS)
    return zlib.decompress(data, 16 + zlib.MAX_WBITS)


class CrawlerScheduler:
    """
    Coordinates the queue, the transport, discovery and the conditions.

    Every `interval` seconds the runloop takes the oldest queued item and, if
    fewer than `max_concurrency` requests are open, fetches it in its own
    task. The crawl completes once nothing is queued, in flight or held by a
    listener (see wait()).

    Listeners subscribe by signal name:

        scheduler.on('fetchcomplete', lambda item, body, response: ...)
    """

    def __init__(self, config: CrawlerConfig, fetcher=None, cache: Optional[Cache] = None,
                 queue: Optional[FetchQueue] = None, discoverer: Optional[ResourceDiscoverer] = None):
        validate_crawler_config(config)

        self.config = config
        self.logger = logging.getLogger(__name__)
        self.url_logger = get_crawler_logger(__name__, component='scheduler')

        # Components
        self.queue = queue if queue is not None else FetchQueue()
        self.policy = CrawlPolicy(config)
        self.discoverer = discoverer or ResourceDiscoverer(
            parse_html_comments=config.parse_html_comments,
            parse_script_tags=config.parse_script_tags
        )
        self.fetcher = fetcher
        self._owns_fetcher = fetcher is None
        self.cache = cache
        self.robots = RobotsChecker(config.user_agent)
        self.fetch_conditions = ConditionRegistry("fetch")
        self.download_conditions = ConditionRegistry("download")

        # Crawl state
        self.running = False
        self.open_requests = 0
        self.open_listeners = 0
        self.fetching_robots_txt = False
        self._is_first_request = True
        self._completed = False
        self._done: Optional[asyncio.Event] = None
        self._runloop_task: Optional[asyncio.Task] = None
        self._robots_task: Optional[asyncio.Task] = None
        self._fetch_tasks: Dict[int, asyncio.Task] = {}
        self._listener_tasks: Set[asyncio.Future] = set()
        self._listeners: Dict[str, List[Callable]] = {name: [] for name in SIGNALS}

    @classmethod
    def from_url(cls, url: str, **options) -> 'CrawlerScheduler':
        """
        Build a scheduler that crawls the site behind a single URL.

        Args:
            url: Absolute seed URL
            **options: Any other CrawlerConfig fields, plus fetcher/cache
        """
        resolved = resolve(url)
        if resolved is None:
            raise ConfigurationError(f"Invalid seed URL: {url}")

        fetcher = options.pop('fetcher', None)
        cache = options.pop('cache', None)
        config = CrawlerConfig(
            host=resolved.host,
            initial_path=resolved.path,
            initial_port=resolved.port,
            initial_protocol=resolved.protocol,
            **options
        )
        return cls(config, fetcher=fetcher, cache=cache)

    @property
    def initial_url(self) -> str:
        config = self.config
        return f"{config.initial_protocol}://{config.host}:{config.initial_port}{config.initial_path}"

    # Signals

    def on(self, signal: str, listener: Callable) -> Callable:
        """Subscribe a listener to a signal. Returns the listener."""
        self._check_signal(signal)
        self._listeners[signal].append(listener)
        return listener

    def off(self, signal: str, listener: Callable) -> bool:
        """Unsubscribe a listener. Returns False if it was not subscribed."""
        self._check_signal(signal)
        try:
            self._listeners[signal].remove(listener)
        except ValueError:
            return False
        return True

    def emit(self, signal: str, *args: Any):
        """
        Call every listener of a signal with the given arguments.

        Coroutine listeners are scheduled as tasks. Listener errors are logged
        and never interrupt the crawl.
        """
        self._check_signal(signal)
        for listener in list(self._listeners[signal]):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception as e:
                self.logger.error(f"Listener for '{signal}' failed: {e}", exc_info=True)

    def _listener_done(self, task: asyncio.Future):
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Async listener failed: {task.exception()}")

    @staticmethod
    def _check_signal(signal: str):
        if signal not in SIGNALS:
            raise ValueError(f"Unknown signal: {signal}")

    def wait(self) -> Callable[[], None]:
        """
        Hold completion while a listener finishes asynchronous work.

        Returns a callable that releases the hold. The hold is released
        automatically after listener_ttl seconds.
        """
        self.open_listeners += 1
        released = False
        handle = None

        def done():
            nonlocal released
            if released:
                return
            released = True
            self.open_listeners -= 1
            if handle is not None:
                handle.cancel()

        handle = asyncio.get_running_loop().call_later(self.config.listener_ttl, done)
        return done

    # Conditions

    def add_fetch_condition(self, condition: Callable) -> int:
        return self.fetch_conditions.add(condition)

    def remove_fetch_condition(self, condition: Union[int, Callable]) -> bool:
        return self.fetch_conditions.remove(condition)

    def add_download_condition(self, condition: Callable) -> int:
        return self.download_conditions.add(condition)

    def remove_download_condition(self, condition: Union[int, Callable]) -> bool:
        return self.download_conditions.remove(condition)

    # Lifecycle

    async def start(self) -> 'CrawlerScheduler':
        """
        Queue the seed (if the queue is empty) and start the runloop.

        Calling start() on a running crawler does nothing.
        """
        if self.running:
            self.logger.warning("Crawler is already running")
            return self

        if self.fetcher is None:
            self.fetcher = WebFetcher(self.config)
        if self._owns_fetcher:
            await self.fetcher.start()

        if self.cache is not None:
            await self.cache.load()

        self._done = asyncio.Event()
        self._completed = False

        if len(self.queue) == 0:
            self._is_first_request = True
            await self.queue_url(self.initial_url)
        else:
            self._is_first_request = False
            requeued = 0 if self._fetch_tasks else self.queue.requeue_unfetched()
            if requeued:
                self.logger.info(f"Requeued {requeued} items left in flight by an earlier stop")

        self.running = True
        self.logger.info(f"Crawl started at {self.initial_url} ({len(self.queue)} items in queue)")
        self.emit('crawlstart')

        self._runloop_task = asyncio.create_task(self._runloop())
        return self

    async def run(self):
        """Start the crawl and wait until it completes or is stopped."""
        await self.start()
        await self.join()
        await self.close()

    async def join(self):
        """Wait until the crawl completes or is stopped."""
        if self._done is not None:
            await self._done.wait()

    async def _runloop(self):
        while self.running:
            self.crawl()
            await asyncio.sleep(self.config.interval)

    def crawl(self) -> Optional[QueueItem]:
        """
        One tick of the runloop.

        Returns:
            The item dispatched on this tick, if any
        """
        if self.open_requests >= self.config.max_concurrency or self.fetching_robots_txt:
            return None

        item = self.queue.oldest_unfetched_item()

        if item is None:
            if (not self.open_requests and not self.open_listeners and
                    self.queue.completed_count == len(self.queue)):
                self._complete()
            return None

        if self.config.respect_robots_txt and not self.robots.is_known(item.protocol, item.host, item.port):
            self.fetching_robots_txt = True
            self._robots_task = asyncio.create_task(self._fetch_robots_txt(item))
            return None

        self.open_requests += 1
        self.queue.update(item.id, {'status': QueueItemStatus.SPOOLED})
        self._fetch_tasks[item.id] = asyncio.create_task(self._run_fetch(item))
        return item

    def _complete(self):
        if self._completed:
            return
        self._completed = True
        self.running = False

        self.logger.info(f"Crawl complete: {self.queue.completed_count} of {len(self.queue)} items fetched")
        self.emit('complete')
        if self._done is not None:
            self._done.set()

    async def stop(self, abort: bool = False):
        """
        Stop the runloop.

        Args:
            abort: Also cancel in-flight fetches. Their items stay unfetched
                and are queued again by a freeze/defrost cycle.
        """
        self.running = False

        if self._runloop_task is not None and self._runloop_task is not asyncio.current_task():
            self._runloop_task.cancel()
            try:
                await self._runloop_task
            except asyncio.CancelledError:
                pass
        self._runloop_task = None

        if abort:
            tasks = list(self._fetch_tasks.values())
            if self._robots_task is not None:
                tasks.append(self._robots_task)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.fetching_robots_txt = False
            self.logger.info(f"Crawl aborted, {len(tasks)} requests cancelled")
        else:
            self.logger.info("Crawl stopped")

        if self._done is not None:
            self._done.set()

    async def close(self):
        """Wait for in-flight requests, save the cache and close the transport."""
        pending = list(self._fetch_tasks.values())
        if self._robots_task is not None:
            pending.append(self._robots_task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self.cache is not None:
            try:
                await self.cache.save()
            except Exception as e:
                self.logger.error(f"Error saving cache: {e}")

        if self._owns_fetcher and self.fetcher is not None:
            await self.fetcher.close()

    # Queueing

    def domain_valid(self, host: str) -> bool:
        return self.policy.domain_valid(host)

    def depth_allowed(self, item: QueueItem) -> bool:
        return self.policy.depth_allowed(item)

    def process_url(self, url: Union[str, ResolvedURL], referrer: Optional[QueueItem] = None) -> Optional[QueueItem]:
        """
        Resolve a URL against its referrer and build an (unqueued) item.

        Returns:
            QueueItem with status 'created', or None for an invalid URL
        """
        resolved = url if isinstance(url, ResolvedURL) else resolve(url, referrer)
        if resolved is None:
            return None

        if self.config.strip_www_domain and resolved.host.startswith('www.'):
            resolved = ResolvedURL(resolved.protocol, resolved.host[4:], resolved.port, resolved.path)
        if self.config.strip_querystring:
            resolved = strip_query(resolved)
        elif self.config.sort_query_parameters:
            resolved = sort_query(resolved)

        return QueueItem(
            url=resolved.url,
            protocol=resolved.protocol,
            host=resolved.host,
            port=resolved.port,
            path=resolved.path,
            uri_path=resolved.uri_path,
            depth=referrer.depth + 1 if referrer is not None else 1,
            referrer=referrer.url if referrer is not None else None,
        )

    async def queue_url(self, url: Union[str, QueueItem], referrer: Optional[QueueItem] = None,
                        force: bool = False) -> bool:
        """
        Validate a URL and add it to the queue.

        Returns:
            True if the URL was queued
        """
        item = url if isinstance(url, QueueItem) else self.process_url(url, referrer)
        if item is None:
            self.logger.debug(f"Ignoring invalid URL: {url}")
            return False

        if not self.policy.protocol_supported(item.protocol) or not self.domain_valid(item.host):
            return False

        if not self.policy.queue_depth_allowed(item.depth):
            return False

        if not force and self.queue.exists(item.url):
            self.emit('queueduplicate', item)
            return False

        if self.config.respect_robots_txt and not self.robots.can_fetch(item):
            self.url_logger.log_url_event(logging.DEBUG, item, f"robots.txt disallows {item.url}")
            self.emit('fetchdisallowed', item)
            return False

        try:
            allowed = await self.fetch_conditions.evaluate(item, referrer)
        except ConditionError as e:
            self.logger.warning(f"Fetch condition error for {item.url}: {e}")
            self.emit('fetchconditionerror', item, e)
            return False

        if not allowed:
            self.emit('fetchprevented', item, referrer)
            return False

        try:
            self.queue.add(item, force)
        except DuplicateError:
            self.emit('queueduplicate', item)
            return False
        except QueueError as e:
            self.logger.error(f"Error queueing {item.url}: {e}")
            self.emit('queueerror', e, item)
            return False

        self.emit('queueadd', item, referrer)
        return True

    def discover_resources(self, document: Union[bytes, str], item: QueueItem) -> List[str]:
        self.discoverer.parse_html_comments = self.config.parse_html_comments
        self.discoverer.parse_script_tags = self.config.parse_script_tags
        return self.discoverer.discover(document, item)

    def clean_expand_resources(self, urls: List[str], item: QueueItem) -> List[QueueItem]:
        """Resolve discovered URLs and drop invalid, out of scope and repeated ones."""
        children: List[QueueItem] = []
        seen = set()

        for url in urls:
            child = self.process_url(url, item)
            if child is None or child.url in seen:
                continue
            if not self.policy.protocol_supported(child.protocol) or not self.domain_valid(child.host):
                continue
            seen.add(child.url)
            children.append(child)

        return children

    async def queue_linked_items(self, document: Union[bytes, str], item: QueueItem) -> int:
        """Discover resources in a document and queue them. Returns the number queued."""
        children = self.clean_expand_resources(self.discover_resources(document, item), item)
        self.emit('discoverycomplete', item, [child.url for child in children])

        queued = 0
        for child in children:
            if await self.queue_url(child, item):
                queued += 1
        return queued

    # Fetching

    def get_request_options(self, item: QueueItem) -> FetchRequest:
        config = self.config
        headers = {
            'User-Agent': config.user_agent,
            'Accept-Encoding': 'gzip, deflate' if config.decompress_responses else 'identity',
        }
        if item.referrer:
            headers['Referer'] = item.referrer
        headers.update(config.custom_headers)

        request = FetchRequest(url=item.url, headers=headers)
        if config.auth.enabled:
            request.auth = (config.auth.user, config.auth.password)
        if config.proxy.enabled:
            request.proxy = f"http://{config.proxy.hostname}:{config.proxy.port}"
            if config.proxy.user:
                request.proxy_auth = (config.proxy.user, config.proxy.password or "")
        return request

    async def _fetch_robots_txt(self, item: QueueItem):
        headers = {'User-Agent': self.config.user_agent}
        try:
            await asyncio.wait_for(
                self.robots.fetch(self.fetcher, item.protocol, item.host, item.port, headers),
                timeout=self.config.timeout
            )
        except Exception as e:
            self.logger.warning(f"Could not fetch robots.txt for {item.host}: {e}")
            self.robots.allow_all(item.protocol, item.host, item.port)
            self.emit('robotstxterror', e)
        finally:
            self.fetching_robots_txt = False
            self._robots_task = None

        if not self.robots.can_fetch(item):
            self.url_logger.log_url_event(logging.INFO, item, f"robots.txt disallows {item.url}")
            self._finish(item, QueueItemStatus.DISALLOWED, 'fetchdisallowed', item)

    async def _run_fetch(self, item: QueueItem):
        try:
            await asyncio.wait_for(self._fetch_queue_item(item), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            if self._finish(item, QueueItemStatus.TIMEOUT, 'fetchtimeout', item, self.config.timeout):
                self.url_logger.log_url_event(logging.WARNING, item, f"Timeout fetching {item.url}")
        except Exception as e:
            self.logger.error(f"Unexpected error fetching {item.url}: {e}", exc_info=True)
            self._handle_client_error(item, e)
        finally:
            self.open_requests = max(0, self.open_requests - 1)
            self._fetch_tasks.pop(item.id, None)

    async def _fetch_queue_item(self, item: QueueItem):
        request = self.get_request_options(item)

        cached = None
        if self.cache is not None:
            try:
                cached = await self.cache.get(item.url)
            except Exception as e:
                self.logger.error(f"Cache lookup failed for {item.url}: {e}")
            request.headers.update(self.cache.conditional_headers(cached))

        self.emit('fetchstart', item, request)
        started = time.monotonic()

        try:
            async with self.fetcher.open(request) as response:
                await self.handle_response(item, response, started, cached)
        except (aiohttp.ClientError, OSError) as e:
            self.url_logger.log_url_event(logging.WARNING, item, f"Client error fetching {item.url}: {e}")
            self._handle_client_error(item, e)

    def _handle_client_error(self, item: QueueItem, error: BaseException):
        if item.fetched:
            return
        self.queue.update(item.id, {'state_data': {'code': CLIENT_ERROR_CODE}})
        self._finish(item, QueueItemStatus.FAILED, 'fetchclienterror', item, error)

    def _finish(self, item: QueueItem, status: QueueItemStatus, signal: Optional[str], *args: Any) -> bool:
        """Record a terminal status. Only the first terminal transition counts."""
        if item.fetched:
            return False
        self.queue.update(item.id, {'status': status, 'fetched': True})
        if signal is not None:
            self.emit(signal, *args)
        return True

    async def handle_response(self, item: QueueItem, response, started: float, cached=None):
        """
        Process a response whose headers have arrived.

        Args:
            item: Queue item being fetched
            response: Transport response (status, headers, iter_chunks())
            started: time.monotonic() when the request was sent
            cached: CacheObject used for the conditional request, if any
        """
        headers_received = time.monotonic()
        headers = response.headers
        code = response.status

        try:
            content_length = int(headers['content-length'])
        except (KeyError, TypeError, ValueError):
            content_length = None

        self.queue.update(item.id, {
            'status': QueueItemStatus.HEADERS,
            'state_data': {
                'request_latency': _ms(headers_received - started),
                'code': code,
                'headers': dict(headers),
                'content_type': headers.get('content-type'),
                'content_length': content_length,
            }
        })
        self.emit('fetchheaders', item, response)

        first_request = self._is_first_request
        self._is_first_request = False

        if 200 <= code < 300:
            await self._download(item, response, started, headers_received, content_length)

        elif code == 304:
            self._finish(item, QueueItemStatus.NOT_MODIFIED, 'notmodified', item, response, cached)

        elif 300 <= code < 400 and headers.get('location'):
            target = self.process_url(headers['location'], item)

            if target is not None and first_request:
                # A redirecting seed does not count as a level
                target.depth = 1
                if self.config.allow_initial_domain_change:
                    self.config.host = target.host

            self._finish(item, QueueItemStatus.REDIRECTED, 'fetchredirect', item, target, response)
            if target is not None:
                await self.queue_url(target, item)

        elif code in (404, 410):
            self._finish(item, QueueItemStatus.NOT_FOUND, 'fetch404', item, response)

        else:
            self._finish(item, QueueItemStatus.FAILED, 'fetcherror', item, response)

        self.url_logger.log_url_event(logging.DEBUG, item, f"{code} {item.url} -> {item.status}")

    async def _download(self, item: QueueItem, response, started: float, headers_received: float,
                        content_length: Optional[int]):
        content_type = item.state_data.content_type

        if not self.config.download_unsupported and not self.policy.mime_type_supported(content_type):
            self._finish(item, QueueItemStatus.DOWNLOAD_PREVENTED, 'downloadprevented', item, response)
            return

        try:
            allowed = await self.download_conditions.evaluate(item, response)
        except ConditionError as e:
            self.logger.warning(f"Download condition error for {item.url}: {e}")
            self.emit('downloadconditionerror', item, e)
            self._finish(item, QueueItemStatus.DOWNLOAD_PREVENTED, None)
            return

        if not allowed:
            self._finish(item, QueueItemStatus.DOWNLOAD_PREVENTED, 'downloadprevented', item, response)
            return

        body = bytearray()
        limit = self.config.max_resource_size
        async for chunk in response.iter_chunks():
            if len(body) + len(chunk) > limit:
                body.extend(chunk[:limit - len(body)])
                self.url_logger.log_url_event(logging.WARNING, item,
                                              f"Resource exceeds {limit} bytes, truncated: {item.url}")
                self.emit('fetchdataerror', item, response)
                break
            body.extend(chunk)

        finished = time.monotonic()
        self.queue.update(item.id, {'state_data': {
            'download_time': _ms(finished - headers_received),
            'request_time': _ms(finished - started),
            'actual_data_size': len(body),
            'sent_incorrect_size': content_length is not None and content_length != len(body),
        }})

        data = bytes(body)
        encoding = response.headers.get('content-encoding', '').lower()
        if self.config.decompress_responses and encoding in ('gzip', 'x-gzip', 'deflate'):
            try:
                data = _decompress(data, encoding)
            except zlib.error as e:
                self.logger.warning(f"Could not decompress {item.url}: {e}")
                self.emit('gziperror', item, e, data)

        if self.cache is not None:
            try:
                await self.cache.set(item, data)
            except Exception as e:
                self.logger.error(f"Error caching {item.url}: {e}")

        if not self._finish(item, QueueItemStatus.DOWNLOADED, None):
            return

        if not self.depth_allowed(item):
            return

        payload = self.discoverer.decode(data, content_type) if self.config.decode_responses else data
        self.emit('fetchcomplete', item, payload, response)

        if self.config.discover_resources and self.policy.mime_type_supported(content_type):
            await self.queue_linked_items(data, item)

    def get_stats(self) -> Dict[str, Any]:
        """Summary of the crawl so far."""
        statuses = Counter(item.status.value for item in self.queue)
        return {
            'queue_length': len(self.queue),
            'completed': self.queue.completed_count,
            'open_requests': self.open_requests,
            'statuses': dict(statuses),
            'average_request_time_ms': self.queue.avg('request_time'),
            'bytes_downloaded': sum(item.state_data.actual_data_size or 0 for item in self.queue),
        }
