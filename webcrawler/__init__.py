"""
Web Crawler

A polite, single-host web crawler: a bounded-concurrency fetch loop over a
de-duplicated URL queue, with regex based link discovery.
"""

from .crawler import CrawlerScheduler, FetchQueue, QueueItem, QueueItemStatus
from .utils.config import CrawlerConfig, ConfigurationError

__version__ = "1.0.0"
__description__ = "A polite single-host web crawler with a resumable fetch queue"

__all__ = [
    'CrawlerScheduler', 'FetchQueue', 'QueueItem', 'QueueItemStatus',
    'CrawlerConfig', 'ConfigurationError',
]
