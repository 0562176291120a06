"""
Web crawler core components.
"""

from .url_normalizer import ResolvedURL, resolve
from .discoverer import ResourceDiscoverer
from .queue import (
    FetchQueue, QueueItem, QueueItemStatus, StateData,
    QueueError, DuplicateError, QueueIndexError, SnapshotError,
)
from .conditions import ConditionRegistry, ConditionError, ConditionNotFoundError
from .policy import CrawlPolicy
from .fetcher import WebFetcher, FetchRequest, FetchResponse, RobotsChecker
from .scheduler import CrawlerScheduler, SIGNALS

__all__ = [
    'ResolvedURL', 'resolve',
    'ResourceDiscoverer',
    'FetchQueue', 'QueueItem', 'QueueItemStatus', 'StateData',
    'QueueError', 'DuplicateError', 'QueueIndexError', 'SnapshotError',
    'ConditionRegistry', 'ConditionError', 'ConditionNotFoundError',
    'CrawlPolicy',
    'WebFetcher', 'FetchRequest', 'FetchResponse', 'RobotsChecker',
    'CrawlerScheduler', 'SIGNALS',
]
