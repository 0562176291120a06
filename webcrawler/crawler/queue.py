"""
Fetch queue (URL frontier) for the crawler.

Items are kept in insertion order and never removed: the queue doubles as the
crawl history used for statistics and for freeze/defrost snapshots.
"""

import json
import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union


SNAPSHOT_VERSION = 1

ALLOWED_STATISTICS = (
    'request_time',
    'request_latency',
    'download_time',
    'content_length',
    'actual_data_size',
)


class QueueError(Exception):
    """Base error for queue operations."""


class DuplicateError(QueueError):
    """Raised when a URL is already present in the queue."""

    def __init__(self, url: str):
        super().__init__(f"Resource already exists in queue: {url}")
        self.url = url


class QueueIndexError(QueueError, IndexError):
    """Raised when an item id is outside the queue."""


class SnapshotError(QueueError):
    """Raised when a frozen queue cannot be restored."""


class QueueItemStatus(str, Enum):
    """Lifecycle states of a queue item."""
    CREATED = "created"
    QUEUED = "queued"
    SPOOLED = "spooled"
    HEADERS = "headers"
    DOWNLOADED = "downloaded"
    DOWNLOAD_PREVENTED = "downloadprevented"
    NOT_MODIFIED = "notmodified"
    NOT_FOUND = "notfound"
    REDIRECTED = "redirected"
    FAILED = "failed"
    TIMEOUT = "timeout"
    DISALLOWED = "disallowed"

    def __str__(self) -> str:
        return self.value


@dataclass
class StateData:
    """Timing and response metadata recorded while an item is fetched."""
    request_latency: Optional[float] = None
    request_time: Optional[float] = None
    download_time: Optional[float] = None
    content_length: Optional[int] = None
    content_type: Optional[str] = None
    code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    actual_data_size: Optional[int] = None
    sent_incorrect_size: Optional[bool] = None

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict) -> 'StateData':
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in (data or {}).items() if key in known})


@dataclass(eq=False)
class QueueItem:
    """A single discovered resource."""
    url: str
    protocol: str
    host: str
    port: int
    path: str
    uri_path: str
    depth: int
    referrer: Optional[str] = None
    id: Optional[int] = None
    fetched: bool = False
    status: QueueItemStatus = QueueItemStatus.CREATED
    state_data: StateData = field(default_factory=StateData)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'id': self.id,
            'url': self.url,
            'protocol': self.protocol,
            'host': self.host,
            'port': self.port,
            'path': self.path,
            'uri_path': self.uri_path,
            'depth': self.depth,
            'referrer': self.referrer,
            'fetched': self.fetched,
            'status': self.status.value,
            'state_data': self.state_data.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'QueueItem':
        """Create QueueItem from dictionary."""
        return cls(
            id=data['id'],
            url=data['url'],
            protocol=data['protocol'],
            host=data['host'],
            port=int(data['port']),
            path=data['path'],
            uri_path=data.get('uri_path', data['path'].split('?', 1)[0]),
            depth=int(data['depth']),
            referrer=data.get('referrer'),
            fetched=bool(data.get('fetched', False)),
            status=QueueItemStatus(data.get('status', QueueItemStatus.QUEUED)),
            state_data=StateData.from_dict(data.get('state_data')),
        )


Comparator = Union[Dict[str, Any], Callable[[QueueItem], bool]]


def _matches(comparator: Dict[str, Any], target: Any) -> bool:
    """Recursively compare the comparator's fields with the target's."""
    for key, expected in comparator.items():
        if isinstance(target, dict):
            if key not in target:
                return False
            actual = target[key]
        elif hasattr(target, key):
            actual = getattr(target, key)
        else:
            return False

        if isinstance(expected, dict):
            if not _matches(expected, actual):
                return False
        elif actual != expected:
            return False
    return True


class FetchQueue:
    """
    Ordered, de-duplicated collection of queue items.

    - Ids are list positions, assigned on insertion and never reused.
    - scan_index maps canonical URL -> presence for O(1) duplicate checks.
    - oldest_unfetched_index only moves forward; items left of it are never
      rescanned.
    """

    _IMMUTABLE_FIELDS = ('id', 'url', 'depth')

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._items: List[QueueItem] = []
        self.scan_index: Dict[str, bool] = {}
        self.oldest_unfetched_index = 0

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[QueueItem]:
        return iter(self._items)

    def exists(self, url: str) -> bool:
        """Check if a URL is already in the queue."""
        return bool(self.scan_index.get(url))

    def add(self, item: QueueItem, force: bool = False) -> QueueItem:
        """
        Add an item to the end of the queue.

        Args:
            item: Item built by the scheduler (status 'created')
            force: Add even if the URL is already queued

        Returns:
            The item, now carrying its id and status 'queued'

        Raises:
            DuplicateError: The URL is present and force is False
            QueueError: This very instance was already added
        """
        if self.exists(item.url):
            if not force:
                raise DuplicateError(item.url)
            if any(existing is item for existing in self._items):
                raise QueueError("Can't add a queue item instance twice. Create a new one from the same URL instead.")

        item.id = len(self._items)
        item.status = QueueItemStatus.QUEUED
        self.scan_index[item.url] = True
        self._items.append(item)

        self.logger.debug(f"Added item {item.id} to queue: {item.url}")
        return item

    def get(self, item_id: int) -> QueueItem:
        """Get an item by id."""
        if not isinstance(item_id, int) or item_id < 0 or item_id >= len(self._items):
            raise QueueIndexError(f"Item id {item_id} is outside the queue (length {len(self._items)})")
        return self._items[item_id]

    def update(self, item_id: int, updates: Dict[str, Any]) -> QueueItem:
        """
        Apply field updates to an item.

        Nested dicts are applied to state_data. Once fetched is set it cannot be
        cleared, and id, url and depth cannot change.
        """
        item = self.get(item_id)

        for key in self._IMMUTABLE_FIELDS:
            if key in updates and updates[key] != getattr(item, key):
                raise QueueError(f"Queue item field '{key}' cannot be changed")

        if item.fetched and updates.get('fetched', True) is False:
            raise QueueError(f"Queue item {item_id} was already fetched")

        for key, value in updates.items():
            if key == 'state_data':
                state_updates = value.to_dict() if isinstance(value, StateData) else value
                for state_key, state_value in state_updates.items():
                    if not hasattr(item.state_data, state_key):
                        raise QueueError(f"Unknown state data field '{state_key}'")
                    setattr(item.state_data, state_key, state_value)
            elif key == 'status':
                item.status = QueueItemStatus(value)
            elif hasattr(item, key):
                setattr(item, key, value)
            else:
                raise QueueError(f"Unknown queue item field '{key}'")

        return item

    def oldest_unfetched_item(self) -> Optional[QueueItem]:
        """Get the first queued item at or after the scan cursor."""
        for index in range(self.oldest_unfetched_index, len(self._items)):
            if self._items[index].status == QueueItemStatus.QUEUED:
                self.oldest_unfetched_index = index
                return self._items[index]
        return None

    def requeue_unfetched(self) -> int:
        """
        Put items left in flight by an aborted crawl back to 'queued'.

        The scan cursor is moved back to the first unfetched item. Returns the
        number of items requeued.
        """
        requeued = 0
        for item in self._items:
            if not item.fetched and item.status != QueueItemStatus.QUEUED:
                item.status = QueueItemStatus.QUEUED
                requeued += 1

        first_unfetched = next((item.id for item in self._items if not item.fetched), len(self._items))
        self.oldest_unfetched_index = min(self.oldest_unfetched_index, first_unfetched)
        return requeued

    def filter_items(self, comparator: Comparator) -> List[QueueItem]:
        """
        Get items matching a comparator.

        Examples:
            queue.filter_items({'status': 'downloaded'})
            queue.filter_items({'state_data': {'code': 200}})
            queue.filter_items(lambda item: item.depth > 2)
        """
        if callable(comparator):
            return [item for item in self._items if comparator(item)]
        return [item for item in self._items if _matches(comparator, item)]

    def count_items(self, comparator: Comparator) -> int:
        return len(self.filter_items(comparator))

    @property
    def completed_count(self) -> int:
        return sum(1 for item in self._items if item.fetched)

    def _statistic_values(self, statistic: str) -> List[float]:
        if statistic not in ALLOWED_STATISTICS:
            raise QueueError(f"Invalid statistic: {statistic}")

        values = []
        for item in self._items:
            value = getattr(item.state_data, statistic)
            if item.fetched and isinstance(value, (int, float)) and not isinstance(value, bool):
                values.append(value)
        return values

    def max(self, statistic: str) -> float:
        """Maximum of a statistic over fetched items, 0 when there are none."""
        values = self._statistic_values(statistic)
        return max(values) if values else 0

    def min(self, statistic: str) -> float:
        """Minimum of a statistic over fetched items, 0 when there are none."""
        values = self._statistic_values(statistic)
        return min(values) if values else 0

    def avg(self, statistic: str) -> float:
        """Mean of a statistic over fetched items, 0 when there are none."""
        values = self._statistic_values(statistic)
        return sum(values) / len(values) if values else 0

    def snapshot(self) -> dict:
        """Serializable representation of the queue."""
        return {
            'version': SNAPSHOT_VERSION,
            'oldest_unfetched_index': self.oldest_unfetched_index,
            'scan_index': sorted(url for url, present in self.scan_index.items() if present),
            'items': [item.to_dict() for item in self._items],
        }

    def freeze(self, destination: Union[str, Path]) -> dict:
        """
        Write the queue to disk.

        Items still in flight are written as 'queued' so they are fetched
        again after a defrost. The live queue and its scan cursor are left
        untouched, so a running crawl can be frozen without refetching.
        """
        snapshot = self.snapshot()
        for entry in snapshot['items']:
            if not entry['fetched']:
                entry['status'] = QueueItemStatus.QUEUED.value
        with open(destination, 'w', encoding='utf-8') as file:
            json.dump(snapshot, file, indent=2)

        self.logger.info(f"Froze {len(self._items)} queue items to {destination}")
        return snapshot

    def restore(self, snapshot: dict) -> 'FetchQueue':
        """Replace the queue state with a snapshot produced by snapshot()/freeze()."""
        if not isinstance(snapshot, dict) or not isinstance(snapshot.get('items'), list):
            raise SnapshotError("Queue snapshot must be an object with an 'items' list")

        try:
            items = [QueueItem.from_dict(data) for data in snapshot['items']]
        except (KeyError, TypeError, ValueError) as e:
            raise SnapshotError(f"Malformed queue item in snapshot: {e}") from e

        for index, item in enumerate(items):
            if item.id != index:
                raise SnapshotError(f"Queue item at position {index} has id {item.id}")

        scan_index = {url: True for url in snapshot.get('scan_index') or []}
        for item in items:
            scan_index[item.url] = True

        # Never resume past an item that still needs fetching
        cursor = snapshot.get('oldest_unfetched_index', 0)
        if not isinstance(cursor, int) or cursor < 0:
            raise SnapshotError(f"Invalid scan cursor in snapshot: {cursor!r}")
        first_unfetched = next((item.id for item in items if not item.fetched), len(items))
        cursor = min(cursor, first_unfetched)

        self._items = items
        self.scan_index = scan_index
        self.oldest_unfetched_index = cursor
        return self

    def defrost(self, source: Union[str, Path]) -> 'FetchQueue':
        """Restore the queue from a file written by freeze()."""
        try:
            with open(source, 'r', encoding='utf-8') as file:
                raw = file.read()
        except OSError as e:
            raise SnapshotError(f"Unable to read queue snapshot {source}: {e}") from e

        if not raw.strip():
            raise SnapshotError("Failed to defrost queue from zero-length JSON.")

        try:
            snapshot = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SnapshotError(f"Queue snapshot is not valid JSON: {e}") from e

        self.restore(snapshot)
        self.logger.info(f"Defrosted {len(self._items)} queue items from {source}")
        return self
