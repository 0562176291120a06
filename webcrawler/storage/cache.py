"""
Response cache for the crawler.

Stores fetched bodies together with their validators (ETag, Last-Modified)
so that later crawls can send conditional requests. Two backends:

- FilesystemBackend: mirrors the site under a directory, with a
  cacheindex.json index
- RedisBackend: one hash per URL
"""

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from ..utils.config import CacheConfig


@dataclass
class CacheObject:
    """Cached metadata for one URL."""
    url: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    data_file: Optional[str] = None
    meta_file: Optional[str] = None
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            'url': self.url,
            'etag': self.etag,
            'last_modified': self.last_modified,
            'headers': self.headers,
            'data_file': self.data_file,
            'meta_file': self.meta_file,
            'timestamp': self.timestamp
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CacheObject':
        """Create CacheObject from dictionary."""
        return cls(
            url=data['url'],
            etag=data.get('etag'),
            last_modified=data.get('last_modified'),
            headers=data.get('headers') or {},
            data_file=data.get('data_file'),
            meta_file=data.get('meta_file'),
            timestamp=data.get('timestamp', 0.0)
        )

    @classmethod
    def for_item(cls, item) -> 'CacheObject':
        headers = dict(item.state_data.headers or {})
        return cls(
            url=item.url,
            etag=headers.get('etag'),
            last_modified=headers.get('last-modified'),
            headers=headers,
            timestamp=time.time()
        )


def _sha1(value: str) -> str:
    return hashlib.sha1(value.encode('utf-8')).hexdigest()


def sanitise_path(path: str, content_type: Optional[str] = None) -> str:
    """
    Turn a URL path into a readable, filesystem friendly relative path.

    Query strings are hashed, over-long segments are hashed and an extension
    is added when one can be derived from the content type.

    Examples:
        sanitise_path("/")                             -> "index.html"
        sanitise_path("/about", "text/html")           -> "about.html"
        sanitise_path("/docs/", "text/html")           -> "docs/index.html"
        sanitise_path("/logo", "image/png")            -> "logo.png"
    """
    path = re.sub(r'^/', '', path)
    sanitised = path.rstrip() if path else 'index.html'

    if '?' in sanitised:
        resource, query = sanitised.split('?', 1)
        sanitised = f"{resource}?{_sha1(query)}"

    segments = [_sha1(segment) if len(segment) >= 250 else segment for segment in sanitised.split('/')]
    sanitised = '/'.join(segments)

    is_html = bool(content_type and re.search(r'text/html', content_type, re.IGNORECASE))
    if not re.search(r'\.[a-z0-9]{1,6}$', sanitised, re.IGNORECASE) or \
            (is_html and not re.search(r'\.html?$', sanitised, re.IGNORECASE)):
        if is_html:
            sanitised += 'index.html' if sanitised.endswith('/') else '.html'
        elif content_type:
            match = re.search(r'(image|video|audio|application)/([a-z0-9]+)', content_type, re.IGNORECASE)
            if match:
                sanitised += f".{match.group(2)}"

    return sanitised


class CacheBackend:
    """Interface implemented by cache backends."""

    async def load(self):
        pass

    async def get_item(self, url: str) -> Optional[CacheObject]:
        raise NotImplementedError

    async def read_data(self, url: str) -> Optional[bytes]:
        raise NotImplementedError

    async def set_item(self, item, data: bytes) -> CacheObject:
        raise NotImplementedError

    async def save(self):
        pass

    async def close(self):
        pass


class FilesystemBackend(CacheBackend):
    """Mirrors fetched resources on disk under protocol/host/port/path."""

    INDEX_FILE = "cacheindex.json"

    def __init__(self, location: str = "cache"):
        self.location = Path(location)
        self.index: Dict[str, CacheObject] = {}
        self.loaded = False
        self.logger = logging.getLogger(__name__)

    async def load(self):
        """Load the cache index. A missing index means an empty cache."""
        if self.location.exists() and not self.location.is_dir():
            raise NotADirectoryError(f"Cache location is not a directory: {self.location}")
        self.location.mkdir(parents=True, exist_ok=True)

        index_file = self.location / self.INDEX_FILE
        if index_file.exists():
            raw = index_file.read_text(encoding='utf-8')
            if raw.strip():
                entries = json.loads(raw)
                self.index = {entry['url']: CacheObject.from_dict(entry) for entry in entries}

        self.loaded = True
        self.logger.info(f"Loaded cache index with {len(self.index)} entries from {self.location}")

    async def get_item(self, url: str) -> Optional[CacheObject]:
        return self.index.get(url)

    async def read_data(self, url: str) -> Optional[bytes]:
        cached = self.index.get(url)
        if not cached or not cached.data_file:
            return None
        return Path(cached.data_file).read_bytes()

    def _path_for(self, item) -> Path:
        relative = sanitise_path(item.path, item.state_data.content_type)
        parts: List[str] = [item.protocol, item.host, str(item.port)]
        parts.extend(part for part in relative.split('/') if part)
        return self.location.joinpath(*parts)

    async def set_item(self, item, data: bytes) -> CacheObject:
        data_path = self._path_for(item)

        for parent in reversed(data_path.parents):
            if parent.exists() and not parent.is_dir():
                raise FileExistsError(f"Cache storage of resource ({item.url}) blocked by file: {parent}")
        data_path.parent.mkdir(parents=True, exist_ok=True)

        meta_path = data_path.with_name(data_path.name + ".cacheData.json")
        data_path.write_bytes(data)
        meta_path.write_text(json.dumps(item.to_dict()), encoding='utf-8')

        cached = CacheObject.for_item(item)
        cached.data_file = str(data_path)
        cached.meta_file = str(meta_path)
        self.index[item.url] = cached
        return cached

    async def save(self):
        """Write the index to cacheindex.json."""
        self.location.mkdir(parents=True, exist_ok=True)
        index_file = self.location / self.INDEX_FILE
        index_file.write_text(
            json.dumps([cached.to_dict() for cached in self.index.values()]),
            encoding='utf-8'
        )
        self.logger.debug(f"Saved cache index ({len(self.index)} entries)")


class RedisBackend(CacheBackend):
    """Stores validators and bodies in Redis hashes keyed by URL."""

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "webcrawler:cache"):
        self.redis_client = redis_client
        self.key_prefix = key_prefix
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, options: Dict[str, Any]) -> 'RedisBackend':
        options = dict(options or {})
        key_prefix = options.pop('key_prefix', "webcrawler:cache")
        return cls(redis.Redis(decode_responses=False, **options), key_prefix)

    def _key(self, url: str) -> str:
        return f"{self.key_prefix}:{_sha1(url)}"

    async def load(self):
        await self.redis_client.ping()
        self.logger.info("Redis cache connection established")

    async def get_item(self, url: str) -> Optional[CacheObject]:
        raw = await self.redis_client.hget(self._key(url), 'meta')
        if raw is None:
            return None
        return CacheObject.from_dict(json.loads(raw))

    async def read_data(self, url: str) -> Optional[bytes]:
        return await self.redis_client.hget(self._key(url), 'data')

    async def set_item(self, item, data: bytes) -> CacheObject:
        cached = CacheObject.for_item(item)
        await self.redis_client.hset(self._key(item.url), mapping={
            'meta': json.dumps(cached.to_dict()),
            'data': data,
        })
        return cached

    async def close(self):
        await self.redis_client.aclose()


class Cache:
    """Cache wrapper used by the scheduler."""

    def __init__(self, backend: CacheBackend):
        self.backend = backend
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: CacheConfig) -> Optional['Cache']:
        """Build a cache from configuration, or None when caching is off."""
        if config.type == 'file':
            return cls(FilesystemBackend(config.location))
        if config.type == 'redis':
            return cls(RedisBackend.from_config(config.redis))
        return None

    async def load(self):
        await self.backend.load()

    async def get(self, url: str) -> Optional[CacheObject]:
        return await self.backend.get_item(url)

    async def read_data(self, url: str) -> Optional[bytes]:
        return await self.backend.read_data(url)

    async def set(self, item, data: bytes) -> CacheObject:
        cached = await self.backend.set_item(item, data)
        self.logger.debug(f"Cached {item.url}")
        return cached

    def conditional_headers(self, cached: Optional[CacheObject]) -> Dict[str, str]:
        """Request headers that let the server answer 304 Not Modified."""
        headers = {}
        if cached is not None:
            if cached.etag:
                headers['If-None-Match'] = cached.etag
            if cached.last_modified:
                headers['If-Modified-Since'] = cached.last_modified
        return headers

    async def save(self):
        await self.backend.save()

    async def close(self):
        await self.backend.save()
        await self.backend.close()
