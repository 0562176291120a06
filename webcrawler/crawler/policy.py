"""
Crawl scope policy: which hosts, protocols, MIME types and depths the crawler
is allowed to touch.

Settings are read from the live CrawlerConfig on every call, so changes made
mid-crawl take effect immediately.
"""

import re
from typing import Iterable, Optional, Union

from ..utils.config import CrawlerConfig


def _strip_www(host: str) -> str:
    return re.sub(r'^www\.', '', host, flags=re.IGNORECASE)


def _matches_any(patterns: Iterable[Union[str, 're.Pattern']], value: Optional[str]) -> bool:
    if value is None:
        return False
    return any(re.search(pattern, value, re.IGNORECASE) for pattern in patterns)


def is_subdomain_of(subdomain: str, host: str, ignore_www: bool = True) -> bool:
    """
    Check whether subdomain lies under host, comparing dot-delimited labels.

    Examples:
        is_subdomain_of("sub.example.com", "example.com")  -> True
        is_subdomain_of("badexample.com", "example.com")   -> False
    """
    subdomain = subdomain.lower().rstrip('.')
    host = host.lower().rstrip('.')

    if ignore_www:
        subdomain = _strip_www(subdomain)
        host = _strip_www(host)

    if not host:
        return False

    sub_labels = subdomain.split('.')
    host_labels = host.split('.')
    if len(sub_labels) < len(host_labels):
        return False
    return sub_labels[len(sub_labels) - len(host_labels):] == host_labels


class CrawlPolicy:
    """Scope checks used by the scheduler before queueing and after fetching."""

    def __init__(self, config: CrawlerConfig):
        self.config = config

    def domain_valid(self, host: str) -> bool:
        """Check whether a host is inside the crawl scope."""
        config = self.config
        if not config.filter_by_domain:
            return True

        host = (host or '').lower()
        crawl_host = (config.host or '').lower()

        if config.ignore_www_domain:
            host = _strip_www(host)
            crawl_host = _strip_www(crawl_host)

        if host == crawl_host:
            return True

        for entry in config.domain_whitelist:
            entry = entry.lower()
            if config.ignore_www_domain:
                entry = _strip_www(entry)
            if host == entry:
                return True

        return config.scan_subdomains and is_subdomain_of(host, crawl_host, config.ignore_www_domain)

    def protocol_supported(self, protocol: Optional[str]) -> bool:
        """Check a protocol (e.g. 'https') against the allowed protocol patterns."""
        return _matches_any(self.config.allowed_protocols, protocol or 'http')

    def mime_type_supported(self, mime_type: Optional[str]) -> bool:
        """Check whether a MIME type is scanned for links."""
        return _matches_any(self.config.supported_mime_types, mime_type)

    def depth_allowed(self, item) -> bool:
        """
        Check whether an item's depth permits discovery and events.

        Whitelisted "resource" MIME types (CSS, scripts, images, fonts) may go
        past max_depth by fetch_whitelisted_mime_types_below_max_depth levels
        (True means unlimited).
        """
        config = self.config
        if config.max_depth == 0 or item.depth <= config.max_depth:
            return True

        below_max_depth = config.fetch_whitelisted_mime_types_below_max_depth
        if isinstance(below_max_depth, bool):
            if not below_max_depth:
                return False
            return _matches_any(config.whitelisted_mime_types, item.state_data.content_type)

        return (item.depth - below_max_depth <= config.max_depth and
                _matches_any(config.whitelisted_mime_types, item.state_data.content_type))

    def queue_depth_allowed(self, depth: int) -> bool:
        """
        Check whether a newly discovered URL at this depth may be queued.

        When resources may go past max_depth the MIME type is unknown until the
        response arrives, so those items are queued and checked again with
        depth_allowed().
        """
        config = self.config
        if config.max_depth == 0 or depth <= config.max_depth:
            return True

        below_max_depth = config.fetch_whitelisted_mime_types_below_max_depth
        if isinstance(below_max_depth, bool):
            return below_max_depth
        return depth - below_max_depth <= config.max_depth
