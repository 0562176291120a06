"""
URL normalization for discovered resources.

Resolves a possibly-relative URL string against the queue item it was found
in and produces the decomposed, canonical form the frontier uses as its
de-duplication key. Policy checks (protocol, domain, depth) are left to the
scheduler.
"""

import re
from dataclasses import dataclass, replace
from typing import Optional, List
from urllib.parse import urlsplit, quote, parse_qsl, urlencode


DEFAULT_PORTS = {
    'http': 80,
    'https': 443,
}

_SCHEME_PATTERN = re.compile(r'^([a-z][a-z0-9+.\-]*):', re.IGNORECASE)
_ENTITY_PATTERN = re.compile(r'&amp;|&#38;|&#x00026;', re.IGNORECASE)

_PATH_SAFE = "/%:@!$&'()*+,;=~-._"
_QUERY_SAFE = "/?%:@!$&'()*+,;=~-._"


@dataclass(frozen=True)
class ResolvedURL:
    """An absolute URL split into the components a queue item carries."""
    protocol: str
    host: str
    port: int
    path: str

    @property
    def uri_path(self) -> str:
        """Path without the query string."""
        return self.path.split('?', 1)[0]

    @property
    def query(self) -> str:
        parts = self.path.split('?', 1)
        return parts[1] if len(parts) > 1 else ''

    @property
    def url(self) -> str:
        """Canonical URL string. The default port for the protocol is omitted."""
        netloc = f"[{self.host}]" if ':' in self.host else self.host
        if DEFAULT_PORTS.get(self.protocol, 80) != self.port:
            netloc = f"{netloc}:{self.port}"
        return f"{self.protocol}://{netloc}{self.path}"

    def __str__(self) -> str:
        return self.url


def default_port(protocol: str) -> int:
    return DEFAULT_PORTS.get(protocol.lower(), 80)


def _remove_dot_segments(path: str) -> Optional[str]:
    """Collapse '.' and '..' segments. Returns None if the path climbs above the root."""
    segments = path.split('/')
    output: List[str] = []

    for segment in segments[1:]:
        if segment == '..':
            if not output:
                return None
            output.pop()
        elif segment != '.':
            output.append(segment)

    result = '/' + '/'.join(output)
    if segments[-1] in ('.', '..') and not result.endswith('/'):
        result += '/'
    return result


def _build(protocol: str, host: str, port: int, path: str, query: Optional[str]) -> Optional[ResolvedURL]:
    path = _remove_dot_segments(path or '/')
    if path is None:
        return None

    path = quote(path, safe=_PATH_SAFE)
    if query:
        path = f"{path}?{quote(query, safe=_QUERY_SAFE)}"

    return ResolvedURL(protocol=protocol.lower(), host=host.lower(), port=port, path=path)


def _parse_absolute(url: str) -> Optional[ResolvedURL]:
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None

    protocol = parts.scheme.lower()
    host = parts.hostname or ''
    if not protocol or not host:
        return None

    return _build(protocol, host, port or default_port(protocol), parts.path, parts.query)


def resolve(url: str, context=None) -> Optional[ResolvedURL]:
    """
    Resolve a URL string against a context.

    Args:
        url: Absolute, protocol-relative, host-absolute or relative URL
        context: Any object with protocol, host, port and path attributes
            (a QueueItem or a ResolvedURL). Required for non-absolute URLs.

    Returns:
        ResolvedURL, or None if the URL is empty, unparseable or climbs
        above the root of the context.
    """
    if url is None:
        return None

    url = _ENTITY_PATTERN.sub('&', str(url).strip())
    url = url.split('#', 1)[0].strip()
    if not url:
        return None

    if url.startswith('//'):
        if context is None:
            return None
        return _parse_absolute(f"{context.protocol}:{url}")

    if _SCHEME_PATTERN.match(url):
        return _parse_absolute(url)

    if context is None:
        return None

    base_path = (context.path or '/').split('?', 1)[0]
    reference, _, query = url.partition('?')

    if reference.startswith('/'):
        path = reference
    elif not reference:
        path = base_path
    else:
        path = base_path[:base_path.rfind('/') + 1] + reference

    return _build(context.protocol, context.host, int(context.port), path, query)


def strip_query(resolved: ResolvedURL) -> ResolvedURL:
    return replace(resolved, path=resolved.uri_path)


def sort_query(resolved: ResolvedURL) -> ResolvedURL:
    """Order query parameters by name so equivalent URLs share a key."""
    if not resolved.query:
        return resolved
    pairs = sorted(parse_qsl(resolved.query, keep_blank_values=True))
    return replace(resolved, path=f"{resolved.uri_path}?{urlencode(pairs)}")
