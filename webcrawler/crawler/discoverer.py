"""
Link discovery for fetched documents.

A deliberately rough, regex based scan: it finds anything that looks like a
URL in HTML, CSS, XML or plain text without building a DOM. Output is raw
URL strings; resolving and validating them is the normalizer's job.
"""

import re
import logging
from typing import Callable, Iterable, List, Optional, Union

from bs4 import UnicodeDammit


_COMMENT_PATTERN = re.compile(r'<!--[\s\S]+?-->')
_SCRIPT_PATTERN = re.compile(r'<script(.*?)>[\s\S]*?</script>', re.IGNORECASE)
_CHARSET_PATTERN = re.compile(r'charset=["\']?([^"\';\s]+)', re.IGNORECASE)


def _srcset_candidates(text: str) -> List[str]:
    """Every URL listed in srcset attributes."""
    candidates = []
    for match in re.finditer(r'\ssrcset\s*=\s*(["\'])(.*?)\1', text, re.IGNORECASE | re.DOTALL):
        for candidate in match.group(2).split(','):
            candidate = re.sub(r'\s+\S*$', '', candidate.strip())
            if candidate:
                candidates.append(candidate)
    return candidates


def _meta_refresh_targets(text: str) -> List[str]:
    """Targets of <meta http-equiv="refresh"> redirects, in either attribute order."""
    patterns = (
        r'<\s*meta[^>]*http-equiv=["\']?refresh["\']?[^>]*content=["\']?[^"\'>]*url=([^"\'>]*)["\']?[^>]*>',
        r'<\s*meta[^>]*content=["\']?[^"\'>]*url=([^"\'>]*)["\']?[^>]*http-equiv=["\']?refresh["\']?[^>]*>',
    )
    targets = []
    for pattern in patterns:
        targets.extend(m.group(1) for m in re.finditer(pattern, text, re.IGNORECASE))
    return targets


Extractor = Union[re.Pattern, Callable[[str], Iterable[str]]]

DEFAULT_EXTRACTORS: List[Extractor] = [
    # Quoted and unquoted href/src attributes
    re.compile(r'\s(?:href|src)\s*=\s*(["\']).*?\1', re.IGNORECASE),
    re.compile(r'\s(?:href|src)\s*=\s*[^"\'\s][^\s>]+', re.IGNORECASE),

    # CSS url() references
    re.compile(r'\s?url\((["\']).*?\1\)', re.IGNORECASE),
    re.compile(r'\s?url\([^"\'].*?\)', re.IGNORECASE),

    # Bare http(s) URLs. Overlaps with the attribute patterns, which is fine.
    re.compile(r'https?://[^?\s><\'"]+', re.IGNORECASE),

    # String arguments of javascript: pseudo-URLs (popup windows and the like)
    re.compile(r'javascript:\s*[a-z0-9$_.]+\(\s*[\'"][^\'"\s]+[\'"]\s*\)', re.IGNORECASE),

    _srcset_candidates,
    _meta_refresh_targets,
]


class ResourceDiscoverer:
    """
    Extracts candidate URLs from a document.

    Comment and script masking is controlled by parse_html_comments and
    parse_script_tags; extractors can be replaced or extended with compiled
    patterns or callables returning an iterable of strings.
    """

    def __init__(self, parse_html_comments: bool = True, parse_script_tags: bool = True,
                 extractors: Optional[List[Extractor]] = None):
        self.parse_html_comments = parse_html_comments
        self.parse_script_tags = parse_script_tags
        self.extractors = list(extractors) if extractors is not None else list(DEFAULT_EXTRACTORS)
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def decode(document: Union[bytes, str], content_type: Optional[str] = None) -> str:
        """Best-effort decoding of a response body to text."""
        if isinstance(document, str):
            return document

        known_encodings = []
        if content_type:
            match = _CHARSET_PATTERN.search(content_type)
            if match:
                known_encodings.append(match.group(1))

        dammit = UnicodeDammit(document, known_encodings)
        if dammit.unicode_markup is not None:
            return dammit.unicode_markup
        return document.decode('utf-8', errors='replace')

    def mask(self, text: str) -> str:
        """Remove comment and script bodies that should not be scanned."""
        if not self.parse_html_comments:
            text = _COMMENT_PATTERN.sub('', text)
        if not self.parse_script_tags:
            text = _SCRIPT_PATTERN.sub('', text)
        return text

    @staticmethod
    def clean_url(raw: str, protocol: str = 'http') -> str:
        """
        Strip attribute fluff around a raw match.

        Examples:
            " href='/about#team'"          -> "/about"
            "url('//example.com/a.png')"   -> "http://example.com/a.png"
            "javascript:open('/popup')"    -> "/popup"
        """
        url = re.sub(r'^\s*(?:href|src)\s*=+\s*', '', raw, flags=re.IGNORECASE)
        url = url.strip()
        url = re.sub(r'^(["\'])(.*)\1$', r'\2', url, flags=re.DOTALL)
        url = re.sub(r'^url\((.*)\)', r'\1', url, flags=re.IGNORECASE | re.DOTALL)
        url = re.sub(r'^javascript:\s*([a-z0-9$_.]*\(\s*["\'](.*)["\']\))*.*', r'\2',
                     url, flags=re.IGNORECASE | re.DOTALL)
        url = re.sub(r'^(["\'])(.*)\1$', r'\2', url, flags=re.DOTALL)
        url = re.sub(r'^\((.*)\)$', r'\1', url, flags=re.DOTALL)
        url = re.sub(r'^//', f"{protocol}://", url.strip())

        # Truncate at whitespace and drop the fragment
        url = url.split(None, 1)[0] if url.strip() else ''
        return url.split('#', 1)[0].strip()

    def discover(self, document: Union[bytes, str], context=None) -> List[str]:
        """
        Scan a document for linked resources.

        Args:
            document: Response body (bytes or already decoded text)
            context: Queue item the document was fetched for (optional)

        Returns:
            Raw URL strings in order of first discovery, without duplicates
        """
        content_type = getattr(getattr(context, 'state_data', None), 'content_type', None)
        protocol = getattr(context, 'protocol', None) or 'http'

        text = self.mask(self.decode(document, content_type))

        found: List[str] = []
        seen = set()
        for extractor in self.extractors:
            if not isinstance(extractor, re.Pattern):
                matches = extractor(text) or []
            else:
                matches = (m.group(0) for m in extractor.finditer(text))

            for raw in matches:
                url = self.clean_url(raw, protocol)
                if not url or url in seen:
                    continue
                seen.add(url)
                found.append(url)

        self.logger.debug(f"Discovered {len(found)} resources in {getattr(context, 'url', 'document')}")
        return found
