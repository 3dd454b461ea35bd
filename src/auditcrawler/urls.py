from __future__ import annotations
import logging
import threading
from collections import deque
from functools import lru_cache
from typing import Iterable, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit, parse_qsl, urlencode

import idna

logger = logging.getLogger(__name__)

# ------------------ URL helpers ------------------

DEFAULT_PORTS = {"http": 80, "https": 443}

REJECTED_SCHEMES = ("javascript:", "mailto:", "tel:", "data:", "sms:")

SKIP_EXTENSIONS = (
    ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".avif", ".ico",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".zip", ".rar", ".7z", ".tar", ".gz",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv",
    ".css", ".js", ".woff", ".woff2", ".ttf",
)


def _normalize_host(netloc: str, scheme: str) -> str:
    userinfo, _, hostport = netloc.rpartition("@")
    host, port = hostport, ""
    if hostport.startswith("["):
        # IPv6 literal
        end = hostport.find("]")
        host, port = hostport[:end + 1], hostport[end + 2:]
    elif ":" in hostport:
        host, _, port = hostport.partition(":")
    host = host.lower().rstrip(".")
    if host and not host.startswith("["):
        try:
            host = idna.encode(host, uts46=True).decode("ascii")
        except (idna.IDNAError, UnicodeError):
            pass
    if port and port.isdigit() and int(port) == DEFAULT_PORTS.get(scheme):
        port = ""
    hostport = f"{host}:{port}" if port else host
    return f"{userinfo}@{hostport}" if userinfo else hostport


@lru_cache(maxsize=10000)
def normalize_url(url: str) -> str:
    """
    Canonical form used as the sole identity of a page:
    - scheme and host lowercased, host punycoded, default port dropped
    - fragment removed
    - trailing slash stripped from the path (the root path stays "/")
    - query parameters sorted

    The function is pure and idempotent. Unparseable input is returned as is.
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return url
    scheme = parts.scheme.lower()
    if not scheme or not parts.netloc:
        return url
    netloc = _normalize_host(parts.netloc, scheme)

    path = parts.path or "/"
    while len(path) > 1 and path.endswith("/"):
        path = path[:-1]

    query = parts.query
    if query:
        params = parse_qsl(query, keep_blank_values=True)
        query = urlencode(sorted(params), doseq=True)

    return urlunsplit((scheme, netloc, path, query, ""))


def resolve_href(base_url: str, href: str) -> Optional[str]:
    """Resolve an href found on ``base_url`` into a canonical http(s) URL.

    Returns None for links that are never crawlable: javascript:, mailto:,
    tel:, fragment-only links and anything that is not http/https.
    """
    if href is None:
        return None
    href = href.strip()
    if not href or href.startswith("#"):
        return None
    if href.lower().startswith(REJECTED_SCHEMES):
        return None
    try:
        absolute = urljoin(base_url, href)
        scheme = urlsplit(absolute).scheme.lower()
    except ValueError:
        return None
    if scheme not in ("http", "https"):
        return None
    return normalize_url(absolute)


def host_of(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def same_host(a: str, b: str) -> bool:
    return host_of(a) == host_of(b) != ""


def is_asset_url(url: str) -> bool:
    """True for binary, media and document URLs that are not worth crawling."""
    path = urlsplit(url).path.lower()
    if "/wp-content/uploads/" in path:
        return True
    return path.endswith(SKIP_EXTENSIONS)


def url_depth(url: str, base_url: str) -> int:
    """Path-segment count of ``url`` relative to ``base_url``.

    A best-effort heuristic: it is exact for hierarchical sites only.
    """
    base_segments = [s for s in urlsplit(base_url).path.split("/") if s]
    url_segments = [s for s in urlsplit(url).path.split("/") if s]
    return len(url_segments) - len(base_segments)


# ------------------ frontier ------------------

class Frontier:
    """
    Pending FIFO queue plus visited set for one crawl session.
    Identity is the canonical URL: a URL is offered at most once whether it is
    still pending or already visited. ``take`` pops and marks visited in one
    step under the state lock.
    """

    def __init__(self, seeds: Iterable[str] = ()):
        self.state_lock = threading.Lock()
        self._pending: deque[str] = deque()
        self._pending_set: set[str] = set()
        self._visited: set[str] = set()
        self._visit_order: list[str] = []
        for seed in seeds:
            self.offer(seed)

    def offer(self, url: str) -> bool:
        canonical = normalize_url(url)
        with self.state_lock:
            if canonical in self._visited or canonical in self._pending_set:
                return False
            self._pending.append(canonical)
            self._pending_set.add(canonical)
        logger.debug("frontier: queued %s (pending=%d)", canonical, len(self._pending))
        return True

    def take(self) -> Optional[str]:
        with self.state_lock:
            if not self._pending:
                return None
            url = self._pending.popleft()
            self._pending_set.discard(url)
            self._visited.add(url)
            self._visit_order.append(url)
        return url

    def has_pending(self) -> bool:
        with self.state_lock:
            return bool(self._pending)

    def is_visited(self, url: str) -> bool:
        with self.state_lock:
            return normalize_url(url) in self._visited

    @property
    def visited_count(self) -> int:
        with self.state_lock:
            return len(self._visited)

    @property
    def pending_count(self) -> int:
        with self.state_lock:
            return len(self._pending)

    def visited(self) -> list[str]:
        """Visited URLs in visit order."""
        with self.state_lock:
            return list(self._visit_order)

    def pending(self) -> list[str]:
        with self.state_lock:
            return list(self._pending)
