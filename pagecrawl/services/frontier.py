"""URL frontier: the set of discovered-but-not-yet-processed URLs for a run.

The frontier is the only structure shared by all page workers. Push and pop
are serialized by a single lock, never block, and the queue is unbounded.
Traversal is breadth-first (FIFO by discovery order).
"""

from collections import deque
from fnmatch import fnmatchcase
from threading import Lock
from typing import Iterable
from urllib.parse import urlsplit, urlunsplit

import logfire

from pagecrawl.models.crawl_models import CrawlRequest
from pagecrawl.models.outcome_models import FrontierEntry

DEFAULT_PORTS = {"http": 80, "https": 443}


def strip_fragment(url: str) -> str:
    """Remove the ``#fragment`` part of a URL."""
    parts = urlsplit(url)
    return urlunsplit(parts._replace(fragment=""))


def dedup_key(url: str, url_fragments: bool = False) -> str:
    """Normalize a URL into the identity used for deduplication.

    Lower-cases scheme and host, removes default ports, turns an empty path
    into ``/`` and drops the fragment unless fragments identify distinct pages.

    Args:
        url: Absolute URL.
        url_fragments: When True, ``#fragment`` is part of the key.

    Returns:
        Normalized key string.

    Raises:
        ValueError: If the URL is not absolute http(s) or has a bad port.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if scheme not in DEFAULT_PORTS or not host:
        raise ValueError(f"Not an absolute http(s) URL: {url!r}")

    port = parts.port
    netloc = f"[{host}]" if ":" in host else host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"

    path = parts.path or "/"
    fragment = parts.fragment if url_fragments else ""
    return urlunsplit((scheme, netloc, path, parts.query, fragment))


class Frontier:
    """Thread-safe FIFO frontier with dedup, glob filters and a depth bound."""

    def __init__(
        self,
        *,
        max_depth: int | None = None,
        include_globs: Iterable[str] = (),
        exclude_globs: Iterable[str] = (),
        url_fragments: bool = False,
    ):
        """Initialize an empty frontier.

        Args:
            max_depth: Deepest link depth accepted (None for unlimited).
            include_globs: If any are given, a URL must match at least one.
            exclude_globs: A URL matching any of these is rejected.
            url_fragments: Whether ``#fragment`` distinguishes pages.
        """
        self._max_depth = max_depth
        self._include = tuple(include_globs)
        self._exclude = tuple(exclude_globs)
        self._url_fragments = url_fragments
        self._queue: deque[FrontierEntry] = deque()
        self._seen: set[str] = set()
        self._lock = Lock()

    @classmethod
    def from_request(cls, request: CrawlRequest) -> "Frontier":
        return cls(
            max_depth=request.max_crawling_depth,
            include_globs=request.glob_patterns,
            exclude_globs=request.exclude_glob_patterns,
            url_fragments=request.url_fragments,
        )

    def seed(self, url: str) -> FrontierEntry | None:
        """Add a start URL at depth 0.

        Seeds bypass the glob filters (they are what the operator asked for)
        but are still deduplicated.
        """
        return self._add(url, 0, apply_filters=False)

    def push(self, url: str, depth: int) -> FrontierEntry | None:
        """Add a discovered URL if it passes dedup, glob and depth rules.

        Args:
            url: Absolute URL.
            depth: Link depth at which the URL was discovered.

        Returns:
            The new entry, or None if the URL was rejected.
        """
        return self._add(url, depth, apply_filters=True)

    def pop(self) -> FrontierEntry | None:
        """Return the oldest pending entry, or None when the frontier is empty."""
        with self._lock:
            if not self._queue:
                return None
            return self._queue.popleft()

    @property
    def seen_count(self) -> int:
        with self._lock:
            return len(self._seen)

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def _add(self, url: str, depth: int, apply_filters: bool) -> FrontierEntry | None:
        try:
            key = dedup_key(url, self._url_fragments)
        except ValueError:
            logfire.debug("Frontier rejected URL", url=url, reason="invalid_url")
            return None

        target = url.strip() if self._url_fragments else strip_fragment(url.strip())

        if apply_filters:
            reason = self._filter_reason(target, depth)
            if reason:
                logfire.debug("Frontier rejected URL", url=target, reason=reason)
                return None

        with self._lock:
            if key in self._seen:
                return None
            self._seen.add(key)
            entry = FrontierEntry(url=target, depth=depth, dedup_key=key)
            self._queue.append(entry)
            return entry

    def _filter_reason(self, url: str, depth: int) -> str | None:
        if self._max_depth is not None and depth > self._max_depth:
            return "max_depth"
        if self._include and not any(fnmatchcase(url, g) for g in self._include):
            return "no_include_match"
        if any(fnmatchcase(url, g) for g in self._exclude):
            return "excluded"
        return None
