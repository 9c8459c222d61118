"""Per-page crawl state: frontier entries, page context and page outcomes."""

from dataclasses import dataclass, field, replace
from typing import Union

from pagecrawl.services.errors import CrawlError, error_kind

# A record value crossing the sandbox boundary must be a JSON primitive.
RecordValue = Union[str, int, float, bool, None]
ExtractedRecord = dict[str, RecordValue]


@dataclass(frozen=True)
class FrontierEntry:
    """A URL waiting to be processed.

    Attributes:
        url: Absolute URL to navigate to.
        depth: Link distance from the seed URLs (seeds are 0).
        dedup_key: Normalized identity used by the frontier.
        attempt: Number of attempts already made (0 before the first).
    """

    url: str
    depth: int
    dedup_key: str
    attempt: int = 0

    def next_attempt(self) -> "FrontierEntry":
        return replace(self, attempt=self.attempt + 1)


@dataclass(frozen=True)
class PageContext:
    """The fixed capability set handed to a page function.

    Attributes:
        url: URL of the page being extracted.
        use_jquery: Whether the jQuery compatibility layer is available.
    """

    url: str
    use_jquery: bool = False

    def to_script_arg(self) -> dict:
        return {"url": self.url, "useJQuery": self.use_jquery}


@dataclass
class PageOutcome:
    """Result of processing one frontier entry.

    A single outcome can carry both an extracted record and discovered links;
    an extraction failure still carries the links found on the page.
    """

    entry: FrontierEntry
    record: ExtractedRecord | None = None
    links: tuple[str, ...] = ()
    error: CrawlError | None = None
    retryable: bool = False
    page_logs: list[tuple[str, str]] = field(default_factory=list)

    @property
    def extracted(self) -> bool:
        return self.record is not None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def kind(self) -> str:
        """``extracted``, ``link_discovery`` or the failure kind."""
        if self.error is not None:
            return error_kind(self.error)
        if self.record is not None:
            return "extracted"
        return "link_discovery"
