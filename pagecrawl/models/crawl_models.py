"""Crawl request models: what an operator submits to start a run."""

from dataclasses import dataclass
from typing import Annotated, Any
from urllib.parse import urlsplit

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel

from pagecrawl.constants import (
    DEFAULT_LINK_SELECTOR,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_CRAWLING_DEPTH,
    DEFAULT_MAX_PAGE_RETRIES,
    DEFAULT_MAX_PAGES_PER_RUN,
    DEFAULT_MAX_RESULT_RECORDS,
    DEFAULT_PAGE_FUNCTION_TIMEOUT_SECONDS,
    DEFAULT_PAGE_LOAD_TIMEOUT_SECONDS,
    MAX_ALLOWED_CONCURRENCY,
    RETRY_BACKOFF_MULTIPLIER,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
)

RESERVED_RECORD_KEY = "url"


def _check_absolute_url(value: str) -> str:
    value = value.strip()
    parts = urlsplit(value)
    if parts.scheme.lower() not in ("http", "https"):
        raise ValueError("must be an absolute http(s) URL")
    if not parts.hostname:
        raise ValueError("must include a host")
    try:
        parts.port
    except ValueError as e:
        raise ValueError("has an invalid port") from e
    return value


def _split_patterns(value: Any) -> Any:
    """Accept a comma-separated string or a list; drop blank entries."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if isinstance(value, (list, tuple)):
        return [
            p.strip() if isinstance(p, str) else p
            for p in value
            if not (isinstance(p, str) and not p.strip())
        ]
    return value


def _unlimited_when_zero(value: Any) -> Any:
    """The operator form uses 0 to mean "no limit"."""
    if value == 0 and not isinstance(value, bool):
        return None
    return value


SeedUrl = Annotated[str, AfterValidator(_check_absolute_url)]
PatternList = Annotated[list[str], BeforeValidator(_split_patterns)]
OptionalLimit = Annotated[
    Annotated[int, Field(ge=1)] | None, BeforeValidator(_unlimited_when_zero)
]


class LaunchOptions(BaseModel):
    """Browser launch and context options for a run."""

    model_config = ConfigDict(frozen=True)

    headless: bool = True
    ignore_ssl_errors: bool = False
    ignore_cors_and_csp: bool = False
    download_media_files: bool = True
    download_css_files: bool = True

    @property
    def profile(self) -> tuple[bool, bool]:
        """Options that require a separate browser process."""
        return (self.headless, self.ignore_cors_and_csp)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and backoff rules applied uniformly by the scheduler.

    A page is attempted at most ``max_retries + 1`` times. The delay before
    retry ``n`` (1-based) is ``base_delay * multiplier ** (n - 1)``, capped at
    ``max_delay``.
    """

    max_retries: int = DEFAULT_MAX_PAGE_RETRIES
    base_delay_seconds: float = RETRY_BASE_DELAY_SECONDS
    multiplier: float = RETRY_BACKOFF_MULTIPLIER
    max_delay_seconds: float = RETRY_MAX_DELAY_SECONDS

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def should_retry(self, attempts_made: int) -> bool:
        """Whether another attempt is allowed after ``attempts_made`` attempts."""
        return attempts_made < self.max_attempts

    def delay_for(self, retry_number: int) -> float:
        """Backoff delay in seconds before the given retry (1-based)."""
        if retry_number < 1:
            return 0.0
        delay = self.base_delay_seconds * (self.multiplier ** (retry_number - 1))
        return min(delay, self.max_delay_seconds)


class CrawlRequest(BaseModel):
    """Complete, validated crawl configuration.

    Field aliases match the JSON submitted by the operator form
    (``startUrls``, ``pageFunction``, ``ignoreSSLErrors``...). Python code
    uses the snake_case names. ``None`` limits mean unlimited.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    start_urls: list[SeedUrl] = Field(..., min_length=1)
    page_function: str = Field(..., min_length=1)
    link_selector: str = Field(default=DEFAULT_LINK_SELECTOR, min_length=1)
    glob_patterns: PatternList = Field(default_factory=list)
    exclude_glob_patterns: PatternList = Field(default_factory=list)
    url_fragments: bool = False
    inject_jquery: bool = Field(default=False, alias="injectJQuery")
    fields: dict[str, str] = Field(default_factory=dict)
    required_fields: list[str] = Field(default_factory=list)

    max_concurrency: int = Field(
        default=DEFAULT_MAX_CONCURRENCY, ge=1, le=MAX_ALLOWED_CONCURRENCY
    )
    page_load_timeout: float = Field(
        default=DEFAULT_PAGE_LOAD_TIMEOUT_SECONDS, gt=0, le=3600
    )
    page_function_timeout: float = Field(
        default=DEFAULT_PAGE_FUNCTION_TIMEOUT_SECONDS, gt=0, le=3600
    )
    max_pages_per_run: OptionalLimit = Field(default=DEFAULT_MAX_PAGES_PER_RUN)
    max_crawling_depth: OptionalLimit = Field(default=DEFAULT_MAX_CRAWLING_DEPTH)
    max_page_retries: int = Field(default=DEFAULT_MAX_PAGE_RETRIES, ge=0, le=20)
    max_result_records: OptionalLimit = Field(default=DEFAULT_MAX_RESULT_RECORDS)

    headless: bool = True
    ignore_ssl_errors: bool = Field(default=False, alias="ignoreSSLErrors")
    ignore_cors_and_csp: bool = Field(default=False, alias="ignoreCORSAndCSP")
    download_media_files: bool = True
    download_css_files: bool = Field(default=True, alias="downloadCSSFiles")

    @field_validator("page_function")
    @classmethod
    def _page_function_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("link_selector")
    @classmethod
    def _strip_selector(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("fields", mode="before")
    @classmethod
    def _flatten_fields(cls, value: Any) -> Any:
        """Accept ``{name: selector}`` or the form's ``{key: {name, selector}}``."""
        if not isinstance(value, dict):
            return value
        flattened: dict[str, Any] = {}
        for key, row in value.items():
            if isinstance(row, dict):
                name = row.get("name")
                name = "" if name is None else name
                selector = row.get("selector")
                selector = "" if selector is None else selector
                if not isinstance(name, str) or not isinstance(selector, str):
                    raise ValueError(f"field '{key}' name and selector must be strings")
                name = name.strip()
                if not name and not selector.strip():
                    # Empty row left in the form
                    continue
                flattened[name or key] = selector
            else:
                flattened[key] = row
        return flattened

    @field_validator("fields")
    @classmethod
    def _check_fields(cls, value: dict[str, str]) -> dict[str, str]:
        for name, selector in value.items():
            if not name.strip():
                raise ValueError("field names must not be blank")
            if name == RESERVED_RECORD_KEY:
                raise ValueError(f"'{RESERVED_RECORD_KEY}' is reserved for the page URL")
            if not selector.strip():
                raise ValueError(f"field '{name}' has a blank selector")
        return value

    @field_validator("required_fields")
    @classmethod
    def _check_required_fields(cls, value: list[str]) -> list[str]:
        cleaned = [name.strip() for name in value if name.strip()]
        return list(dict.fromkeys(cleaned))

    @property
    def launch_options(self) -> LaunchOptions:
        return LaunchOptions(
            headless=self.headless,
            ignore_ssl_errors=self.ignore_ssl_errors,
            ignore_cors_and_csp=self.ignore_cors_and_csp,
            download_media_files=self.download_media_files,
            download_css_files=self.download_css_files,
        )
