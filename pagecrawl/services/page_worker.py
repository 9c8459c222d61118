"""Process one frontier entry: navigate, extract, discover links."""

import asyncio

import logfire

from pagecrawl.config import get_settings
from pagecrawl.constants import CONTENT_SNAPSHOT_TIMEOUT_SECONDS, NAVIGATION_GRACE_SECONDS
from pagecrawl.models.crawl_models import RESERVED_RECORD_KEY, CrawlRequest
from pagecrawl.models.outcome_models import FrontierEntry, PageContext, PageOutcome
from pagecrawl.services.browser_driver import BrowserSession, SessionPool
from pagecrawl.services.errors import ExtractionError, ExtractionErrorKind, NavigationError
from pagecrawl.services.page_parser import PageParser
from pagecrawl.services.sandbox import ExtractionSandbox, check_required_fields

# HTTP statuses worth retrying; every other 4xx/5xx below 500 is permanent.
RETRYABLE_STATUSES = frozenset((408, 425, 429))


def navigation_error_for_status(status: int) -> NavigationError:
    """Build the NavigationError for an HTTP error status."""
    retryable = status >= 500 or status in RETRYABLE_STATUSES
    return NavigationError(f"HTTP {status}", retryable=retryable, status=status)


class PageWorker:
    """Turn a FrontierEntry into a PageOutcome.

    Page-scoped failures are returned as failed outcomes, never raised.
    ``PoolExhaustionError`` is the one exception that propagates, since the
    scheduler treats it as a run-level condition.
    """

    def __init__(
        self,
        request: CrawlRequest,
        pool: SessionPool,
        sandbox: ExtractionSandbox | None = None,
        parser: PageParser | None = None,
    ):
        settings = get_settings()
        self._request = request
        self._pool = pool
        self._sandbox = sandbox or ExtractionSandbox()
        self._parser = parser or PageParser(request.link_selector, request.url_fragments)
        self._jquery_url = settings.jquery_script_url
        self._jquery_timeout = settings.jquery_injection_timeout_seconds

    async def process(self, entry: FrontierEntry) -> PageOutcome:
        """Fetch and extract one page.

        Args:
            entry: The frontier entry to process.

        Returns:
            PageOutcome carrying a record and/or links, or an error.

        Raises:
            PoolExhaustionError: If no browser session could be acquired.
        """
        request = self._request
        with logfire.span("process page", url=entry.url, depth=entry.depth, attempt=entry.attempt):
            async with self._pool.session() as session:
                try:
                    final_url = await self._navigate(session, entry.url)
                except NavigationError as e:
                    logfire.info(
                        "Navigation failed",
                        url=entry.url,
                        error=str(e),
                        retryable=e.retryable,
                    )
                    return PageOutcome(entry=entry, error=e, retryable=e.retryable)

                use_jquery = False
                if request.inject_jquery:
                    use_jquery = await self._inject_jquery(session, entry.url)

                record = None
                error = await self._block_network(session, entry.url)
                logs: list[tuple[str, str]] = []

                before_html = await self._snapshot(session, entry.url)

                try:
                    field_values = self._parser.extract_fields(before_html or "", request.fields)
                except ValueError as e:
                    error = error or ExtractionError(ExtractionErrorKind.MALFORMED_RESULT, str(e))
                if error is None:
                    result = await self._sandbox.execute(
                        request.page_function,
                        PageContext(url=entry.url, use_jquery=use_jquery),
                        session,
                        request.page_function_timeout,
                    )
                    logs = result.logs
                    error = result.error
                    if result.record is not None:
                        record = self._merge(entry.url, field_values, result.record)
                        try:
                            check_required_fields(record, request.required_fields)
                        except ExtractionError as e:
                            record, error = None, e

                after_html = None
                if error is None or error.kind != ExtractionErrorKind.TIMEOUT:
                    after_html = await self._snapshot(session, entry.url)
                links = self._discover_links(after_html or before_html, final_url)

        return PageOutcome(
            entry=entry,
            record=record,
            links=tuple(links),
            error=error,
            retryable=False,
            page_logs=logs,
        )

    async def _navigate(self, session: BrowserSession, url: str) -> str:
        timeout = self._request.page_load_timeout
        try:
            result = await asyncio.wait_for(
                session.navigate(url, timeout), timeout=timeout + NAVIGATION_GRACE_SECONDS
            )
        except asyncio.TimeoutError as e:
            raise NavigationError(
                f"Navigation timed out after {timeout}s", retryable=True
            ) from e

        if result.status is not None and result.status >= 400:
            raise navigation_error_for_status(result.status)
        return result.url or url

    async def _inject_jquery(self, session: BrowserSession, url: str) -> bool:
        try:
            await session.add_script(self._jquery_url, self._jquery_timeout)
        except asyncio.TimeoutError:
            logfire.warn("jQuery injection timed out, continuing without it", url=url)
            return False
        except Exception as e:
            logfire.warn("jQuery injection failed, continuing without it", url=url, error=str(e))
            return False
        return True

    @staticmethod
    async def _block_network(session: BrowserSession, url: str) -> ExtractionError | None:
        # The page function never runs on a page that can still reach the network
        try:
            await session.block_network()
        except Exception as e:
            logfire.error("Could not block page network", url=url, error=str(e))
            return ExtractionError(
                ExtractionErrorKind.RUNTIME_ERROR, f"Could not block page network: {e}"
            )
        return None

    @staticmethod
    async def _snapshot(session: BrowserSession, url: str) -> str | None:
        try:
            return await asyncio.wait_for(
                session.content(), timeout=CONTENT_SNAPSHOT_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logfire.warn("Timed out reading page content", url=url)
        except Exception as e:
            logfire.warn("Could not read page content", url=url, error=str(e))
        return None

    def _discover_links(self, html: str | None, page_url: str) -> list[str]:
        if not html:
            return []
        try:
            return self._parser.discover_links(html, page_url)
        except ValueError as e:
            logfire.error("Link discovery failed", url=page_url, error=str(e))
            return []

    @staticmethod
    def _merge(url: str, field_values: dict, returned: dict) -> dict:
        if RESERVED_RECORD_KEY in returned:
            logfire.warn(
                "Page function returned reserved key, ignoring it",
                url=url,
                key=RESERVED_RECORD_KEY,
            )
        record = {RESERVED_RECORD_KEY: url}
        record.update(field_values)
        record.update(
            (key, value) for key, value in returned.items() if key != RESERVED_RECORD_KEY
        )
        return record
