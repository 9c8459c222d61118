"""Run Controller: validate, seed, wire, run and report one crawl.

The controller owns all run-wide state (``RunState``) and is the scheduler's
``RunReporter``: caps are enforced here before each dispatch, and every
progress event flows through the event sink.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

import logfire
import soupsieve
from pydantic import ValidationError

from pagecrawl.config import Settings, get_settings
from pagecrawl.logging_config import source_fingerprint
from pagecrawl.models.crawl_models import CrawlRequest, RetryPolicy
from pagecrawl.models.outcome_models import FrontierEntry, PageOutcome
from pagecrawl.models.result_models import (
    CrawlResult,
    PageError,
    RunStatistics,
    RunStatus,
)
from pagecrawl.services.browser_driver import BrowserDriver, SessionPool
from pagecrawl.services.errors import (
    ConfigValidationError,
    FieldError,
    error_kind,
)
from pagecrawl.services.event_sink import (
    CompositeEventSink,
    EventSink,
    LogfireEventSink,
    RecordingEventSink,
)
from pagecrawl.services.frontier import Frontier
from pagecrawl.services.page_worker import PageWorker
from pagecrawl.services.result_store import ResultStore
from pagecrawl.services.sandbox import ExtractionSandbox
from pagecrawl.services.scheduler import CrawlScheduler
from pagecrawl.services.script_guard import get_script_guard

# Request field alias -> Settings attribute supplying its default.
SETTINGS_DEFAULTS = {
    "linkSelector": "default_link_selector",
    "maxConcurrency": "default_max_concurrency",
    "maxPagesPerRun": "default_max_pages_per_run",
    "maxResultRecords": "default_max_result_records",
    "maxCrawlingDepth": "default_max_crawling_depth",
    "maxPageRetries": "default_max_page_retries",
    "pageLoadTimeout": "default_page_load_timeout_seconds",
    "pageFunctionTimeout": "default_page_function_timeout_seconds",
}


@dataclass
class RunState:
    """Run-wide counters. Mutated only by the Run Controller."""

    pages_visited: int = 0
    pages_failed: int = 0
    records_collected: int = 0
    retries: int = 0
    errors: list[PageError] = field(default_factory=list)


def _field_name(loc: tuple) -> str:
    parts = [str(part) for part in loc]
    return ".".join(parts) or "request"


def validate_request(
    payload: Mapping[str, Any] | CrawlRequest, settings: Settings | None = None
) -> CrawlRequest:
    """Validate a crawl request, filling unset fields from Settings.

    Args:
        payload: Raw JSON-like mapping (camelCase or snake_case keys), or an
            already constructed CrawlRequest.
        settings: Settings providing defaults. Uses get_settings() if omitted.

    Returns:
        The validated CrawlRequest.

    Raises:
        ConfigValidationError: Listing every invalid field.
    """
    settings = settings or get_settings()
    errors: list[FieldError] = []
    request: CrawlRequest | None = None

    if isinstance(payload, CrawlRequest):
        request = payload
    elif not isinstance(payload, Mapping):
        raise ConfigValidationError([FieldError("request", "must be a JSON object")])
    else:
        data = dict(payload)
        names = {
            info.alias or name: name for name, info in CrawlRequest.model_fields.items()
        }
        for alias, setting_name in SETTINGS_DEFAULTS.items():
            python_name = names[alias]
            if alias not in data and python_name not in data:
                data[alias] = getattr(settings, setting_name)
        try:
            request = CrawlRequest.model_validate(data)
        except ValidationError as e:
            for err in e.errors():
                message = err["msg"].removeprefix("Value error, ")
                errors.append(FieldError(_field_name(err["loc"]), message))

    source = request.page_function if request else payload.get("pageFunction")
    if isinstance(source, str) and source.strip():
        verdict = get_script_guard().check(source)
        if not verdict.is_allowed:
            errors.append(FieldError("pageFunction", verdict.detail or "rejected"))

    if request is not None:
        errors.extend(_check_selectors(request))

    if errors:
        raise ConfigValidationError(errors)
    return request


def _check_selectors(request: CrawlRequest) -> list[FieldError]:
    errors: list[FieldError] = []
    try:
        soupsieve.compile(request.link_selector)
    except soupsieve.SelectorSyntaxError as e:
        errors.append(FieldError("linkSelector", f"invalid CSS selector: {e}"))
    for name, selector in request.fields.items():
        try:
            soupsieve.compile(selector)
        except soupsieve.SelectorSyntaxError as e:
            errors.append(FieldError(f"fields.{name}", f"invalid CSS selector: {e}"))
    return errors


class CrawlRunController:
    """Drive one crawl run from request to CrawlResult."""

    def __init__(
        self,
        driver: BrowserDriver,
        *,
        settings: Settings | None = None,
        run_id: str | None = None,
        sink: EventSink | None = None,
        sandbox: ExtractionSandbox | None = None,
    ):
        """Initialize the controller.

        Args:
            driver: Browser driver used to open sessions.
            settings: Settings for defaults and retry policy.
            run_id: Identifier for this run (generated if omitted).
            sink: Extra event sink; events always go to logfire and the run log.
            sandbox: Extraction sandbox (a default one is created if omitted).
        """
        self._driver = driver
        self._settings = settings or get_settings()
        self.run_id = run_id or str(uuid.uuid4())
        self._recording = RecordingEventSink(self._settings.run_log_max_events)
        sinks: list[EventSink] = [LogfireEventSink(self.run_id), self._recording]
        if sink is not None:
            sinks.append(sink)
        self._sink = CompositeEventSink(*sinks)
        self._sandbox = sandbox
        self._abort_event = asyncio.Event()
        self._abort_reason: str | None = None
        self._scheduler: CrawlScheduler | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

        self._request: CrawlRequest | None = None
        self._state = RunState()
        self._store: ResultStore | None = None

    @property
    def state(self) -> RunState:
        return self._state

    def validate_request(self, payload: Mapping[str, Any] | CrawlRequest) -> CrawlRequest:
        """Validate a request against this controller's settings."""
        return validate_request(payload, self._settings)

    def abort(self, reason: str = "Aborted by operator") -> None:
        """Signal the run to stop. Safe to call before or during the run.

        May be called from another thread; the signal is then delivered on
        the loop the run is executing in.
        """
        if self._abort_reason is None:
            self._abort_reason = reason
        loop = self._loop
        if loop is not None and loop.is_running():
            try:
                current = asyncio.get_running_loop()
            except RuntimeError:
                current = None
            if current is not loop:
                loop.call_soon_threadsafe(self._signal_abort, reason)
                return
        self._signal_abort(reason)

    def _signal_abort(self, reason: str) -> None:
        if self._scheduler is not None:
            self._scheduler.abort(reason)
        else:
            self._abort_event.set()

    async def run(self, payload: Mapping[str, Any] | CrawlRequest) -> CrawlResult:
        """Validate the request and crawl until completion or abort.

        Args:
            payload: Crawl request (raw mapping or CrawlRequest).

        Returns:
            CrawlResult with records, statistics, errors and the run log.
            Aborted runs include partial results.

        Raises:
            ConfigValidationError: If the request is invalid. No work starts.
        """
        request = self.validate_request(payload)
        self._request = request
        self._loop = asyncio.get_running_loop()
        self._store = ResultStore(request.max_result_records)
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()

        frontier = Frontier.from_request(request)
        for url in request.start_urls:
            frontier.seed(url)

        self._sink.emit(
            "info",
            "Run started",
            start_urls=len(request.start_urls),
            max_concurrency=request.max_concurrency,
            max_pages_per_run=request.max_pages_per_run,
            max_crawling_depth=request.max_crawling_depth,
            page_function=source_fingerprint(request.page_function),
        )

        scheduler = CrawlScheduler(
            frontier,
            PageWorker(request, SessionPool(self._driver, request.launch_options), self._sandbox),
            self,
            retry_policy=self._retry_policy(request),
            max_concurrency=request.max_concurrency,
            abort_event=self._abort_event,
        )
        self._scheduler = scheduler
        if self._abort_reason is not None:
            scheduler.abort(self._abort_reason)

        status = RunStatus.ABORTED
        abort_reason = None
        with logfire.span("crawl run", run_id=self.run_id):
            if len(frontier) == 0:
                abort_reason = "No start URL could be seeded"
            else:
                try:
                    status = await scheduler.run()
                    abort_reason = scheduler.abort_reason
                except Exception as e:
                    logfire.exception("Crawl run failed", run_id=self.run_id)
                    abort_reason = f"Internal error: {type(e).__name__}"

        finished_at = datetime.now(timezone.utc)
        duration_ms = (time.monotonic() - started) * 1000
        if status == RunStatus.ABORTED:
            self._sink.emit("warning", "Run aborted", reason=abort_reason)
        else:
            self._sink.emit(
                "info",
                "Run completed",
                pages_visited=self._state.pages_visited,
                records=self._state.records_collected,
                duration_ms=round(duration_ms, 1),
            )

        statistics = RunStatistics(
            pages_visited=self._state.pages_visited,
            pages_failed=self._state.pages_failed,
            pages_queued=len(frontier) + scheduler.leftover_retries,
            records_collected=self._state.records_collected,
            records_dropped=self._store.dropped,
            urls_discovered=frontier.seen_count,
            log_events_dropped=self._recording.dropped,
            retries=self._state.retries,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=duration_ms,
        )
        return CrawlResult(
            run_id=self.run_id,
            status=status,
            abort_reason=abort_reason if status == RunStatus.ABORTED else None,
            records=self._store.records(),
            statistics=statistics,
            errors=list(self._state.errors),
            log=self._recording.events,
        )

    def _retry_policy(self, request: CrawlRequest) -> RetryPolicy:
        return RetryPolicy(
            max_retries=request.max_page_retries,
            base_delay_seconds=self._settings.retry_base_delay_seconds,
            multiplier=self._settings.retry_backoff_multiplier,
            max_delay_seconds=self._settings.retry_max_delay_seconds,
        )

    # RunReporter

    def can_dispatch(self, retry: bool) -> bool:
        if self._store is not None and self._store.is_full:
            return False
        if retry:
            return True
        limit = self._request.max_pages_per_run if self._request else None
        return limit is None or self._state.pages_visited < limit

    def page_started(self, entry: FrontierEntry) -> None:
        if entry.attempt == 0:
            self._state.pages_visited += 1
        self._sink.emit(
            "info", "Page started", url=entry.url, depth=entry.depth, attempt=entry.attempt + 1
        )

    def page_retrying(self, entry: FrontierEntry, error: BaseException, delay: float) -> None:
        self._state.retries += 1
        self._sink.emit(
            "warning",
            "Page retry scheduled",
            url=entry.url,
            attempt=entry.attempt + 1,
            kind=error_kind(error),
            error=str(error),
            delay_seconds=delay,
        )

    def page_finished(self, outcome: PageOutcome, links_enqueued: int) -> None:
        entry = outcome.entry
        for level, text in outcome.page_logs:
            self._sink.emit(level, "Page function log", url=entry.url, text=text)

        if outcome.extracted:
            if self._store.append(outcome.record):
                self._state.records_collected += 1
                self._sink.emit(
                    "info",
                    "Page completed",
                    url=entry.url,
                    links_enqueued=links_enqueued,
                )
            else:
                self._sink.emit("warning", "Record dropped, result cap reached", url=entry.url)
        elif not outcome.failed:
            self._sink.emit(
                "info", "Page completed", url=entry.url, links_enqueued=links_enqueued
            )

        if outcome.failed:
            self._state.pages_failed += 1
            self._state.errors.append(
                PageError(
                    url=entry.url,
                    kind=outcome.kind,
                    message=str(outcome.error),
                    attempts=entry.attempt + 1,
                    retryable=outcome.retryable,
                )
            )
            self._sink.emit(
                "error",
                "Page failed",
                url=entry.url,
                kind=outcome.kind,
                error=str(outcome.error),
                attempts=entry.attempt + 1,
                links_enqueued=links_enqueued,
            )
