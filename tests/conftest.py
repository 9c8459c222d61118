"""Shared pytest fixtures and configuration.

Fixture Categories:
1. Fake browser: FakePage, FakeSession, FakeBrowserDriver, fake_driver
2. Requests: crawl_payload, make_payload
3. Infrastructure: mock_settings, mock_logfire, logfire_capture, test_client, respx_mock
4. Singletons: reset_singletons (autouse)
"""

import asyncio
import os
from contextlib import contextmanager
from typing import Any, Callable
from unittest.mock import MagicMock, Mock

import pytest

os.environ.setdefault("LOGFIRE_IGNORE_NO_CONFIG", "1")

try:
    import respx
except ImportError:
    respx = None

from pagecrawl.services.browser_driver import (
    NavigationResult,
    ScriptEvaluationError,
    reset_browser_driver,
)
from pagecrawl.services.errors import NavigationError, PoolExhaustionError
from pagecrawl.services.run_registry import reset_run_registry
from pagecrawl.services.script_guard import reset_script_guard
from pagecrawl.middleware.rate_limiter import reset_rate_limiter


# =============================================================================
# Fake Browser
# =============================================================================


def ok_envelope(value: Any, logs: list | None = None) -> dict:
    """What the sandbox wrapper returns when the page function returned ``value``."""
    if value is None:
        kind = "null"
    elif isinstance(value, bool):
        kind = "boolean"
    elif isinstance(value, (int, float)):
        kind = "number"
    elif isinstance(value, str):
        kind = "string"
    elif isinstance(value, list):
        kind = "array"
    else:
        kind = "object"
    return {
        "ok": True,
        "kind": kind,
        "value": value if kind == "object" else None,
        "logs": logs or [],
    }


def error_envelope(name: str, message: str, logs: list | None = None) -> dict:
    """What the sandbox wrapper returns when the page function threw."""
    return {"ok": False, "name": name, "message": message, "logs": logs or []}


class FakePage:
    """A scripted page served by the fake driver.

    Args:
        html: Rendered HTML returned by ``content()``.
        status: HTTP status of the main document.
        envelope: Value returned by ``evaluate``, or a callable taking the
            context argument.
        failures: NavigationErrors raised by successive navigations before
            the page loads.
        evaluate_delay: Seconds ``evaluate`` sleeps before answering.
        evaluate_error: Message for a ScriptEvaluationError raised by ``evaluate``.
    """

    def __init__(
        self,
        html: str = "<html><body></body></html>",
        status: int | None = 200,
        envelope: Any = None,
        failures: list[NavigationError] | None = None,
        evaluate_delay: float = 0.0,
        evaluate_error: str | None = None,
    ):
        self.html = html
        self.status = status
        self.envelope = envelope if envelope is not None else ok_envelope({"ok": True})
        self.failures = list(failures or [])
        self.evaluate_delay = evaluate_delay
        self.evaluate_error = evaluate_error


class FakeSession:
    """In-memory BrowserSession."""

    def __init__(self, driver: "FakeBrowserDriver"):
        self._driver = driver
        self.page: FakePage | None = None
        self.closed = False
        self.scripts: list[str] = []
        self.network_blocked = False
        # Network state seen by each evaluate call
        self.evaluated_offline: list[bool] = []

    async def navigate(self, url: str, timeout: float) -> NavigationResult:
        self._driver.navigations.append(url)
        if self._driver.navigation_delay:
            await asyncio.sleep(self._driver.navigation_delay)
        page = self._driver.pages.get(url)
        if page is None:
            raise NavigationError("net::ERR_NAME_NOT_RESOLVED", retryable=False)
        if page.failures:
            raise page.failures.pop(0)
        self.page = page
        return NavigationResult(url=url, status=page.status)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self._driver.evaluations.append((script, arg))
        self.evaluated_offline.append(self.network_blocked)
        if self.page.evaluate_delay:
            await asyncio.sleep(self.page.evaluate_delay)
        if self.page.evaluate_error:
            raise ScriptEvaluationError(self.page.evaluate_error)
        if callable(self.page.envelope):
            return self.page.envelope(arg)
        return self.page.envelope

    async def content(self) -> str:
        return self.page.html if self.page else ""

    async def add_script(self, url: str, timeout: float) -> None:
        if self._driver.fail_script_injection:
            raise RuntimeError("net::ERR_CONNECTION_REFUSED")
        if self.network_blocked:
            raise RuntimeError("net::ERR_INTERNET_DISCONNECTED")
        self.scripts.append(url)

    async def block_network(self) -> None:
        if self._driver.fail_network_block:
            raise RuntimeError("Target page, context or browser has been closed")
        self.network_blocked = True

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._driver.open_sessions -= 1


class FakeBrowserDriver:
    """In-memory BrowserDriver that records what the crawler did."""

    def __init__(
        self,
        pages: dict[str, FakePage] | None = None,
        *,
        navigation_delay: float = 0.0,
        fail_open: bool = False,
        fail_script_injection: bool = False,
        fail_network_block: bool = False,
    ):
        self.pages = dict(pages or {})
        self.navigation_delay = navigation_delay
        self.fail_open = fail_open
        self.fail_script_injection = fail_script_injection
        self.fail_network_block = fail_network_block
        self.sessions: list[FakeSession] = []
        self.navigations: list[str] = []
        self.evaluations: list[tuple[str, Any]] = []
        self.launch_options: list[Any] = []
        self.open_sessions = 0
        self.peak_sessions = 0
        self.closed = False

    async def open_session(self, launch_options) -> FakeSession:
        if self.fail_open:
            raise PoolExhaustionError("browser failed to launch")
        self.launch_options.append(launch_options)
        session = FakeSession(self)
        self.sessions.append(session)
        self.open_sessions += 1
        self.peak_sessions = max(self.peak_sessions, self.open_sessions)
        return session

    async def close(self) -> None:
        self.closed = True


def link_page(*hrefs: str, title: str = "Page") -> str:
    """HTML page with one anchor per href."""
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in hrefs)
    return f"<html><head><title>{title}</title></head><body><h1>{title}</h1>{anchors}</body></html>"


@pytest.fixture
def fake_driver():
    """Empty fake driver; tests add pages to ``fake_driver.pages``."""
    return FakeBrowserDriver()


# =============================================================================
# Requests
# =============================================================================


@pytest.fixture
def make_payload() -> Callable[..., dict]:
    """Build a crawl request payload with camelCase keys and overrides."""

    def _make(**overrides: Any) -> dict:
        payload = {
            "startUrls": ["https://example.com/"],
            "pageFunction": "return { title: context.url };",
            "maxConcurrency": 2,
            "maxPageRetries": 0,
        }
        payload.update(overrides)
        return payload

    return _make


@pytest.fixture
def crawl_payload(make_payload) -> dict:
    return make_payload()


# =============================================================================
# Infrastructure
# =============================================================================


@pytest.fixture
def respx_mock():
    """Respx mock fixture for HTTP mocking."""
    if respx is None:
        pytest.skip("respx not available")
    with respx.mock:
        yield respx


@pytest.fixture
def mock_settings(monkeypatch):
    """Settings with fast retries and no external services."""
    from pagecrawl.config import Settings

    settings = Settings(
        env="local",
        logfire_token=None,
        sentry_dsn=None,
        retry_base_delay_seconds=0.01,
        retry_backoff_multiplier=2.0,
        retry_max_delay_seconds=0.05,
        session_acquire_timeout_seconds=1.0,
        rate_limit_max_crawl_starts=100,
    )

    monkeypatch.setattr("pagecrawl.config.get_settings", lambda: settings)
    # Patch where get_settings is imported so services and handlers see the mock
    for module in (
        "pagecrawl.main",
        "pagecrawl.logging_config",
        "pagecrawl.api.crawl",
        "pagecrawl.middleware.rate_limiter",
        "pagecrawl.services.browser_driver",
        "pagecrawl.services.page_worker",
        "pagecrawl.services.run_controller",
    ):
        monkeypatch.setattr(f"{module}.get_settings", lambda: settings)
    return settings


@pytest.fixture
def mock_logfire(monkeypatch):
    """
    Mock Logfire for testing without actual logging.

    Patches the attributes of the real ``logfire`` module so every
    ``import logfire`` in the package sees the mocks.
    """
    import logfire

    @contextmanager
    def mock_span(*args, **kwargs):
        yield MagicMock()

    mock_logfire_module = MagicMock()
    for attr in ("debug", "info", "warn", "warning", "error", "exception"):
        setattr(mock_logfire_module, attr, Mock())
    mock_logfire_module.span = mock_span
    mock_logfire_module.configure = Mock()
    mock_logfire_module.instrument_fastapi = Mock()
    mock_logfire_module.instrument_pydantic = Mock()

    for attr in (
        "debug",
        "info",
        "warn",
        "warning",
        "error",
        "exception",
        "span",
        "configure",
        "instrument_fastapi",
        "instrument_pydantic",
    ):
        monkeypatch.setattr(logfire, attr, getattr(mock_logfire_module, attr))

    return mock_logfire_module


@pytest.fixture
def logfire_capture(monkeypatch):
    """
    Capture Logfire logs for testing.

    Records ``(level, args, kwargs)`` for every info/warn/error call and
    still forwards to the real logfire function.
    """
    import logfire

    captured_logs = []

    def capturing(level, original):
        def capture(*args, **kwargs):
            captured_logs.append((level, args, kwargs))
            return original(*args, **kwargs)

        return capture

    monkeypatch.setattr(logfire, "info", capturing("info", logfire.info))
    monkeypatch.setattr(logfire, "warn", capturing("warn", logfire.warn))
    monkeypatch.setattr(logfire, "error", capturing("error", logfire.error))
    return captured_logs


@pytest.fixture
def test_client(mock_settings, mock_logfire, fake_driver, monkeypatch):
    """FastAPI TestClient wired to the fake browser driver."""
    from fastapi.testclient import TestClient
    from pagecrawl.main import app

    monkeypatch.setattr("pagecrawl.api.crawl.get_browser_driver", lambda: fake_driver)
    return TestClient(app)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Give every test fresh process-wide singletons."""
    reset_rate_limiter()
    reset_run_registry()
    reset_script_guard()
    reset_browser_driver()
    yield
    reset_rate_limiter()
    reset_run_registry()
    reset_script_guard()
    reset_browser_driver()
