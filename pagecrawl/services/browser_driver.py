"""Browser automation collaborator.

The crawl core talks to the browser only through the ``BrowserDriver`` and
``BrowserSession`` protocols:

- ``BrowserDriver.open_session(launch_options)`` -> ``BrowserSession``
- ``BrowserSession.navigate(url, timeout)`` -> ``NavigationResult``
- ``BrowserSession.evaluate(script, arg)`` -> JSON-compatible value
- ``BrowserSession.content()`` / ``add_script(url, timeout)`` / ``close()``
- ``BrowserSession.block_network()`` cuts the page off before extraction

``PlaywrightDriver`` implements them with one Chromium process per launch
profile and a fresh ``BrowserContext`` per session, so pages never share
cookies, storage or script state. ``SessionPool`` is the core-side wrapper
that guarantees every acquired session is closed on every exit path.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, NamedTuple, Protocol

import logfire
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from pagecrawl.config import get_settings
from pagecrawl.constants import CSS_RESOURCE_TYPES, MEDIA_RESOURCE_TYPES
from pagecrawl.models.crawl_models import LaunchOptions
from pagecrawl.services.errors import NavigationError, PoolExhaustionError

# Chromium network errors that will not go away on retry.
PERMANENT_NETWORK_ERRORS = (
    "ERR_NAME_NOT_RESOLVED",
    "ERR_NAME_RESOLUTION_FAILED",
    "ERR_INVALID_URL",
    "ERR_UNKNOWN_URL_SCHEME",
    "ERR_DISALLOWED_URL_SCHEME",
    "ERR_BLOCKED_BY_CLIENT",
    "ERR_BLOCKED_BY_RESPONSE",
    "ERR_CERT_",
    "ERR_SSL_",
    "ERR_TOO_MANY_REDIRECTS",
    "ERR_UNSAFE_REDIRECT",
)


class NavigationResult(NamedTuple):
    """Outcome of a successful navigation.

    Attributes:
        url: Final URL after redirects.
        status: HTTP status of the main document, None if unknown.
    """

    url: str
    status: int | None


class ScriptEvaluationError(Exception):
    """Raised by ``BrowserSession.evaluate`` when the script cannot run."""

    pass


class BrowserSession(Protocol):
    """One isolated browser tab."""

    async def navigate(self, url: str, timeout: float) -> NavigationResult:
        """Load a URL.

        Raises:
            NavigationError: If the page cannot be loaded.
        """
        ...

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        """Evaluate a function expression in the page with one JSON argument.

        Raises:
            ScriptEvaluationError: If the script fails to compile or run.
        """
        ...

    async def content(self) -> str:
        """Return the current rendered HTML."""
        ...

    async def add_script(self, url: str, timeout: float) -> None:
        """Load an external script into the page."""
        ...

    async def block_network(self) -> None:
        """Abort every request the page makes from now on."""
        ...

    async def close(self) -> None:
        """Release the tab. Must be safe to call more than once."""
        ...


class BrowserDriver(Protocol):
    """Factory for browser sessions."""

    async def open_session(self, launch_options: LaunchOptions) -> BrowserSession:
        """Open a new isolated session.

        Raises:
            PoolExhaustionError: If no session can be opened.
        """
        ...

    async def close(self) -> None:
        """Shut down all browser processes."""
        ...


def classify_network_error(message: str) -> NavigationError:
    """Map a browser navigation error message to a NavigationError."""
    retryable = not any(code in message for code in PERMANENT_NETWORK_ERRORS)
    return NavigationError(message.splitlines()[0] if message else "Navigation failed", retryable=retryable)


async def _abort_request(route) -> None:
    await route.abort()


class PlaywrightSession:
    """BrowserSession backed by a Playwright page in its own context."""

    def __init__(self, context, page, release: Callable[[], None]):
        self._context = context
        self._page = page
        self._release = release
        self._closed = False

    async def navigate(self, url: str, timeout: float) -> NavigationResult:
        try:
            response = await self._page.goto(
                url, timeout=timeout * 1000, wait_until="load"
            )
        except PlaywrightTimeoutError as e:
            raise NavigationError(
                f"Navigation timed out after {timeout}s", retryable=True
            ) from e
        except PlaywrightError as e:
            raise classify_network_error(str(e)) from e

        status = response.status if response is not None else None
        return NavigationResult(url=self._page.url, status=status)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        try:
            return await self._page.evaluate(script, arg)
        except PlaywrightError as e:
            raise ScriptEvaluationError(str(e)) from e

    async def content(self) -> str:
        return await self._page.content()

    async def add_script(self, url: str, timeout: float) -> None:
        await asyncio.wait_for(self._page.add_script_tag(url=url), timeout=timeout)

    async def block_network(self) -> None:
        # Registered last, so it takes precedence over resource blocking
        await self._context.route("**/*", _abort_request)
        await self._context.set_offline(True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._context.close()
        except Exception as e:
            logfire.warn("Error closing browser context", error=str(e))
        finally:
            self._release()


class PlaywrightDriver:
    """Chromium driver with a global cap on concurrently open sessions."""

    def __init__(
        self,
        max_sessions: int | None = None,
        acquire_timeout: float | None = None,
    ):
        """Initialize the driver. Chromium is launched lazily.

        Args:
            max_sessions: Max open sessions across all runs.
            acquire_timeout: Max wait for a free session slot (seconds).
        """
        settings = get_settings()
        self._max_sessions = max_sessions or settings.browser_max_sessions
        self._acquire_timeout = acquire_timeout or settings.session_acquire_timeout_seconds
        self._slots = asyncio.Semaphore(self._max_sessions)
        self._playwright = None
        self._browsers: dict[tuple[bool, bool], Any] = {}
        self._launch_lock = asyncio.Lock()

    async def open_session(self, launch_options: LaunchOptions) -> PlaywrightSession:
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._acquire_timeout)
        except asyncio.TimeoutError as e:
            raise PoolExhaustionError(
                f"No browser session available within {self._acquire_timeout}s"
            ) from e

        try:
            browser = await self._browser_for(launch_options)
            context = await browser.new_context(
                ignore_https_errors=launch_options.ignore_ssl_errors,
                bypass_csp=launch_options.ignore_cors_and_csp,
            )
            blocked = self._blocked_resource_types(launch_options)
            if blocked:
                await context.route("**/*", self._make_router(blocked))
            page = await context.new_page()
        except PoolExhaustionError:
            self._slots.release()
            raise
        except Exception as e:
            self._slots.release()
            raise PoolExhaustionError(f"Could not open browser session: {e}") from e
        except BaseException:
            self._slots.release()
            raise

        return PlaywrightSession(context, page, release=self._slots.release)

    async def close(self) -> None:
        async with self._launch_lock:
            for browser in self._browsers.values():
                try:
                    await browser.close()
                except Exception as e:
                    logfire.warn("Error closing browser", error=str(e))
            self._browsers.clear()
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
        logfire.info("Browser driver closed")

    async def _browser_for(self, options: LaunchOptions):
        async with self._launch_lock:
            browser = self._browsers.get(options.profile)
            if browser is not None and browser.is_connected():
                return browser

            if self._playwright is None:
                self._playwright = await async_playwright().start()
                logfire.info("Playwright initialized")

            args = ["--disable-dev-shm-usage"]
            if options.ignore_cors_and_csp:
                args += [
                    "--disable-web-security",
                    "--disable-features=IsolateOrigins,site-per-process",
                ]
            browser = await self._playwright.chromium.launch(
                headless=options.headless, args=args
            )
            self._browsers[options.profile] = browser
            logfire.info(
                "Browser launched",
                headless=options.headless,
                ignore_cors_and_csp=options.ignore_cors_and_csp,
            )
            return browser

    @staticmethod
    def _blocked_resource_types(options: LaunchOptions) -> frozenset[str]:
        blocked: set[str] = set()
        if not options.download_media_files:
            blocked |= MEDIA_RESOURCE_TYPES
        if not options.download_css_files:
            blocked |= CSS_RESOURCE_TYPES
        return frozenset(blocked)

    @staticmethod
    def _make_router(blocked: frozenset[str]):
        async def _route(route):
            if route.request.resource_type in blocked:
                await route.abort()
            else:
                await route.continue_()

        return _route


class SessionPool:
    """Per-run access to browser sessions with guaranteed release."""

    def __init__(self, driver: BrowserDriver, launch_options: LaunchOptions):
        self._driver = driver
        self._launch_options = launch_options

    @asynccontextmanager
    async def session(self) -> AsyncIterator[BrowserSession]:
        """Acquire a session for the duration of the ``async with`` block.

        Raises:
            PoolExhaustionError: If the driver cannot provide a session.
        """
        try:
            session = await self._driver.open_session(self._launch_options)
        except PoolExhaustionError:
            raise
        except Exception as e:
            raise PoolExhaustionError(f"Could not open browser session: {e}") from e

        try:
            yield session
        finally:
            # Shielded so a cancelled worker still closes its tab.
            try:
                await asyncio.shield(session.close())
            except Exception as e:
                logfire.warn("Error releasing browser session", error=str(e))


# Global instance
_driver: BrowserDriver | None = None


def get_browser_driver() -> BrowserDriver:
    """Get the process-wide browser driver."""
    global _driver
    if _driver is None:
        _driver = PlaywrightDriver()
    return _driver


def reset_browser_driver() -> None:
    """Forget the process-wide browser driver (primarily for testing)."""
    global _driver
    _driver = None
