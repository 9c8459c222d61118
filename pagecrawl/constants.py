"""Application-wide constants.

This module centralizes all magic numbers and configuration constants
to ensure a single source of truth and easier maintenance.

Request defaults mirror the crawl configuration form the service was
built to back (see CrawlSettings in the operator UI).
"""

# =============================================================================
# Crawl Request Defaults
# =============================================================================

# CSS selector used to discover links when the request does not set one
DEFAULT_LINK_SELECTOR = "a[href]"

# Number of pages processed concurrently within a single run
DEFAULT_MAX_CONCURRENCY = 5

# Upper bound accepted for maxConcurrency in a request
MAX_ALLOWED_CONCURRENCY = 50

# Maximum number of pages visited per run
DEFAULT_MAX_PAGES_PER_RUN = 100

# Maximum number of records collected per run
DEFAULT_MAX_RESULT_RECORDS = 1000

# Maximum link depth followed from the seed URLs (seeds are depth 0)
DEFAULT_MAX_CRAWLING_DEPTH = 3

# Number of retries after the first failed attempt of a page
DEFAULT_MAX_PAGE_RETRIES = 3

# =============================================================================
# Timeout Configuration
# =============================================================================

# Timeout for browser navigation of a single page (seconds)
DEFAULT_PAGE_LOAD_TIMEOUT_SECONDS = 60.0

# Timeout for the operator page function (seconds)
DEFAULT_PAGE_FUNCTION_TIMEOUT_SECONDS = 60.0

# Timeout for injecting the jQuery compatibility layer (seconds)
JQUERY_INJECTION_TIMEOUT_SECONDS = 10.0

# Extra time granted to the driver before the host cancels navigation (seconds)
NAVIGATION_GRACE_SECONDS = 5.0

# Timeout for reading the rendered HTML of a page (seconds)
CONTENT_SNAPSHOT_TIMEOUT_SECONDS = 10.0

# Time allowed for in-flight runs to wind down on shutdown (seconds)
GRACEFUL_SHUTDOWN_TIMEOUT_SECONDS = 30.0

# How long a worker waits for a browser session before giving up (seconds)
SESSION_ACQUIRE_TIMEOUT_SECONDS = 30.0

# =============================================================================
# Retry Policy
# =============================================================================

# Delay before the first retry of a failed page (seconds)
RETRY_BASE_DELAY_SECONDS = 1.0

# Exponential growth factor applied per retry
RETRY_BACKOFF_MULTIPLIER = 2.0

# Ceiling on a single retry delay (seconds)
RETRY_MAX_DELAY_SECONDS = 30.0

# =============================================================================
# Browser
# =============================================================================

# Global cap on concurrently open browser sessions across all runs
BROWSER_MAX_SESSIONS = 20

# Script loaded when a request enables the jQuery compatibility layer
JQUERY_SCRIPT_URL = "https://code.jquery.com/jquery-3.7.1.min.js"

# Resource types blocked unless the request allows downloading them
MEDIA_RESOURCE_TYPES = frozenset(("image", "media", "font"))
CSS_RESOURCE_TYPES = frozenset(("stylesheet",))

# =============================================================================
# Extraction Limits
# =============================================================================

# Maximum page function source length (chars)
MAX_PAGE_FUNCTION_CHARS = 100_000

# Maximum number of fields in a single extracted record
MAX_RECORD_FIELDS = 200

# Maximum length of a single string value in an extracted record (chars)
MAX_RECORD_VALUE_CHARS = 100_000

# Maximum page function log lines forwarded per page
MAX_PAGE_LOG_LINES = 50

# =============================================================================
# Run Log
# =============================================================================

# Maximum number of events kept in the log returned with a crawl result
MAX_RUN_LOG_EVENTS = 1000

# =============================================================================
# Rate Limiting
# =============================================================================

# Maximum crawl starts per client per window
MAX_CRAWL_STARTS_PER_WINDOW = 10

# Rate limit window in seconds
RATE_LIMIT_WINDOW_SECONDS = 60

# =============================================================================
# Service
# =============================================================================

SERVICE_NAME = "pagecrawl"
SERVICE_VERSION = "0.1.0"
