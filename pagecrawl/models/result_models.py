"""Models for crawl results: records, statistics, errors and the run log."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from pagecrawl.models.outcome_models import RecordValue


class RunStatus(str, Enum):
    """Scheduler lifecycle: idle -> running -> completed | aborted."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class PageError(BaseModel):
    """Terminal failure recorded against one page."""

    url: str
    kind: str = Field(..., description="e.g. navigation_error, timeout, malformed_result")
    message: str
    attempts: int = Field(..., ge=1)
    retryable: bool = False


class RunEvent(BaseModel):
    """One progress/log event emitted during a run."""

    timestamp: datetime
    level: str
    message: str
    fields: dict[str, Any] = Field(default_factory=dict)


class RunStatistics(BaseModel):
    """Run-wide counters reported with the result."""

    pages_visited: int = 0
    pages_failed: int = 0
    pages_queued: int = 0
    records_collected: int = 0
    records_dropped: int = 0
    urls_discovered: int = Field(0, description="Distinct URLs accepted into the frontier")
    log_events_dropped: int = Field(0, description="Oldest run log events evicted from the bounded log")
    retries: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: float = 0.0


class CrawlResult(BaseModel):
    """Everything returned to the caller when a run ends."""

    run_id: str
    status: RunStatus
    abort_reason: str | None = None
    records: list[dict[str, RecordValue]] = Field(default_factory=list)
    statistics: RunStatistics = Field(default_factory=RunStatistics)
    errors: list[PageError] = Field(default_factory=list)
    log: list[RunEvent] = Field(default_factory=list)
