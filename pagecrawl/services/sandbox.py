"""Extraction sandbox for operator-supplied page functions.

The page function source becomes the body of a strict-mode async function
whose parameters shadow the ambient browser globals (``window``,
``document``, ``fetch``, storage and friends). It receives one frozen context
object exposing only ``url``, ``log.info``/``log.error`` and, when injected,
``jQuery``. The wrapper catches everything the function throws and hands back
a plain JSON envelope, so only data crosses into the host.

Isolation comes from running each page in its own browser context, cut off
from the network by the page worker before the function runs, with a
host-enforced wall-clock timeout. Shadowing and the script guard only narrow
the surface; they are not the boundary.
"""

import asyncio
import math
from typing import Any, Iterable, NamedTuple

import logfire

from pagecrawl.constants import (
    MAX_PAGE_LOG_LINES,
    MAX_RECORD_FIELDS,
    MAX_RECORD_VALUE_CHARS,
)
from pagecrawl.models.outcome_models import ExtractedRecord, PageContext
from pagecrawl.services.browser_driver import BrowserSession, ScriptEvaluationError
from pagecrawl.services.errors import ExtractionError, ExtractionErrorKind
from pagecrawl.services.script_guard import ScriptGuard, get_script_guard

MAX_LOG_LINE_CHARS = 2000

# Globals shadowed inside the page function. ``eval`` and ``arguments`` cannot
# be parameter names in strict mode; the guard rejects eval instead.
SHADOWED_GLOBALS = (
    "window",
    "document",
    "globalThis",
    "self",
    "top",
    "parent",
    "opener",
    "frames",
    "fetch",
    "XMLHttpRequest",
    "WebSocket",
    "EventSource",
    "navigator",
    "location",
    "history",
    "localStorage",
    "sessionStorage",
    "indexedDB",
    "caches",
    "cookieStore",
    "Worker",
    "SharedWorker",
    "importScripts",
    "open",
    "postMessage",
)

_WRAPPER_TEMPLATE = """async (__ctx) => {
  "use strict";
  const __logs = [];
  const __format = (value) => {
    if (typeof value === "string") return value;
    try { return JSON.stringify(value); } catch (e) { return String(value); }
  };
  const __logger = (level) => (...args) => {
    if (__logs.length < %(max_logs)d) __logs.push([level, args.map(__format).join(" ")]);
  };
  const __jq = __ctx.useJQuery && typeof window.jQuery === "function" ? window.jQuery : undefined;
  const context = Object.freeze({
    url: __ctx.url,
    log: Object.freeze({ info: __logger("info"), error: __logger("error") }),
    jQuery: __jq,
  });
  const __pageFunction = async function (context, %(shadowed)s) {
%(source)s
  };
  try {
    const value = await __pageFunction.call(undefined, context);
    let kind = typeof value;
    if (value === null) kind = "null";
    else if (Array.isArray(value)) kind = "array";
    else if (kind === "object") {
      const proto = Object.getPrototypeOf(value);
      if (proto !== Object.prototype && proto !== null) kind = "instance";
    }
    return { ok: true, kind: kind, value: kind === "object" ? value : null, logs: __logs };
  } catch (err) {
    return {
      ok: false,
      name: (err && err.name) || "Error",
      message: String((err && err.message) || err),
      logs: __logs,
    };
  }
}"""


class SandboxResult(NamedTuple):
    """Outcome of running a page function.

    Attributes:
        record: Validated key/value pairs returned by the function, or None.
        error: Why no record was produced, or None.
        logs: ``(level, text)`` lines the function logged.
    """

    record: ExtractedRecord | None
    error: ExtractionError | None
    logs: list[tuple[str, str]]


def build_wrapper(source: str) -> str:
    """Embed a page function body into the sandbox wrapper."""
    return _WRAPPER_TEMPLATE % {
        "max_logs": MAX_PAGE_LOG_LINES,
        "shadowed": ", ".join(SHADOWED_GLOBALS),
        "source": source,
    }


def validate_record(value: Any) -> ExtractedRecord:
    """Check that a page function result is a flat object of JSON primitives.

    Raises:
        ExtractionError: ``malformed_result`` describing the first problem.
    """
    if not isinstance(value, dict):
        raise ExtractionError(
            ExtractionErrorKind.MALFORMED_RESULT,
            f"Page function must return an object, got {type(value).__name__}",
        )
    if len(value) > MAX_RECORD_FIELDS:
        raise ExtractionError(
            ExtractionErrorKind.MALFORMED_RESULT,
            f"Record has {len(value)} fields (max {MAX_RECORD_FIELDS})",
        )

    record: ExtractedRecord = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED_RESULT, f"Record key {key!r} is not a string"
            )
        if item is not None and not isinstance(item, (str, int, float, bool)):
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED_RESULT,
                f"Value of '{key}' is not a string, number, boolean or null",
            )
        if isinstance(item, float) and not math.isfinite(item):
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED_RESULT,
                f"Value of '{key}' is not a finite number",
            )
        if isinstance(item, str) and len(item) > MAX_RECORD_VALUE_CHARS:
            raise ExtractionError(
                ExtractionErrorKind.MALFORMED_RESULT,
                f"Value of '{key}' exceeds {MAX_RECORD_VALUE_CHARS} characters",
            )
        record[key] = item
    return record


def check_required_fields(record: ExtractedRecord, required: Iterable[str]) -> None:
    """Raise ``malformed_result`` if any required key is missing from the record."""
    missing = [name for name in required if name not in record]
    if missing:
        raise ExtractionError(
            ExtractionErrorKind.MALFORMED_RESULT,
            f"Record is missing required fields: {', '.join(missing)}",
        )


def _clean_logs(raw: Any) -> list[tuple[str, str]]:
    if not isinstance(raw, list):
        return []
    lines: list[tuple[str, str]] = []
    for item in raw[:MAX_PAGE_LOG_LINES]:
        if isinstance(item, (list, tuple)) and len(item) == 2:
            level = "error" if item[0] == "error" else "info"
            lines.append((level, str(item[1])[:MAX_LOG_LINE_CHARS]))
    return lines


class ExtractionSandbox:
    """Run page functions in a browser session under a host-enforced timeout."""

    def __init__(self, guard: ScriptGuard | None = None):
        self._guard = guard or get_script_guard()

    async def execute(
        self,
        source: str,
        page_context: PageContext,
        session: BrowserSession,
        timeout: float,
    ) -> SandboxResult:
        """Execute a page function against the page loaded in ``session``.

        Never raises for page function failures; they are returned as
        ``SandboxResult.error``. After a timeout the session must be discarded.

        Args:
            source: Page function body.
            page_context: Values exposed to the function.
            session: Session with the target page already loaded.
            timeout: Wall-clock limit in seconds.

        Returns:
            SandboxResult with either a record or an error.
        """
        verdict = self._guard.check(source)
        if not verdict.is_allowed:
            return SandboxResult(
                None,
                ExtractionError(ExtractionErrorKind.REJECTED_SOURCE, verdict.detail or "Rejected"),
                [],
            )

        try:
            envelope = await asyncio.wait_for(
                session.evaluate(build_wrapper(source), page_context.to_script_arg()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logfire.warn("Page function timed out", url=page_context.url, timeout=timeout)
            return SandboxResult(
                None,
                ExtractionError(
                    ExtractionErrorKind.TIMEOUT,
                    f"Page function did not finish within {timeout}s",
                ),
                [],
            )
        except ScriptEvaluationError as e:
            message = str(e).splitlines()[0] if str(e) else "Evaluation failed"
            kind = (
                ExtractionErrorKind.SYNTAX_ERROR
                if "SyntaxError" in message
                else ExtractionErrorKind.RUNTIME_ERROR
            )
            return SandboxResult(None, ExtractionError(kind, message), [])

        return self._unpack(envelope)

    @staticmethod
    def _unpack(envelope: Any) -> SandboxResult:
        if not isinstance(envelope, dict) or "ok" not in envelope:
            return SandboxResult(
                None,
                ExtractionError(
                    ExtractionErrorKind.MALFORMED_RESULT,
                    "Sandbox returned an unexpected envelope",
                ),
                [],
            )

        logs = _clean_logs(envelope.get("logs"))

        if not envelope["ok"]:
            name = envelope.get("name") or "Error"
            message = envelope.get("message") or ""
            return SandboxResult(
                None,
                ExtractionError(ExtractionErrorKind.RUNTIME_ERROR, f"{name}: {message}"),
                logs,
            )

        kind = envelope.get("kind")
        if kind != "object":
            return SandboxResult(
                None,
                ExtractionError(
                    ExtractionErrorKind.MALFORMED_RESULT,
                    f"Page function must return a plain object, got {kind}",
                ),
                logs,
            )

        try:
            record = validate_record(envelope.get("value"))
        except ExtractionError as e:
            return SandboxResult(None, e, logs)
        return SandboxResult(record, None, logs)
