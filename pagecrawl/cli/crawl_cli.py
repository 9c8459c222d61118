"""Typer-based crawl CLI.

Commands:
- ``serve``: run the HTTP API with uvicorn
- ``run CONFIG``: crawl locally with a Playwright browser
- ``submit CONFIG``: POST the crawl to a running server
"""

import os

os.environ.setdefault("LOGFIRE_IGNORE_NO_CONFIG", "1")

from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path.cwd() / ".env")
load_dotenv(Path.cwd() / ".env.local")

import asyncio
import csv
import json
from typing import Any, Optional

import httpx
import typer

from pagecrawl.config import get_settings
from pagecrawl.services.browser_driver import PlaywrightDriver
from pagecrawl.services.errors import ConfigValidationError
from pagecrawl.services.run_controller import CrawlRunController

app = typer.Typer(help="Crawl websites and extract one record per page.")

FORMATS = ("json", "csv")

# Exit codes
EXIT_ABORTED = 1
EXIT_INVALID = 2


def _load_config(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        typer.echo(f"✗ Cannot read {path}: {e}", err=True)
        raise typer.Exit(EXIT_INVALID)
    except json.JSONDecodeError as e:
        typer.echo(f"✗ {path} is not valid JSON: {e}", err=True)
        raise typer.Exit(EXIT_INVALID)
    if not isinstance(payload, dict):
        typer.echo(f"✗ {path} must contain a JSON object", err=True)
        raise typer.Exit(EXIT_INVALID)
    return payload


def write_records(records: list[dict[str, Any]], path: Path, fmt: str) -> None:
    """Write records as a JSON array or as CSV with the union of all keys."""
    if fmt == "csv":
        columns: dict[str, None] = {}
        for record in records:
            columns.update(dict.fromkeys(record))
        with path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=list(columns))
            writer.writeheader()
            writer.writerows(records)
    else:
        path.write_text(json.dumps(records, indent=2, ensure_ascii=False), encoding="utf-8")


def _print_invalid(fields: list[dict[str, str]]) -> None:
    typer.echo("✗ Invalid crawl configuration:", err=True)
    for item in fields:
        typer.echo(f"  {item['field']}: {item['message']}", err=True)


def _report(result: dict[str, Any], output: Path | None, fmt: str) -> None:
    stats = result.get("statistics", {})
    records = result.get("records", [])
    completed = result.get("status") == "completed"

    color = typer.colors.GREEN if completed else typer.colors.YELLOW
    typer.echo(typer.style(f"Run {result.get('run_id')}: {result.get('status')}", fg=color))
    if result.get("abort_reason"):
        typer.echo(f"  Reason: {result['abort_reason']}")
    typer.echo(
        f"  Pages visited: {stats.get('pages_visited', 0)}, "
        f"failed: {stats.get('pages_failed', 0)}, "
        f"records: {len(records)}, retries: {stats.get('retries', 0)}"
    )
    for error in result.get("errors", [])[:10]:
        typer.echo(f"  ✗ {error['url']} [{error['kind']}] {error['message']}")

    if output is not None:
        write_records(records, output, fmt)
        typer.echo(f"✓ Wrote {len(records)} records to {output}")
    else:
        typer.echo(json.dumps(records, indent=2, ensure_ascii=False))


async def _crawl_locally(payload: dict[str, Any]) -> dict[str, Any]:
    driver = PlaywrightDriver()
    try:
        controller = CrawlRunController(driver, settings=get_settings())
        result = await controller.run(payload)
        return result.model_dump(mode="json")
    finally:
        await driver.close()


def _check_format(fmt: str) -> str:
    fmt = fmt.lower()
    if fmt not in FORMATS:
        raise typer.BadParameter(f"must be one of: {', '.join(FORMATS)}")
    return fmt


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("pagecrawl.main:app", host=host, port=port, reload=reload)


@app.command()
def run(
    config: Path = typer.Argument(..., help="Crawl request JSON file"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write records here"),
    fmt: str = typer.Option("json", "--format", "-f", callback=_check_format, help="json or csv"),
):
    """Crawl locally with a headless browser."""
    payload = _load_config(config)
    try:
        result = asyncio.run(_crawl_locally(payload))
    except ConfigValidationError as e:
        _print_invalid(e.to_dict()["fields"])
        raise typer.Exit(EXIT_INVALID)

    _report(result, output, fmt)
    if result["status"] != "completed":
        raise typer.Exit(EXIT_ABORTED)


@app.command()
def submit(
    config: Path = typer.Argument(..., help="Crawl request JSON file"),
    server: str = typer.Option("http://localhost:8000", help="pagecrawl server URL"),
    run_id: Optional[str] = typer.Option(None, "--run-id", help="Run id (X-Correlation-ID)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write records here"),
    fmt: str = typer.Option("json", "--format", "-f", callback=_check_format, help="json or csv"),
):
    """Submit the crawl to a running server and wait for the result."""
    payload = _load_config(config)
    headers = {"X-Correlation-ID": run_id} if run_id else {}

    try:
        response = httpx.post(
            f"{server.rstrip('/')}/start-crawl",
            json=payload,
            headers=headers,
            timeout=None,
        )
    except httpx.HTTPError as e:
        typer.echo(f"✗ Could not reach {server}: {e}", err=True)
        raise typer.Exit(EXIT_ABORTED)

    if response.status_code == 400:
        _print_invalid(response.json().get("fields", []))
        raise typer.Exit(EXIT_INVALID)
    if response.status_code == 429:
        typer.echo("✗ Rate limited by server, try again later", err=True)
        raise typer.Exit(EXIT_ABORTED)
    if response.status_code not in (200, 503):
        typer.echo(f"✗ Server returned HTTP {response.status_code}", err=True)
        raise typer.Exit(EXIT_ABORTED)

    try:
        result = response.json()
    except ValueError:
        result = None
    if not isinstance(result, dict) or "status" not in result:
        # e.g. 503 {"error": "shutting_down"}, which carries no crawl result
        error = result.get("error") if isinstance(result, dict) else None
        typer.echo(
            f"✗ Server error (HTTP {response.status_code}): {error or response.text[:200]}",
            err=True,
        )
        raise typer.Exit(EXIT_ABORTED)

    _report(result, output, fmt)
    if result["status"] != "completed":
        raise typer.Exit(EXIT_ABORTED)


if __name__ == "__main__":
    app()
