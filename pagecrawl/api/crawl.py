"""Crawl endpoints.

``POST /start-crawl`` runs a crawl to completion and returns its result:

- 200 with the CrawlResult when the run completed
- 503 with the (partial) CrawlResult when the run was aborted
- 400 with the invalid fields when the request fails validation
- 429 when the client exceeded its crawl start rate limit

The run id is the request's correlation id, so a client can set
``X-Correlation-ID`` and abort the run with ``POST /crawls/{run_id}/abort``.
"""

import logging
import uuid

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from pagecrawl.config import get_settings
from pagecrawl.middleware.rate_limiter import get_rate_limiter
from pagecrawl.models.result_models import RunStatus
from pagecrawl.services.browser_driver import get_browser_driver
from pagecrawl.services.errors import ConfigValidationError, FieldError
from pagecrawl.services.run_controller import CrawlRunController
from pagecrawl.services.run_registry import RegistryClosedError, get_run_registry

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/start-crawl")
async def start_crawl(request: Request):
    """Validate a crawl request, run it and return the result."""
    client_id = request.client.host if request.client else "unknown"
    try:
        payload = await request.json()
    except ValueError:
        error = ConfigValidationError([FieldError("request", "body must be valid JSON")])
        return JSONResponse(status_code=400, content=error.to_dict())

    run_id = getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
    controller = CrawlRunController(
        get_browser_driver(), settings=get_settings(), run_id=run_id
    )

    try:
        crawl_request = controller.validate_request(payload)
    except ConfigValidationError as e:
        logger.info("Rejected crawl request %s: %s", run_id, e)
        return JSONResponse(status_code=400, content=e.to_dict())

    # Only valid requests count against the start limit
    limiter = get_rate_limiter()
    if not limiter.check_rate_limit(client_id):
        retry_after = limiter.get_retry_after(client_id)
        return JSONResponse(
            status_code=429,
            content={"error": "rate_limited", "retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )

    registry = get_run_registry()
    try:
        registry.register(controller)
    except RegistryClosedError:
        return JSONResponse(status_code=503, content={"error": "shutting_down"})
    except ValueError:
        return JSONResponse(
            status_code=409, content={"error": "run_id_in_use", "run_id": run_id}
        )

    logger.info("Starting crawl %s for %s", run_id, client_id)
    try:
        result = await controller.run(crawl_request)
    finally:
        registry.unregister(run_id)

    status_code = 200 if result.status == RunStatus.COMPLETED else 503
    logger.info(
        "Crawl %s finished: %s, %d records",
        run_id,
        result.status.value,
        len(result.records),
    )
    return JSONResponse(
        status_code=status_code,
        content=result.model_dump(mode="json"),
        headers={"X-RateLimit-Remaining": str(limiter.get_remaining_requests(client_id))},
    )


@router.post("/crawls/{run_id}/abort")
async def abort_crawl(run_id: str):
    """Signal a running crawl to stop. Its start request returns the partial result."""
    if not get_run_registry().abort(run_id, "Aborted by operator"):
        return JSONResponse(status_code=404, content={"error": "run_not_found", "run_id": run_id})
    return JSONResponse(status_code=202, content={"status": "aborting", "run_id": run_id})
