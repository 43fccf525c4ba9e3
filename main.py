"""
InboxGuard - FastAPI Backend

Inbound triage for email and call queues: per-tenant guardrails, sync
scheduling with backoff, and safe approve/skip/auto-send actions.

Run Instructions:
-----------------
1. Install:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health

4. List the email queue for a tenant:
   curl "http://localhost:8000/api/triage/org_1/email/items?view=needs_review"
"""
import time

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from inboxguard.adapters.registry import registry as adapter_registry
from inboxguard.api import triage_router
from inboxguard.services.errors import GENERIC_ERROR_MESSAGE, InboxGuardError, to_http_exception
from inboxguard.services.logging import log_error, log_request, logger
from inboxguard.services.metrics import get_metrics, record_error, record_request
from inboxguard.services.triage_engine import get_engine_registry

app = FastAPI(
    title="InboxGuard API",
    description="""
    InboxGuard API - Inbound Triage & Guarded Auto-Send

    ## Triage
    - Unified item list per tenant and channel (email, calls)
    - Eligibility annotation: auto-send eligible, needs review, blocked
    - Views, sorting, cursor paging and item detail

    ## Guardrails
    - Per-tenant settings: categories, confidence floor, business hours,
      daily send cap, first-N approval runway, automation pause

    ## Sync
    - Background polling with exponential backoff and staleness fast path
    - Manual force sync
    """,
    version="1.0.0",
)

app.include_router(triage_router)


def _tenant_from_path(path: str):
    parts = path.strip("/").split("/")
    if len(parts) >= 3 and parts[:2] == ["api", "triage"]:
        return parts[2]
    return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and record metrics."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        tenant_id = _tenant_from_path(request.url.path)

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                tenant_id=tenant_id,
            )
            record_request(request.method, request.url.path, response.status_code)

            if response.status_code >= 400:
                record_error(f"http_{response.status_code}")

            return response
        except Exception as e:
            record_error("exception")
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(InboxGuardError)
async def inboxguard_exception_handler(request: Request, exc: InboxGuardError):
    """Handle InboxGuardErrors that escape a route with structured responses."""
    log_error(exc.code.value, str(exc), exc.context)
    http_exc = to_http_exception(exc)
    return JSONResponse(status_code=http_exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_error(
        "unhandled_exception",
        f"{request.method} {request.url.path} failed",
        {"path": request.url.path, "method": request.method},
        exception=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": GENERIC_ERROR_MESSAGE},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    logger.info(f"InboxGuard started (channels: {', '.join(adapter_registry.list_channels())})")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop every sync scheduler and cancel outstanding fetches."""
    try:
        await get_engine_registry().close_all()
    except Exception as e:
        logger.warning(f"Engine shutdown failed: {e}")


@app.get(
    "/health",
    tags=["System"],
    summary="Health Check",
    description="Check API health and per-engine sync state",
)
async def health():
    """
    Health check endpoint.

    Reports one entry per running triage engine with its sync indicator.
    """
    engines = [
        {
            "tenant_id": engine.tenant_id,
            "channel": engine.channel.value,
            "indicator": engine.sync_status()["indicator"],
        }
        for engine in get_engine_registry().list_engines()
    ]
    return {
        "status": "healthy",
        "version": "v1.0.0",
        "channels": adapter_registry.list_channels(),
        "engines": engines,
    }


@app.get(
    "/metrics",
    tags=["System"],
    summary="Get Metrics",
    description="Sync, action, request and error counters",
)
async def metrics_endpoint():
    try:
        return get_metrics()
    except Exception as e:
        log_error("metrics_error", str(e))
        raise HTTPException(status_code=500, detail="Failed to get metrics")
