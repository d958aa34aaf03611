"""
JobLedger - FastAPI Backend

Invoice lifecycle and allocation consistency for construction job costing.

Run Instructions:
-----------------
1. Install:
   pip install -e .            (add ".[postgres]" for a Postgres store)

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health

4. Reconcile a job (dry run):
   curl -X POST "http://localhost:8000/api/reconciliation/jobs/JOB-1"
"""
import time
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from jobledger.api import (
    draws_router,
    funding_sources_router,
    invoices_router,
    locks_router,
    reconciliation_router,
    undo_router,
)
from jobledger.core.database import get_db
from jobledger.services.errors import STATUS_MAP, JobLedgerError
from jobledger.services.logging import log_error, log_request, logger

VERSION = "1.0.0"

app = FastAPI(
    title="JobLedger API",
    description="""
    JobLedger API - Invoice lifecycle and allocation consistency

    ## Invoices
    Intake, edit with optimistic versioning, status transitions with
    requirement checks, split across jobs, close-out.

    ## Allocations
    Cost-code allocations that never exceed the invoice, linked to purchase
    orders and change orders with remaining-capacity checks.

    ## Draws
    Approved invoices are billed through draws; finalizing a draw marks its
    invoices paid.

    ## Reconciliation
    Recomputes derived totals and reports (or corrects) drift.
    """,
    version=VERSION,
)

app.include_router(invoices_router)
app.include_router(locks_router)
app.include_router(draws_router)
app.include_router(funding_sources_router)
app.include_router(reconciliation_router)
app.include_router(undo_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        user = request.headers.get("X-User")

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000
            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                user=user,
            )
            return response
        except Exception as e:
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(JobLedgerError)
async def jobledger_exception_handler(request: Request, exc: JobLedgerError):
    """Handle all JobLedgerErrors with structured responses."""
    status_code = STATUS_MAP.get(exc.code, 500)
    if status_code >= 500:
        log_error(exc.code.value, str(exc), {"path": request.url.path, **exc.context})
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.code.value, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with a structured response."""
    log_error(
        "unhandled_exception",
        str(exc),
        {"path": request.url.path, "method": request.method, "query_params": str(request.query_params)},
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again.",
        },
    )


# Enable CORS for all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup."""
    get_db().initialize()
    logger.info("JobLedger API started")


@app.get("/health", tags=["System"], summary="Health Check")
def health():
    db = get_db()
    db_ok = True
    try:
        db.initialize()
    except db.driver_errors() as exc:
        log_error("health_check", str(exc))
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {"database": "ok" if db_ok else "unavailable"},
    }
