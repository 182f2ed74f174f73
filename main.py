"""
Expensync - FastAPI Backend

Expense / SG&A approval workflow with freee synchronization.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health
"""
import time
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from expensync import __version__
from expensync.api import (
    admin_router,
    cron_router,
    freee_router,
    master_data_router,
    reports_router,
)
from expensync.core.database import get_db
from expensync.services.errors import ExpensyncError, status_for
from expensync.services.logging import log_error, log_request, logger

app = FastAPI(
    title="Expensync API",
    description="""
    Expensync API - expense and SG&A approval with freee synchronization.

    ## Requests
    Employees submit expense / SG&A requests with receipts; admins enrich,
    approve, hold, reject or revert them and push approved requests to freee.

    ## freee
    OAuth connection, master data cache, reconciliation of deleted deals and
    the ledger pull that feeds the PL / CF dashboard.

    ## Authentication
    `Authorization: Bearer <jwt>` issued by the identity provider.
    Scheduler endpoints under `/api/cron` use `Bearer $CRON_SECRET`.
    """,
    version=__version__,
)

app.include_router(reports_router)
app.include_router(freee_router)
app.include_router(master_data_router)
app.include_router(admin_router)
app.include_router(cron_router)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000
            log_request(
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=duration_ms,
            )
            return response
        except Exception as e:
            log_error("request_exception", str(e), {"path": request.url.path, "method": request.method})
            raise


app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(ExpensyncError)
async def expensync_exception_handler(request: Request, exc: ExpensyncError):
    """Handle all ExpensyncErrors with structured responses."""
    status_code = status_for(exc)
    log_error(exc.code.value, exc.message, {"path": request.url.path, **exc.context})
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed payloads are user-correctable: 400, not 422."""
    return JSONResponse(
        status_code=400,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request payload",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    error_id = uuid.uuid4().hex[:12]
    log_error(
        "unhandled_exception",
        str(exc),
        {"path": request.url.path, "method": request.method, "error_id": error_id},
        exception=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "error_id": error_id,
            "message": "An unexpected error occurred.",
        },
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
    """Initialize database on startup."""
    get_db().initialize()
    logger.info("Expensync %s started", __version__)


@app.get("/health", tags=["System"], summary="Health Check")
async def health():
    """No authentication required."""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
