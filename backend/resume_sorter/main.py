"""
FastAPI Application — Entry Point

Resume Sorter intake service.

Architecture:
  - Webhook routes accept documents from three inbound shapes and run each
    through the IntakePipeline in-request
  - Tenant directory and daily ledgers live in Google Sheets
  - Documents are stored in Cloudflare R2; audit rows and rubrics in Postgres
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. Request ID injection — X-Request-ID header on every response
  2. Request logging — one structured line per request with latency
  3. CORS

Startup never hard-fails on the database: the audit sink and rubric store
are best-effort, and intake must keep counting during a Postgres outage.
/ready reports the database state for the load balancer instead.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from resume_sorter.api.dependencies import close_clients
from resume_sorter.api.v1.customers import admin_router, debug_router
from resume_sorter.api.v1.customers import router as customers_router
from resume_sorter.api.v1.webhooks import router as webhooks_router
from resume_sorter.core.config import settings
from resume_sorter.db.session import check_db_health, create_tables
from resume_sorter.schemas.intake import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting Resume Sorter | env=%s tz=%s bucket=%s model=%s",
        settings.app_env, settings.timezone, settings.cloudflare_r2_bucket, settings.openai_model,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.warning("Database unavailable at startup (non-fatal): %s", db_health)
    else:
        logger.info("Database: connected")
        try:
            await create_tables()
        except Exception as exc:
            logger.warning("Table bootstrap failed (non-fatal): %s", exc)

    if not settings.master_customers_sheet_id:
        logger.warning("MASTER_CUSTOMERS_SHEET_ID not set; every document will be unresolved")
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set; resumes will be counted but not scored")
    if not settings.resend_api_key:
        logger.warning("RESEND_API_KEY not set; notifications will fail")

    yield

    logger.info("Shutting down Resume Sorter")
    await close_clients()
    from resume_sorter.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Resume Sorter Intake",
        description=(
            "Multi-tenant resume intake: classifies inbound documents, scores resumes, "
            "and keeps an idempotent daily tally per customer."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID", "X-Admin-Secret", "X-Inbound-Secret"],
        expose_headers=["X-Request-ID"],
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Dependencies raise HTTPException with a pre-built ErrorResponse as detail."""
        if isinstance(exc.detail, dict):
            content = exc.detail
        else:
            content = ErrorResponse(
                error_code=f"http_{exc.status_code}",
                message=str(exc.detail),
                request_id=request.headers.get("X-Request-ID"),
            ).model_dump(mode="json")
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(webhooks_router)
    app.include_router(customers_router)
    app.include_router(admin_router)
    if settings.debug_routes_enabled:
        app.include_router(debug_router)
        logger.warning("Debug routes enabled: /debug/customers is exposed")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth — used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "resume-sorter-intake"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness() -> JSONResponse:
        db_status = await check_db_health()
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "resume_sorter.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
