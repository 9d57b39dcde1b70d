from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from budgetflow.config import settings
from budgetflow.database import RETRYABLE_SQLSTATES, init_db, close_db, get_db
from budgetflow.logging_config import setup_logging
from budgetflow.middleware.correlation import CorrelationIdMiddleware
from budgetflow.services.email_service import close_http_client

# Import models so they are registered with Base.metadata
import budgetflow.models  # noqa: F401

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_budgetflow", env=settings.ENVIRONMENT)
    await init_db()
    yield
    await close_http_client()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Global exception handlers: every error leaves as
# {"error": {"code": "...", "message": "..."}}
# ---------------------------------------------------------------------------

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": exc.errors(),
            }
        },
    )


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError) -> JSONResponse:
    # Raised when the optimistic version check fails at commit time
    logger.warning("optimistic_version_conflict", error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "error": {
                "code": "CONCURRENT_UPDATE",
                "message": "The record was modified concurrently, retry the request",
                "retryable": True,
            }
        },
    )


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("integrity_conflict", error=str(exc.orig))
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "error": {
                "code": "CONFLICT",
                "message": "The request conflicts with existing data",
            }
        },
    )


@app.exception_handler(DBAPIError)
async def dbapi_error_handler(request: Request, exc: DBAPIError) -> JSONResponse:
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        logger.warning("row_lock_contention", path=request.url.path, sqlstate=sqlstate)
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "error": {
                    "code": "CONCURRENT_UPDATE",
                    "message": "The record is locked by another request, retry the request",
                    "retryable": True,
                }
            },
        )
    logger.error("database_error", path=request.url.path, error=str(exc.orig))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"code": "DATABASE_ERROR", "message": "Database error"}},
    )


app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
)


@app.get("/health", tags=["System"])
async def health(response: Response, db: AsyncSession = Depends(get_db)):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}

    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["db"] = "ok"
    except Exception as e:
        logger.error("health_check_db_failed", error=str(e))
        health_status["checks"]["db"] = "error"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_status


# --- Routers ---
from budgetflow.routes.auth import router as auth_router  # noqa: E402
from budgetflow.routes.budget_codes import router as budget_codes_router  # noqa: E402
from budgetflow.routes.purchase_requisitions import router as pr_router  # noqa: E402
from budgetflow.routes.project_plans import router as project_plans_router  # noqa: E402
from budgetflow.routes.approvals import router as approvals_router  # noqa: E402
from budgetflow.routes.budget_transfers import router as budget_transfers_router  # noqa: E402
from budgetflow.routes.audit_logs import router as audit_logs_router  # noqa: E402
from budgetflow.jobs.scheduled import router as jobs_router  # noqa: E402

app.include_router(auth_router, prefix="/auth", tags=["Auth"])
app.include_router(budget_codes_router, prefix="/api/v1/budget-codes", tags=["Budget Codes"])
app.include_router(pr_router, prefix="/api/v1/purchase-requisitions", tags=["Purchase Requisitions"])
app.include_router(project_plans_router, prefix="/api/v1/project-plans", tags=["Project Plans"])
app.include_router(budget_transfers_router, prefix="/api/v1/budget-transfers", tags=["Budget Transfers"])
app.include_router(approvals_router, prefix="/api/v1/approvals", tags=["Approvals"])
app.include_router(audit_logs_router, prefix="/api/v1/audit-logs", tags=["Audit Logs"])
app.include_router(jobs_router, prefix="/internal/jobs", tags=["Internal Jobs"])
