from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

# Import database components
from app.database.database import engine, Base

# Import middleware
from app.common.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from app.common.errors import AppError, RateLimitError, ErrorCode, code_for_status
from app.common.responses import error_body

# Import routers
from app.modules.auth.router import auth_router
from app.modules.organizations.router import router as organizations_router
from app.modules.api_keys.router import router as api_keys_router
from app.modules.tabs.router import router as tabs_router, corporate_router as corporate_tabs_router
from app.modules.line_items.router import router as line_items_router
from app.modules.billing_groups.router import router as billing_groups_router
from app.modules.payments.router import router as payments_router, processors_router, public_payments_router
from app.modules.payments.webhooks_router import router as webhooks_router
from app.modules.invoices.router import router as invoices_router, public_router as public_invoices_router

# Import models for table creation
import app.modules.auth.models
import app.modules.organizations.models
import app.modules.api_keys.models
import app.modules.tabs.models
import app.modules.line_items.models
import app.modules.billing_groups.models
import app.modules.payments.models
import app.modules.invoices.models

from app.core.config import settings

API_PREFIX = "/api/v1"

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Tab API",
    description="Multi-tenant payment collection and invoicing API built with FastAPI and PostgreSQL",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ===== Exception handlers =====

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    headers = None
    if isinstance(exc, RateLimitError) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.code.value} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code.value, exc.message, exc.details),
        headers=headers
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"path": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_body(ErrorCode.VALIDATION_ERROR.value, "Invalid request data", details)
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code_for_status(exc.status_code).value, message),
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    message = str(exc) if settings.DEBUG else "An unexpected error occurred"
    return JSONResponse(
        status_code=500,
        content=error_body(ErrorCode.INTERNAL_ERROR.value, message)
    )


# Include routers
app.include_router(auth_router, prefix=API_PREFIX)
app.include_router(organizations_router, prefix=API_PREFIX)
app.include_router(api_keys_router, prefix=API_PREFIX)
app.include_router(tabs_router, prefix=API_PREFIX)
app.include_router(corporate_tabs_router, prefix=API_PREFIX)
app.include_router(line_items_router, prefix=API_PREFIX)
app.include_router(billing_groups_router, prefix=API_PREFIX)
app.include_router(payments_router, prefix=API_PREFIX)
app.include_router(processors_router, prefix=API_PREFIX)
app.include_router(invoices_router, prefix=API_PREFIX)
app.include_router(public_invoices_router, prefix=API_PREFIX)
app.include_router(public_payments_router, prefix=API_PREFIX)
app.include_router(webhooks_router, prefix=API_PREFIX)

# Create database tables (only for development - use migrations in production)
if settings.ENVIRONMENT == "development":
    Base.metadata.create_all(bind=engine)


@app.get("/")
async def read_root():
    return {
        "message": "Tab API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}
