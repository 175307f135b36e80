import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

# Import all models to ensure they're registered with SQLAlchemy Base
from . import models  # noqa: F401
from .config import BOOKING_SCHEDULER_ENABLED, CORS_ORIGINS, IS_PRODUCTION
from .database import Base, engine, utcnow
from .domain.balances.service import InsufficientBalanceError
from .domain.bookings.router import router as bookings_router
from .domain.credits.router import router as credits_router
from .domain.payments.router import router as packages_router
from .jobs.booking_scheduler import start_scheduler
from .rate_limiter import get_redis_client
from .routes.asaas_webhooks import router as asaas_webhooks_router
from .routes.audit_logs import router as audit_logs_router
from .routes.auth import router as auth_router
from .routes.checkins import router as checkins_router
from .routes.franchises import public_router as academies_router
from .routes.franchises import router as franchises_router
from .routes.franchisor_policies import router as policies_router
from .routes.notifications import router as notifications_router
from .routes.users import router as users_router
from .security_headers import SecurityHeadersMiddleware

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

LOCAL_ORIGINS = ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info("Database tables ready")

    if get_redis_client() is None:
        logger.warning("⚠️ Redis unavailable - cache and rate limiting run in memory")

    scheduler_task = None
    if BOOKING_SCHEDULER_ENABLED:
        scheduler_task = start_scheduler()
        logger.info("🔄 In-process booking scheduler started")

    yield

    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            logger.info("Booking scheduler stopped")
    logger.info("Application shutting down...")


app = FastAPI(title="Meu Personal API", version="1.0.0", lifespan=lifespan)


# ============================================================================
# ERROR HANDLERS
# ============================================================================


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """{"error", "code"} details become the response body itself"""
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": exc.detail, "code": f"HTTP_{exc.status_code}"}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg"),
            "code": error.get("type"),
        }
        for error in exc.errors()
    ]
    logger.warning(f"Validation error for {request.url.path}: {details}")
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "code": "VALIDATION_ERROR", "details": details},
    )


@app.exception_handler(InsufficientBalanceError)
async def insufficient_balance_handler(request: Request, exc: InsufficientBalanceError):
    return JSONResponse(
        status_code=400,
        content={
            "error": exc.message,
            "code": "INSUFFICIENT_BALANCE",
            "available": exc.available,
            "requested": exc.requested,
        },
    )


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(f"⚠️ Integrity error on {request.method} {request.url.path}: {exc.orig}")
    return JSONResponse(status_code=409, content={"error": "Registro duplicado", "code": "DUPLICATE_ENTRY"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"❌ {request.method} {request.url.path} - Unhandled error: {exc}", exc_info=exc)
    message = "Erro interno do servidor" if IS_PRODUCTION else str(exc)
    return JSONResponse(status_code=500, content={"error": message, "code": "INTERNAL_ERROR"})


# ============================================================================
# MIDDLEWARE
# ============================================================================

app.add_middleware(SecurityHeadersMiddleware, exclude_paths=["/health", "/docs", "/openapi.json"])

ALLOWED_ORIGINS = [origin.strip() for origin in CORS_ORIGINS.split(",") if origin.strip()]
if not IS_PRODUCTION:
    ALLOWED_ORIGINS += [origin for origin in LOCAL_ORIGINS if origin not in ALLOWED_ORIGINS]

logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,  # auth-token cookie
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count", "Retry-After"],
)

# Routes
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(bookings_router)
app.include_router(packages_router)
app.include_router(asaas_webhooks_router)
app.include_router(credits_router)
app.include_router(notifications_router)
app.include_router(checkins_router)
app.include_router(franchises_router)
app.include_router(academies_router)
app.include_router(policies_router)
app.include_router(audit_logs_router)


@app.get("/")
def root():
    return {"message": "Meu Personal API is running"}


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": utcnow().isoformat()}
