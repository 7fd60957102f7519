"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Production-ready features:
- Multiple instances behind a load balancer
- Domain errors mapped to HTTP status codes in one place
- Rate limiting for unauthenticated traffic
- Cached public answer feed
- Request IDs for tracing
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.database import close_db, init_db
from config.redis_client import RedisCache, close_redis, init_redis
from config.settings import settings
from shared.exceptions import DomainError

# Service routers
from services.auth.router import router as auth_router
from services.user.router import router as user_router
from services.question.router import router as question_router
from services.scholar.router import router as scholar_router
from services.role_request.router import router as role_request_router
from services.category.router import router as category_router
from services.notification.router import router as notification_router
from services.admin.router import router as admin_router


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


# Configure structured logging for every module logger
handler = logging.StreamHandler()
handler.setFormatter(JSONFormatter())
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    handlers=[handler],
)
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@retry(
    retry=retry_if_exception_type((SQLAlchemyError, RedisError, OSError)),
    stop=stop_after_attempt(settings.STARTUP_CONNECT_ATTEMPTS),
    wait=wait_exponential(multiplier=1, max=10),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def connect_with_retry(connect) -> None:
    await connect()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME}...")

    # Initialize connections
    await connect_with_retry(init_db)
    logger.info("Database connected")

    await connect_with_retry(init_redis)
    logger.info("Redis connected")

    await bootstrap_admin()
    # Seed default categories, only in dev
    if settings.APP_ENV == "development" and settings.SEED_DEFAULT_CATEGORIES:
        await seed_initial_data()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    # Cleanup
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Scholar Q&A Platform API

Users ask questions, admins moderate and route them, scholars answer:
- **Questions**: draft → pending → approved → answered (or rejected)
- **Assignment**: admins route approved questions to a scholar
- **Role requests**: users apply to become scholars or admins
- **Notifications**: in-app, with a live WebSocket feed
- **Admin**: moderation queues, user management, analytics, audit log

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` header.
Get a token from `/auth/register` or `/auth/login`.

### Roles
- `user`: Ask questions, track their status, apply for a role
- `scholar`: Answer questions assigned to them
- `admin`: Approve, reject and assign questions; manage users
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters, outermost first) ───────────────
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*"]
    )
    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    # GZip compression
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Fixed-window limiter for unauthenticated traffic, keyed by client IP.
        Authenticated requests and health/metrics endpoints are not limited.
        Fails open when Redis is unavailable.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths:
            return await call_next(request)

        from config.redis_client import redis_client
        auth_header = request.headers.get("Authorization", "")
        if redis_client and not auth_header.startswith("Bearer "):
            client_ip = request.client.host if request.client else "unknown"
            try:
                allowed = await RedisCache(redis_client).check_rate_limit(
                    f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
                )
            except RedisError as e:
                logger.error(f"Rate limit check failed: {str(e)}")
                allowed = True
            if not allowed:
                logger.warning(f"Rate limit exceeded for IP {client_ip}")
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded. Please slow down."},
                    headers={"Retry-After": "60"},
                )

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        """Map workflow errors to their HTTP status with a stable `code`."""
        request_id = getattr(request.state, "request_id", None)
        if exc.status_code >= 500:
            logger.error(f"[{request_id}] {exc.code}: {exc.message}")
        else:
            logger.info(f"[{request_id}] {exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.message,
                "code": exc.code,
                "request_id": request_id,
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"

        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "detail": detail,
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    # Health check (public)
    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from config.redis_client import redis_client
        from sqlalchemy import text
        from config.database import AsyncSessionLocal

        checks = {"status": "ok", "version": settings.APP_VERSION}

        # DB check
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except SQLAlchemyError:
            checks["database"] = "error"
            checks["status"] = "degraded"

        # Redis check
        try:
            if redis_client:
                await redis_client.ping()
            checks["redis"] = "ok"
        except RedisError:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    app.include_router(auth_router)
    app.include_router(user_router)
    app.include_router(question_router)
    app.include_router(scholar_router)
    app.include_router(role_request_router)
    app.include_router(category_router)
    app.include_router(notification_router)
    app.include_router(admin_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Bootstrap & Dev Data Seeder ───────────────────────────────

async def bootstrap_admin():
    """Create or promote the first admin from ADMIN_EMAIL / ADMIN_PASSWORD."""
    if not (settings.ADMIN_EMAIL and settings.ADMIN_PASSWORD):
        return

    from config.database import AsyncSessionLocal
    from services.user.roles import apply_role
    from shared.models.models import User, UserRole, UserStatus
    from shared.utils.security import hash_password
    from sqlalchemy import select

    email = settings.ADMIN_EMAIL.strip().lower()
    async with AsyncSessionLocal() as db:
        user = await db.scalar(select(User).where(User.email == email))
        if user is None:
            user = User(
                email=email,
                display_name=settings.ADMIN_DISPLAY_NAME,
                password_hash=hash_password(settings.ADMIN_PASSWORD),
                status=UserStatus.ACTIVE,
            )
            db.add(user)
        elif user.role == UserRole.ADMIN:
            return
        apply_role(user, UserRole.ADMIN)
        await db.commit()
        logger.info(f"Bootstrap admin ready: {email}")


async def seed_initial_data():
    """Seed question categories on first run (development only)."""
    from config.database import AsyncSessionLocal
    from shared.models.models import Category
    from sqlalchemy import select, func

    async with AsyncSessionLocal() as db:
        count = await db.scalar(select(func.count(Category.id)))
        if count and count > 0:
            return  # Already seeded

        seed_categories = [
            {"slug": "prayer", "name": "Prayer (Salah)", "description": "Questions related to prayer times, methods, and rulings"},
            {"slug": "fasting", "name": "Fasting (Sawm)", "description": "Questions about Ramadan, fasting rules, and exemptions"},
            {"slug": "zakat-charity", "name": "Zakat and Charity", "description": "Questions about obligatory charity, voluntary charity, and related rulings"},
            {"slug": "marriage-family", "name": "Marriage and Family", "description": "Questions about marriage, divorce, family relations, and inheritance"},
            {"slug": "business-finance", "name": "Business and Finance", "description": "Questions about halal investments, interest, business ethics, and financial transactions"},
        ]

        for c in seed_categories:
            db.add(Category(**c))

        await db.commit()
        logger.info(f"Seeded {len(seed_categories)} categories")


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
