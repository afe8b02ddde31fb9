"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relay.api.api import api_router, unciv_router
from relay.core.config import settings
from relay.core.exceptions import AppException, AuthError, InternalError, RateLimitedError
from relay.services.auth_gate import AuthGate
from relay.services.cache import create_cache
from relay.services.login_rate_limiter import LoginRateLimiter
from relay.services.retention_sweeper import RetentionSweeper
from relay.services.save_coordinator import SaveCoordinator
from relay.storage import create_backend

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown logic."""
    # ── Startup ──
    background_tasks: list[asyncio.Task] = []
    await _startup(app, background_tasks)
    yield
    # ── Shutdown ──
    await _shutdown(app, background_tasks)


app = FastAPI(
    title="Unciv Save Relay",
    description="Multiplayer save-game relay for Unciv clients",
    version="1.0.0",
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# Credentials cannot be combined with a wildcard origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials="*" not in settings.CORS_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Requested-With"],
)

app.include_router(unciv_router)
app.include_router(api_router)


# ── Global Exception Handlers ──

@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    """Convert AppException subclasses to structured JSON responses."""
    headers = {}
    if isinstance(exc, AuthError):
        headers["WWW-Authenticate"] = 'Basic realm="Unciv"'
    elif isinstance(exc, RateLimitedError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)

    content = exc.to_dict()
    if isinstance(exc, InternalError):
        logger.error(
            f"Internal error on {request.method} {request.url.path}: {exc.message} {exc.details}",
            exc_info=exc.__cause__ is not None,
        )
        if not settings.DEBUG:
            content["details"] = {}
    return JSONResponse(status_code=exc.http_status, content=content, headers=headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all handler to prevent stack trace leaking in production."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred." if not settings.DEBUG else str(exc),
            "details": {},
        },
    )


async def _startup(app: FastAPI, background_tasks: list[asyncio.Task]):
    """Validate configuration, build services and start background tasks."""
    logger.info("Unciv save relay starting up...")

    config_warnings, config_errors = settings._validate_security_config()

    for warning in config_warnings:
        logger.warning(f"Config Warning: {warning}")

    for error in config_errors:
        logger.error(f"Config Error: {error}")

    if config_errors:
        logger.error("In development, set DEBUG=true to bypass strict validation.")
        raise RuntimeError(
            f"Critical security configuration errors ({len(config_errors)} issues). "
            "Check logs for details."
        )

    backend = create_backend(settings)
    await backend.initialize()

    cache_client = None
    if settings.CACHE_BACKEND == "redis" and settings.REDIS_URL:
        import redis.asyncio as redis_lib
        cache_client = redis_lib.Redis.from_url(settings.REDIS_URL, decode_responses=True)

    admin_limiter = LoginRateLimiter(
        max_attempts=settings.ADMIN_MAX_ATTEMPTS,
        window_seconds=settings.ADMIN_WINDOW_SECONDS,
        lockout_seconds=settings.ADMIN_LOCKOUT_SECONDS,
        max_lockout_seconds=settings.ADMIN_MAX_LOCKOUT_SECONDS,
    )

    app.state.backend = backend
    app.state.cache_client = cache_client
    app.state.auth_gate = AuthGate(
        backend,
        create_cache(settings, "credentials", settings.CREDENTIAL_CACHE_TTL_SECONDS, cache_client),
        admin_limiter=admin_limiter,
    )
    app.state.coordinator = SaveCoordinator(
        backend,
        create_cache(settings, "snapshots", settings.SNAPSHOT_CACHE_TTL_SECONDS, cache_client),
    )
    app.state.sweeper = RetentionSweeper(backend)

    if settings.SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(
            app.state.sweeper.run_periodically(settings.SWEEP_INTERVAL_SECONDS)
        )
        background_tasks.append(task)
        logger.info(f"Retention sweep task started (every {settings.SWEEP_INTERVAL_SECONDS}s)")
    else:
        logger.info("Retention sweep task disabled")

    task = asyncio.create_task(_periodic_rate_limiter_cleanup(admin_limiter))
    background_tasks.append(task)
    logger.info("Rate limiter cleanup task started")


async def _periodic_rate_limiter_cleanup(limiter: LoginRateLimiter):
    """Background task to periodically clean up expired rate limit records.

    Runs every hour to prevent memory leaks from accumulated login attempt records.
    """
    while True:
        try:
            await asyncio.sleep(3600)
            limiter.cleanup_expired()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in rate limiter cleanup task: {e}")
            await asyncio.sleep(60)  # Wait 1 minute before retry


async def _shutdown(app: FastAPI, background_tasks: list[asyncio.Task]):
    """Cancel background tasks and release storage connections."""
    logger.info("Unciv save relay shutting down...")

    if background_tasks:
        logger.info(f"Cancelling {len(background_tasks)} background task(s)...")
        for task in background_tasks:
            task.cancel()
        await asyncio.gather(*background_tasks, return_exceptions=True)
        logger.info("Background tasks cancelled")

    try:
        await app.state.backend.close()
    except Exception as e:
        logger.warning(f"Error closing storage backend: {e}")

    if app.state.cache_client is not None:
        try:
            await app.state.cache_client.aclose()
        except Exception as e:
            logger.warning(f"Error closing cache client: {e}")


@app.get("/isalive")
def is_alive():
    """Unciv server liveness check."""
    return {"authVersion": 1}


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("relay.main:app", host="0.0.0.0", port=8000)
