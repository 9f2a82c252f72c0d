"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from remitcore import __version__
from remitcore.clients.notifications import close_notifier, get_notifier
from remitcore.clients.ledger import get_wallet_locks
from remitcore.config import Settings, get_settings
from remitcore.core.errors import InfrastructureError
from remitcore.core.schedule_runner import ScheduleRunner
from remitcore.database import async_session_maker, close_db, get_db, init_db
from remitcore.routes import admin, schedules, transfers
from remitcore.seed.accounts import run_seeds

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info(f"Starting {settings.app_name}...")
    await init_db()
    logger.info("Database initialized")

    async with async_session_maker() as db:
        await run_seeds(db)
    logger.info("Seeds completed")

    runner_task = None
    runner = None
    if settings.scheduler_enabled:
        runner = ScheduleRunner(
            async_session_maker,
            settings=settings,
            notifier=get_notifier(),
            wallet_locks=get_wallet_locks(),
        )
        runner_task = asyncio.create_task(runner.run_forever())
    else:
        logger.info("Schedule runner disabled")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if runner_task is not None:
        runner.stop()
        runner_task.cancel()
        try:
            await runner_task
        except asyncio.CancelledError:
            pass
    await close_notifier()
    await close_db()
    logger.info("Database connections closed")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Risk-adaptive wallet transfers and recurring remittances",
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "Authorization", "X-User-Id"],
    max_age=600,
)

# Include routers
app.include_router(transfers.router)
app.include_router(schedules.router)
app.include_router(admin.router)


@app.exception_handler(InfrastructureError)
async def infrastructure_error_handler(request: Request, exc: InfrastructureError):
    logger.error(f"Infrastructure failure on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": {"error_kind": "service_unavailable", "message": "Service temporarily unavailable"}},
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "status": "running",
        "version": __version__,
    }


@app.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
    app_settings: Settings = Depends(get_settings),
):
    """Health check endpoint with dependency verification."""
    health_status = {
        "status": "healthy",
        "checks": {}
    }

    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "healthy"}
    except Exception as e:
        logger.error(f"Health check: database unreachable: {e}")
        health_status["checks"]["database"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"

    health_status["checks"]["scheduler"] = {
        "status": "enabled" if app_settings.scheduler_enabled else "disabled",
    }
    return health_status


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "remitcore.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
