"""
Subscription tracker backend: Gmail connection, receipt scanning, subscription CRUD.

Load .env in development only (production uses env vars directly). Add CORS,
domain-error and global exception handlers, optional DB init and the
background retention sweep.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# Load .env only in development, before config reads the environment
if os.getenv("ENV", "development").lower() == "development":
    load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from subtracker.config import (
    FRONTEND_URL,
    LOG_LEVEL,
    RETENTION_SWEEP_INTERVAL_SECONDS,
    SKIP_DB_INIT,
)
from subtracker.database import Base, SessionLocal, engine
from subtracker.errors import (
    AuthExpiredError,
    ConfigurationError,
    MailboxError,
    MailboxNotConnectedError,
    NotFoundError,
    PersistenceError,
    ProviderUnavailableError,
    SubtrackerError,
)
from subtracker.gmail import router as gmail_router
from subtracker.services.retention import purge_expired
from subtracker.subscriptions import router as subscriptions_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create DB tables if not skipping (production uses migrations)
if not SKIP_DB_INIT:
    Base.metadata.create_all(bind=engine)

# Domain error -> HTTP status
ERROR_STATUS = {
    AuthExpiredError: 401,
    MailboxNotConnectedError: 400,
    NotFoundError: 404,
    ProviderUnavailableError: 503,
    PersistenceError: 503,
    ConfigurationError: 500,
    MailboxError: 502,
}


def status_for(exc: SubtrackerError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def sweep_once() -> int:
    """Purge processed-message rows past their retention window."""
    db = SessionLocal()
    try:
        return purge_expired(db)
    finally:
        db.close()


async def retention_sweeper(interval: int) -> None:
    while True:
        try:
            deleted = await asyncio.to_thread(sweep_once)
            if deleted:
                logger.info("Retention sweep deleted %d processed messages", deleted)
        except Exception:
            logger.exception("Retention sweep failed")
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if RETENTION_SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(retention_sweeper(RETENTION_SWEEP_INTERVAL_SECONDS))
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


app = FastAPI(
    title="Subscription Tracker",
    description="Gmail receipt scanning, subscription detection and cost tracking.",
    lifespan=lifespan,
)

# CORS: explicit origin, allow credentials (cookies). Never use "*" with cookies.
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL] if FRONTEND_URL else [],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(SubtrackerError)
async def subtracker_exception_handler(request: Request, exc: SubtrackerError):
    """Map domain errors to a status plus a machine-readable code for the UI."""
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.msg)
    else:
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.msg)
    detail = exc.msg
    if isinstance(exc, ConfigurationError):
        detail = "Server misconfigured"
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": exc.code})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions; log and return generic 500. Never leak stack traces."""
    # Let FastAPI handle HTTPException (validation, auth, etc.)
    if isinstance(exc, HTTPException):
        raise exc
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(gmail_router)
app.include_router(subscriptions_router)
