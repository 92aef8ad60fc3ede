# topicchat/main.py
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Dict

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from .core.broadcast import connect_broadcast, disconnect_broadcast, is_broadcast_initialized
from .core.config import is_running_tests, settings
from .core.crypto import encryption_available, validate_message_encryption_key
from .core.exceptions import DomainException, RepositoryException
from .database import init_db
from .routes import chat_router

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

API_TITLE = "topicchat API"
API_VERSION = "0.1.0"


def _validate_startup_config() -> None:
    if settings.is_production:
        validate_message_encryption_key(settings.message_encryption_key)
    elif not encryption_available():
        logger.warning("[STARTUP] MESSAGE_ENCRYPTION_KEY not set; topic messages are stored in plaintext")


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown."""
    logger.info(f"{API_TITLE} starting up...")
    logger.info(f"Environment: {settings.environment}")
    if is_running_tests():
        logger.info("Running under pytest (test mode active)")

    _validate_startup_config()
    await asyncio.to_thread(init_db)
    await connect_broadcast()

    yield

    logger.info(f"{API_TITLE} shutting down...")
    await disconnect_broadcast()


app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=app_lifespan,
)


@app.exception_handler(DomainException)
async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    http_exc = exc.to_http_exception()
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


@app.exception_handler(RepositoryException)
async def repository_exception_handler(request: Request, exc: RepositoryException) -> JSONResponse:
    logger.error(f"Unhandled repository error on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Database operation failed"})


@app.get("/health")
def health() -> Dict[str, object]:
    return {
        "status": "ok",
        "environment": settings.environment,
        "broadcast": is_broadcast_initialized(),
        "encryption": encryption_available(),
    }


api_v1 = APIRouter(prefix="/api/v1")
api_v1.include_router(chat_router, prefix="/chat")

app.include_router(api_v1)
