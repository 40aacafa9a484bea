"""FileHost Backend Application.

This is the main entry point for the FileHost service: file hosting for
chat users. Users ask for an upload credential over their chat session,
upload a file over HTTP and share the returned link; links to hosted files
in chat messages are tagged with file metadata.

Modules:
    - auth: signed upload credentials
    - files: upload/retrieval HTTP handlers and the on-disk store
    - tags: link detection, file classification and metadata propagation
    - chat: WebSocket chat rooms and the filehost command
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from filehost.chat.router import router as chat_router
from filehost.config import get_config
from filehost.files.schemas import error_page
from filehost.files.service import get_filehost

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# uvicorn.access would log every upload URL, including ?token= credentials.
for _noisy in (
    "httpx",
    "httpcore",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info(f"Root logger level set to {config.logging.level.upper()}")

    # Fails fast on a bad configuration (e.g. no signing secret)
    filehost = get_filehost()
    logger.info(
        f"FileHost serving {filehost.public_url} on "
        f"http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    logger.info("Application shutdown complete")


app = FastAPI(
    title="FileHost API",
    description="File hosting for chat users with metadata tagging of shared links",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(chat_router)


@app.middleware("http")
async def filehost_dispatch(request: Request, call_next):
    """Give the upload and retrieval handlers first claim on every request.

    Requests outside the configured mount pass through to the routers.
    """
    try:
        response = await get_filehost().handle_http(request)
    except Exception:
        logger.exception(f"Unhandled error serving {request.method} {request.url.path}")
        return error_page(500, "Internal Server Error", "The request could not be processed")
    if response is not None:
        return response
    return await call_next(request)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
