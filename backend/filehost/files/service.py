"""FileHost runtime: the handler set built from one configuration snapshot.

Everything request handling needs (token service, file store, upload and
retrieval handlers, public URLs) is built together from a single
``AppConfig`` and never mutated afterwards.  When the configuration is
swapped, the next ``get_filehost()`` call builds a fresh runtime; requests
already in flight keep the one they started with.
"""
import logging
from typing import Optional

from fastapi import Request, Response

from filehost.auth.service import TokenService
from filehost.config import AppConfig, get_config
from filehost.files.retrieval import RetrievalHandler
from filehost.files.storage import FileStore
from filehost.files.upload import UploadHandler

logger = logging.getLogger(__name__)


class FileHost:
    """Immutable bundle of FileHost components for one configuration."""

    def __init__(self, config: AppConfig) -> None:
        settings = config.filehost
        self.config = config
        self.public_url = settings.public_url
        self.file_url_prefix = settings.public_url + "/"
        self.require_tls = settings.require_tls
        self.max_upload_size = settings.max_upload_size

        self.store = FileStore(settings.storage_path)

        # A missing secret only matters when uploads require credentials
        self.tokens: Optional[TokenService] = None
        if settings.authenticate or config.secrets.tokens.secret_key:
            self.tokens = TokenService.from_config(config)

        self.upload_handler = UploadHandler(
            store=self.store,
            tokens=self.tokens,
            mount_path=settings.mount_path,
            public_url=settings.public_url,
            max_upload_size=settings.max_upload_size,
            authenticate=settings.authenticate,
        )
        self.retrieval_handler = RetrievalHandler(self.store, settings.mount_path)

    async def handle_http(self, request: Request) -> Optional[Response]:
        """Offer a request to each handler; None means nobody claimed it."""
        for handler in (self.upload_handler, self.retrieval_handler):
            response = await handler.handle(request)
            if response is not None:
                return response
        return None


_filehost: Optional[FileHost] = None


def get_filehost() -> FileHost:
    """Return the runtime for the current configuration snapshot."""
    global _filehost
    config = get_config()
    current = _filehost
    if current is None or current.config is not config:
        current = FileHost(config)
        _filehost = current
        logger.info(
            f"FileHost ready: public_url={current.public_url} "
            f"storage={current.store.root} authenticate={current.upload_handler.authenticate}"
        )
    return current


def reset_filehost() -> None:
    """Drop the cached runtime (for testing)."""
    global _filehost
    _filehost = None
