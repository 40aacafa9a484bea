"""HTTP download endpoint for stored files (``GET|HEAD <mount>/<name>``)."""
import logging
import os
from typing import BinaryIO, Iterator, Optional

from fastapi import Request, Response
from fastapi.responses import StreamingResponse
from starlette.concurrency import run_in_threadpool

from filehost.exceptions import StorageError
from filehost.files.schemas import error_page, mime_type_for
from filehost.files.storage import FileStore, sanitize_filename

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def _not_found() -> Response:
    return error_page(404, "Not Found", "The requested file was not found")


def _read_failed() -> Response:
    return error_page(500, "Internal Server Error", "Failed to read the requested file")


def _stream(handle: BinaryIO, first_chunk: bytes, name: str) -> Iterator[bytes]:
    """Yield the file after its already-read first chunk.

    Headers are on the wire by the time this runs, so a read error can only
    end the body early.
    """
    try:
        chunk = first_chunk
        while chunk:
            yield chunk
            chunk = handle.read(CHUNK_SIZE)
    except OSError as e:
        logger.error(f"Error reading file {name} mid-stream: {e}")
    finally:
        handle.close()


class RetrievalHandler:
    """Serves files stored under ``mount_path``."""

    def __init__(self, store: FileStore, mount_path: str) -> None:
        self.store = store
        self.mount_path = mount_path

    def requested_name(self, path: str) -> Optional[str]:
        """Sanitized filename for a request path, or None if not ours."""
        if path == self.mount_path or not path.startswith(self.mount_path + "/"):
            return None
        return sanitize_filename(path[len(self.mount_path):].lstrip("/"))

    async def handle(self, request: Request) -> Optional[Response]:
        """Handle a request, or return None if it is not ours."""
        if request.method not in ("GET", "HEAD"):
            return None
        name = self.requested_name(request.url.path)
        if name is None:
            return None
        if not name:
            return _not_found()

        try:
            handle = await run_in_threadpool(self.store.open_for_read, name)
        except StorageError as e:
            logger.error(f"Error opening file {name}: {e}")
            return _read_failed()
        if handle is None:
            return _not_found()

        try:
            size = os.fstat(handle.fileno()).st_size
            headers = {
                "Content-Length": str(size),
                "X-Content-Type-Options": "nosniff",
            }
            media_type = mime_type_for(name)

            if request.method == "HEAD":
                handle.close()
                return Response(status_code=200, headers=headers, media_type=media_type)

            first_chunk = await run_in_threadpool(handle.read, CHUNK_SIZE)
        except OSError as e:
            handle.close()
            logger.error(f"Error reading file {name}: {e}")
            return _read_failed()

        return StreamingResponse(
            _stream(handle, first_chunk, name),
            status_code=200,
            headers=headers,
            media_type=media_type,
        )
