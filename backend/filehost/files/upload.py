"""HTTP upload endpoint.

Handles ``POST <mount>`` (and ``OPTIONS <mount>`` for discovery). The
request body is the raw file content; its type comes from ``Content-Type``
and an optional name from ``Content-Disposition: filename="..."``.

Each request ends at the first failing check:
    1. method       -> 405 (OPTIONS answers with the accepted types)
    2. credential   -> 401 with WWW-Authenticate
    3. content type -> 415
    4. filename     -> 400 if unusable after sanitizing
    5. size / write -> 413 / 409 (name taken) / 500
    6. success      -> 201 with the public URL
"""
import logging
import re
from typing import Optional
from urllib.parse import quote

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse

from filehost.auth.service import TokenService
from filehost.exceptions import FileConflictError, StorageError, UploadTooLargeError
from filehost.files.schemas import ACCEPTED_CONTENT_TYPES, error_page, normalize_content_type
from filehost.files.storage import (
    MAX_FILENAME_BYTES,
    TEMP_PREFIX,
    FileStore,
    generate_filename,
    sanitize_filename,
)

logger = logging.getLogger(__name__)

AUTH_REALM = "FileHost"

_FILENAME_RE = re.compile(r'filename\s*=\s*(?:"([^"]*)"|([^;]+))', re.IGNORECASE)

ALLOW = "OPTIONS, POST"
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Content-Disposition, Content-Length, Authorization",
}


def parse_disposition_filename(header: Optional[str]) -> Optional[str]:
    """Extract the filename parameter from a Content-Disposition header."""
    if not header:
        return None
    match = _FILENAME_RE.search(header)
    if not match:
        return None
    quoted, bare = match.groups()
    return quoted if quoted is not None else bare.strip()


def extract_credential(request: Request) -> Optional[str]:
    """Bearer credential from the Authorization header or ``?token=``."""
    authorization = request.headers.get("authorization", "")
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    token = request.query_params.get("token")
    return token or None


def resolve_filename(supplied: Optional[str], extension: str) -> str:
    """Sanitized client name, or a random one; always has an extension.

    Names the store reserves for in-progress uploads count as absent.
    """
    filename = sanitize_filename(supplied) if supplied else ""
    if not filename or filename.startswith(TEMP_PREFIX):
        filename = generate_filename()
    if "." not in filename:
        filename = f"{filename}.{extension}"
    return filename


class UploadHandler:
    """Accepts file uploads at exactly ``mount_path``."""

    def __init__(
        self,
        store: FileStore,
        tokens: Optional[TokenService],
        mount_path: str,
        public_url: str,
        max_upload_size: int,
        authenticate: bool = True,
    ) -> None:
        if authenticate and tokens is None:
            raise ValueError("authenticate=True requires a TokenService")
        self.store = store
        self.tokens = tokens
        self.mount_path = mount_path
        self.public_url = public_url.rstrip("/")
        self.max_upload_size = max_upload_size
        self.authenticate = authenticate

    def file_url(self, filename: str) -> str:
        return f"{self.public_url}/{quote(filename)}"

    def options_response(self) -> Response:
        headers = {
            "Allow": ALLOW,
            "Accept-Post": ", ".join(ACCEPTED_CONTENT_TYPES),
            **CORS_HEADERS,
        }
        return Response(status_code=200, headers=headers)

    async def handle(self, request: Request) -> Optional[Response]:
        """Handle a request, or return None if it is not ours."""
        if request.url.path != self.mount_path:
            return None

        if request.method == "OPTIONS":
            return self.options_response()

        if request.method != "POST":
            return error_page(
                405,
                "Method Not Allowed",
                "Only POST requests are allowed for file uploads",
                headers={"Allow": ALLOW},
            )

        identity = None
        if self.authenticate:
            challenge = {"WWW-Authenticate": f'Bearer realm="{AUTH_REALM}"'}
            credential = extract_credential(request)
            if credential is None:
                return error_page(
                    401, "Unauthorized", "Authentication is required to upload files",
                    headers=challenge,
                )
            identity, ok = self.tokens.verify(credential)
            if not ok:
                logger.warning("Upload rejected: invalid or expired credential")
                return error_page(
                    401, "Unauthorized", "The upload credential is invalid or has expired",
                    headers=challenge,
                )

        content_type = normalize_content_type(request.headers.get("content-type"))
        extension = ACCEPTED_CONTENT_TYPES.get(content_type)
        if extension is None:
            logger.info(f"Upload rejected: unsupported content type {content_type or '(none)'!r}")
            return error_page(415, "Unsupported Media Type", "The provided content type is not supported")

        filename = resolve_filename(
            parse_disposition_filename(request.headers.get("content-disposition")),
            extension,
        )
        if len(filename.encode("utf-8")) > MAX_FILENAME_BYTES:
            return error_page(400, "Bad Request", "The supplied filename is too long")

        declared = request.headers.get("content-length")
        if declared is not None:
            try:
                declared_size = int(declared)
            except ValueError:
                return error_page(400, "Bad Request", "Invalid Content-Length")
            if declared_size > self.max_upload_size:
                return self._too_large()

        try:
            size = await self.store.write_stream(filename, request.stream(), self.max_upload_size)
        except UploadTooLargeError:
            return self._too_large()
        except FileConflictError:
            logger.info(f"Upload rejected: {filename} already exists")
            return error_page(409, "Conflict", "A file with this name already exists")
        except StorageError as e:
            logger.error(f"Error writing uploaded file {filename}: {e}")
            return error_page(500, "Internal Server Error", "Failed to store the uploaded file")

        url = self.file_url(filename)
        logger.info(
            f"File uploaded: {filename} ({size} bytes, {content_type}) "
            f"by {identity or 'anonymous'}"
        )
        return PlainTextResponse(url, status_code=201, headers={"Location": url})

    def _too_large(self) -> Response:
        logger.info(f"Upload rejected: body exceeds {self.max_upload_size} bytes")
        return error_page(
            413,
            "Payload Too Large",
            f"Uploads are limited to {self.max_upload_size} bytes",
        )
