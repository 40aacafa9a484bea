"""Content type tables and response helpers for the file endpoints.

Uploads are only accepted for the content types in ACCEPTED_CONTENT_TYPES;
anything else is rejected rather than guessed. Downloads derive their
content type from the stored file's extension through MIME_TYPES.
"""
from typing import Dict, Optional

from fastapi.responses import HTMLResponse

from filehost.tags.schemas import get_extension

# Accepted upload content types -> extension appended to extension-less names
ACCEPTED_CONTENT_TYPES: Dict[str, str] = {
    "text/plain": "txt",
    "text/html": "html",
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "application/pdf": "pdf",
}

# Extension -> content type served on download
MIME_TYPES: Dict[str, str] = {
    "txt": "text/plain",
    "html": "text/html",
    "htm": "text/html",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "pdf": "application/pdf",
}

DEFAULT_MIME_TYPE = "application/octet-stream"


def normalize_content_type(header: Optional[str]) -> str:
    """Media type of a Content-Type header, lower-cased, without parameters."""
    if not header:
        return ""
    return header.split(";", 1)[0].strip().lower()


def mime_type_for(filename: str) -> str:
    return MIME_TYPES.get(get_extension(filename), DEFAULT_MIME_TYPE)


def error_page(
    status_code: int,
    title: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
) -> HTMLResponse:
    """Short, generic HTML error body (never carries internal details)."""
    content = f"<h1>{status_code} {title}</h1><p>{message}</p>"
    return HTMLResponse(content=content, status_code=status_code, headers=headers)
