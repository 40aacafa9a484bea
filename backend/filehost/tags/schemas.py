"""Pydantic schemas for file metadata tags.

This module defines the data attached to chat messages that link to hosted
files:
- FileCategory: Enum for categorizing files (image, text, document, ...)
- FileMetadata: The record derived from a file link
- ProtocolTag: A bounded name/value annotation carried by one chat message

Metadata is derived purely from the filename extension. It is never stored;
it is recomputed every time a link is seen.
"""
import json
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator


class FileCategory(str, Enum):
    """File type categories reported in metadata tags.

    - IMAGE: png, jpg, gif, webp, ...
    - TEXT: txt, md, log, csv, ...
    - DOCUMENT: pdf, doc(x), odt, html, ...
    - ARCHIVE: zip, tar, gz, 7z, ...
    - BINARY: any other extension
    - UNKNOWN: no extension at all
    """
    IMAGE = "image"
    TEXT = "text"
    DOCUMENT = "document"
    ARCHIVE = "archive"
    BINARY = "binary"
    UNKNOWN = "unknown"


# Tag carrying the metadata record on chat messages
METADATA_TAG = "+filehost/metadata"

# Upper bound for an encoded tag value
MAX_TAG_VALUE_BYTES = 4094

IMAGE_EXTENSIONS = frozenset({
    "png", "jpg", "jpeg", "gif", "webp", "bmp", "svg", "ico", "tif", "tiff", "heic", "avif",
})
TEXT_EXTENSIONS = frozenset({
    "txt", "md", "log", "csv", "tsv", "json", "xml", "yaml", "yml", "ini", "conf", "cfg",
})
DOCUMENT_EXTENSIONS = frozenset({
    "pdf", "doc", "docx", "odt", "rtf", "xls", "xlsx", "ods", "ppt", "pptx", "odp",
    "html", "htm", "epub",
})
ARCHIVE_EXTENSIONS = frozenset({
    "zip", "tar", "gz", "tgz", "bz2", "xz", "7z", "rar", "zst",
})

EXTENSION_CATEGORIES: Dict[str, FileCategory] = {
    **{ext: FileCategory.IMAGE for ext in IMAGE_EXTENSIONS},
    **{ext: FileCategory.TEXT for ext in TEXT_EXTENSIONS},
    **{ext: FileCategory.DOCUMENT for ext in DOCUMENT_EXTENSIONS},
    **{ext: FileCategory.ARCHIVE for ext in ARCHIVE_EXTENSIONS},
}


def get_extension(filename: str) -> str:
    """Return the lower-cased text after the last dot, or "" if there is none.

    A leading dot alone (".bashrc") is not an extension.
    """
    stem, dot, ext = filename.rpartition(".")
    if not dot or not stem:
        return ""
    return ext.lower()


def classify(filename: str) -> FileCategory:
    """Determine the file category from a filename's extension.

    Args:
        filename: Bare filename (e.g., "report.PDF")

    Returns:
        FileCategory for the extension; BINARY for unrecognized extensions,
        UNKNOWN when there is no extension.

    Examples:
        >>> classify("report.PDF")
        <FileCategory.DOCUMENT: 'document'>
        >>> classify("blob.xyz")
        <FileCategory.BINARY: 'binary'>
        >>> classify("README")
        <FileCategory.UNKNOWN: 'unknown'>
    """
    ext = get_extension(filename)
    if not ext:
        return FileCategory.UNKNOWN
    return EXTENSION_CATEGORIES.get(ext, FileCategory.BINARY)


class FileMetadata(BaseModel):
    """Metadata derived from a link to a hosted file."""
    url: str = Field(..., description="Public URL as it appeared in the message")
    filename: Optional[str] = Field(None, description="Stored filename, if resolvable")
    category: FileCategory = Field(..., description="File type category")

    def to_tag_value(self) -> str:
        return json.dumps(self.model_dump(mode="json", exclude_none=True), separators=(",", ":"))


class ProtocolTag(BaseModel):
    """A name/value annotation attached to a single chat message."""
    name: str
    value: str

    @field_validator("value")
    @classmethod
    def _bounded(cls, value: str) -> str:
        if len(value.encode("utf-8")) > MAX_TAG_VALUE_BYTES:
            raise ValueError(f"tag value exceeds {MAX_TAG_VALUE_BYTES} bytes")
        return value


def build_metadata(url: str, filename: Optional[str]) -> FileMetadata:
    """Build the metadata record for a file link."""
    category = classify(filename) if filename else FileCategory.UNKNOWN
    return FileMetadata(url=url, filename=filename or None, category=category)


def build_metadata_tag(metadata: FileMetadata) -> ProtocolTag:
    """Encode a metadata record as a protocol tag.

    A record too large for one tag loses its filename; the URL alone is
    bounded by the link scanner and always fits.
    """
    value = metadata.to_tag_value()
    if len(value.encode("utf-8")) > MAX_TAG_VALUE_BYTES:
        value = metadata.model_copy(update={"filename": None}).to_tag_value()
    return ProtocolTag(name=METADATA_TAG, value=value)
