"""Flat on-disk file store.

Files are stored directly in the storage root: {storage_root}/{filename}.
Every name passes through ``sanitize_filename`` before it touches the
filesystem, so a stored or requested file is always a direct child of the
root.  Writes go to a hidden temporary file in the same directory and are
published with a hard link once complete.  Linking never replaces an
existing name, so a stored file is not changed after creation, and a failed
or aborted upload never becomes visible under its public name.
"""
import logging
import os
import secrets
import string
import tempfile
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Optional

from starlette.concurrency import run_in_threadpool

from filehost.exceptions import FileConflictError, StorageError, UploadTooLargeError

logger = logging.getLogger(__name__)

# Replacement for path separators in client-supplied names
SEPARATOR_PLACEHOLDER = "_"

RANDOM_NAME_LENGTH = 16
RANDOM_NAME_ALPHABET = string.ascii_letters + string.digits

MAX_FILENAME_BYTES = 255

TEMP_PREFIX = ".upload-"


def sanitize_filename(name: str) -> str:
    """Neutralise a client-supplied filename.

    Both "/" and "\\" are replaced by "_" and control characters are
    dropped.  "." and ".." would still address a directory, so they come
    back as "" (no usable name).
    """
    name = name.replace("/", SEPARATOR_PLACEHOLDER).replace("\\", SEPARATOR_PLACEHOLDER)
    name = "".join(ch for ch in name if ord(ch) >= 0x20 and ord(ch) != 0x7F)
    if name in (".", ".."):
        return ""
    return name


def generate_filename() -> str:
    """Random 16 character alphanumeric name (no extension)."""
    return "".join(secrets.choice(RANDOM_NAME_ALPHABET) for _ in range(RANDOM_NAME_LENGTH))


class FileStore:
    """Reads and writes uploaded files under a single root directory."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self._ensure_root()

    def _ensure_root(self) -> None:
        """Ensure the storage directory exists."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Optional[Path]:
        """Return the on-disk path for a (raw) name, or None if unusable."""
        safe = sanitize_filename(name)
        if not safe or safe.startswith(TEMP_PREFIX):
            return None
        return self.root / safe

    def exists(self, name: str) -> bool:
        path = self.path_for(name)
        return path is not None and path.is_file()

    def open_for_read(self, name: str) -> Optional[BinaryIO]:
        """Open a stored file for reading.

        Returns:
            A binary file handle, or None when no such file exists.

        Raises:
            StorageError: If the file exists but cannot be opened.
        """
        path = self.path_for(name)
        if path is None or not path.is_file():
            return None
        try:
            return path.open("rb")
        except OSError as e:
            raise StorageError(f"Failed to open {path}: {e}") from e

    async def write_stream(
        self,
        filename: str,
        chunks: AsyncIterator[bytes],
        max_bytes: int,
    ) -> int:
        """Stream an upload into the store and publish it atomically.

        Args:
            filename: Already sanitized target name.
            chunks: Request body chunks.
            max_bytes: Size ceiling; crossing it aborts the write.

        Returns:
            Number of bytes written.

        Raises:
            UploadTooLargeError: If the body exceeds ``max_bytes``.
            FileConflictError: If a file with this name is already stored.
            StorageError: If the file cannot be written or published.
        """
        target = self.path_for(filename)
        if target is None:
            raise StorageError(f"Unusable filename: {filename!r}")

        try:
            fd, tmp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=self.root)
        except OSError as e:
            raise StorageError(f"Failed to create temporary file in {self.root}: {e}") from e

        tmp_path = Path(tmp_name)
        size = 0
        try:
            with os.fdopen(fd, "wb") as fh:
                async for chunk in chunks:
                    if not chunk:
                        continue
                    size += len(chunk)
                    if size > max_bytes:
                        raise UploadTooLargeError(max_bytes)
                    await run_in_threadpool(fh.write, chunk)
            await run_in_threadpool(os.link, tmp_path, target)
        except FileExistsError as e:
            raise FileConflictError(target.name) from e
        except OSError as e:
            raise StorageError(f"Failed to write {target}: {e}") from e
        finally:
            self._discard(tmp_path)

        logger.info(f"Saved file: {target} ({size} bytes)")
        return size

    @staticmethod
    def _discard(tmp_path: Path) -> None:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove temporary upload {tmp_path}: {e}")
