"""Detection of hosted-file links in chat text.

This is a heuristic, not a URL parser: the link starts where the public
file URL prefix is found, ends at the first whitespace or control
character, and loses any trailing punctuation from a fixed set.  Links
glued to other punctuation or embedded in markup can be mis-extracted.
"""
from dataclasses import dataclass
from typing import Iterator, Optional

TRAILING_PUNCTUATION = ",.;:!?'\"()[]{}"

# Longest link considered; anything longer cannot name a stored file
MAX_LINK_LENGTH = 2048


@dataclass(frozen=True)
class FileLink:
    url: str
    filename: str


def _is_boundary(ch: str) -> bool:
    return ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F


def iter_file_links(text: str, file_url_prefix: str) -> Iterator[FileLink]:
    """Yield every link to a hosted file in ``text``, in order of appearance.

    Args:
        text: Chat message text.
        file_url_prefix: Public URL of the mount followed by "/", e.g.
            "https://irc.example.org/files/".

    Occurrences with nothing after the prefix, or longer than
    MAX_LINK_LENGTH, are skipped.
    """
    if not text or not file_url_prefix:
        return

    start = text.find(file_url_prefix)
    while start != -1:
        end = start + len(file_url_prefix)
        while end < len(text) and not _is_boundary(text[end]):
            end += 1

        url = text[start:end].rstrip(TRAILING_PUNCTUATION)
        filename = url[len(file_url_prefix):]
        if filename and len(url) <= MAX_LINK_LENGTH:
            yield FileLink(url=url, filename=filename)

        start = text.find(file_url_prefix, end)


def find_file_link(text: str, file_url_prefix: str) -> Optional[FileLink]:
    """Return the first link to a hosted file in ``text``, or None."""
    return next(iter_file_links(text, file_url_prefix), None)
