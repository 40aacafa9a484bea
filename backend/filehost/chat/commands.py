"""The ``filehost`` chat command.

    filehost        -> personal upload URL with a fresh credential
    filehost info   -> upload limits and accepted content types

Only users logged in to an account can ask for a credential; the account
name becomes the credential's subject.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
from urllib.parse import quote

from filehost.chat.manager import RoomUser
from filehost.files.schemas import ACCEPTED_CONTENT_TYPES
from filehost.files.service import FileHost

logger = logging.getLogger(__name__)

COMMAND_NAME = "filehost"

USAGE = "Usage: filehost [info]"

NOT_LOGGED_IN = (
    "You must be logged in to an account to use FILEHOST. "
    "Sign in with SSO and rejoin the room, then try again."
)


@dataclass
class CommandReply:
    ok: bool
    lines: List[str] = field(default_factory=list)

    def to_message(self) -> dict:
        return {
            "type": "command_result" if self.ok else "error",
            "command": COMMAND_NAME,
            "lines": self.lines,
            **({} if self.ok else {"error": self.lines[0] if self.lines else USAGE}),
        }


def _format_size(size: int) -> str:
    for unit, factor in (("GiB", 1024 ** 3), ("MiB", 1024 ** 2), ("KiB", 1024)):
        if size >= factor and size % factor == 0:
            return f"{size // factor} {unit}"
    return f"{size} bytes"


def _info_lines(filehost: FileHost) -> List[str]:
    lines = [
        f"FILEHOST endpoint: {filehost.public_url}",
        f"Maximum upload size: {_format_size(filehost.max_upload_size)}",
        f"Accepted content types: {', '.join(ACCEPTED_CONTENT_TYPES)}",
    ]
    if filehost.tokens is not None:
        lines.append(f"Upload credentials are valid for {filehost.tokens.default_ttl} seconds")
    return lines


def run_filehost_command(
    user: Optional[RoomUser],
    args: Sequence[str],
    filehost: FileHost,
) -> CommandReply:
    """Execute ``filehost`` for a user.

    Args:
        user: The registered caller, or None if they never joined.
        args: Command arguments (zero or one).
        filehost: Current FileHost runtime.
    """
    args = [str(a).strip() for a in args if str(a).strip()]

    if len(args) > 1 or (args and args[0].lower() != "info"):
        return CommandReply(ok=False, lines=[USAGE])

    if user is None or not user.account:
        return CommandReply(ok=False, lines=[NOT_LOGGED_IN])

    if args:
        return CommandReply(ok=True, lines=_info_lines(filehost))

    if filehost.tokens is None:
        # Uploads are open; no credential needed
        url = filehost.public_url
        validity = None
    else:
        credential = filehost.tokens.issue(user.account)
        url = f"{filehost.public_url}?token={quote(credential)}"
        validity = filehost.tokens.default_ttl

    logger.info(f"[FileHost] Issued upload URL to account {user.account}")
    example_type = next(iter(ACCEPTED_CONTENT_TYPES))
    lines = [f"Your upload URL: {url}"]
    if validity is not None:
        lines.append(f"This URL is valid for {validity} seconds")
    lines.append(
        f'Upload with: curl -H "Content-Type: {example_type}" '
        f'-H \'Content-Disposition: attachment; filename="notes.txt"\' '
        f'--data-binary @notes.txt "{url}"'
    )
    lines.append("Paste the returned link into the chat to share the file.")
    return CommandReply(ok=True, lines=lines)
