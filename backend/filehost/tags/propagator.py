"""Propagation of file metadata for chat messages that link to hosted files.

Runs on every outgoing chat message before delivery:

1. TLS policy: with ``require_tls`` enabled, a message containing the
   FileHost URL sent over an unencrypted session is rejected outright and
   the sender gets a notice. Nothing below runs for that message.
2. Hosted-file links are located in order; the first that names a stored
   file is used.
3. The metadata record is attached to the message as a protocol tag; the
   connection manager only delivers it to peers with the capability.
4. After the message itself is delivered, a metadata-only companion
   message goes to every connected peer with the capability, whichever
   room they are in. This fan-out is best effort.
"""
import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote

from filehost.chat.manager import ChatMessage, ConnectionManager, PeerSession
from filehost.files.service import FileHost
from filehost.files.storage import sanitize_filename
from filehost.tags.scanner import iter_file_links
from filehost.tags.schemas import METADATA_TAG, ProtocolTag, build_metadata, build_metadata_tag

logger = logging.getLogger(__name__)

# Capability peers negotiate to receive metadata tags and companion messages
FILEHOST_CAP = "filehost"

TLS_REQUIRED_NOTICE = (
    "You cannot send FILEHOST URLs over a non-TLS connection. "
    "Please reconnect using a secure (wss://) connection."
)


@dataclass
class OutgoingCheck:
    """Result of inspecting an outgoing message.

    Exactly one of ``notice`` (message rejected) or ``tag`` (metadata to
    attach) may be set; neither means the message goes out unchanged.
    """
    notice: Optional[str] = None
    tag: Optional[ProtocolTag] = None

    @property
    def rejected(self) -> bool:
        return self.notice is not None


class TagPropagator:
    """Attaches file metadata to chat messages and fans it out."""

    def __init__(self, connections: ConnectionManager) -> None:
        self.connections = connections
        connections.add_capability(FILEHOST_CAP, tags=[METADATA_TAG])

    def inspect(self, session: PeerSession, text: str, filehost: FileHost) -> OutgoingCheck:
        """Apply the TLS policy and derive the metadata tag for a message."""
        if filehost.require_tls and not session.secure and filehost.public_url in text:
            logger.warning(
                f"[FileHost] Rejected message from {session.user_id}: "
                "FileHost URL over an unencrypted connection"
            )
            return OutgoingCheck(notice=TLS_REQUIRED_NOTICE)
        return OutgoingCheck(tag=self.metadata_tag(text, filehost))

    def metadata_tag(self, text: str, filehost: FileHost) -> Optional[ProtocolTag]:
        """Metadata tag for the first link that names an existing hosted file."""
        for link in iter_file_links(text, filehost.file_url_prefix):
            filename = sanitize_filename(unquote(link.filename))
            if not filename or not filehost.store.exists(filename):
                logger.debug(f"[FileHost] Link does not resolve to a stored file: {link.url}")
                continue

            metadata = build_metadata(link.url, filename)
            logger.info(f"[FileHost] Tagging link to {filename} as {metadata.category.value}")
            return build_metadata_tag(metadata)
        return None

    async def fan_out(self, message: ChatMessage, tag: ProtocolTag) -> int:
        """Send the companion metadata-only message to every capable peer.

        Returns:
            Number of peers reached.
        """
        companion = {
            "type": "tagmsg",
            "roomId": message.roomId,
            "userId": message.userId,
            "msgId": message.id,
            "tags": {tag.name: tag.value},
            "ts": time.time(),
        }
        peers = self.connections.sessions_with_capability(FILEHOST_CAP)
        delivered = await self.connections.send_to_sessions(companion, peers)
        if delivered < len(peers):
            logger.debug(
                f"[FileHost] Companion message reached {delivered}/{len(peers)} peers"
            )
        return delivered
