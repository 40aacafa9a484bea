"""WebSocket connection manager for real-time chat rooms.

This module is the connection layer the file-hosting features ride on. It
tracks who is connected, which room they are in, which protocol
capabilities they negotiated and whether their transport is encrypted.

Key features:
    - Multiple chat rooms with isolated history and user lists
    - Automatic guest numbering (Guest 1, Guest 2, etc.)
    - Per-peer capability negotiation (CapabilityState)
    - Message tags delivered only to peers whose capabilities allow them
    - Concurrent broadcasting with asyncio.gather()
    - Automatic dead connection cleanup

Concurrency:
    All state is owned by the single event loop; nothing here is safe to
    touch from other threads. Fan-out helpers iterate over snapshots, so
    peers may disconnect mid-send without affecting the iteration.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from fastapi import WebSocket
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Generic capability for receiving message tags
MESSAGE_TAGS_CAP = "message-tags"

# Capabilities a peer may request
SUPPORTED_CAPS = {MESSAGE_TAGS_CAP}

# Messages kept per room for late joiners
MAX_HISTORY = 200


# =============================================================================
# Data Models
# =============================================================================


class IdentitySource(str, Enum):
    """How a user's identity was established.

    Attributes:
        SSO: Verified via SSO; the e-mail is the user's account name.
        NAMED: User provided a custom display name.
        ANONYMOUS: Backend auto-generated name (Guest N).
    """
    SSO = "sso"
    NAMED = "named"
    ANONYMOUS = "anonymous"


class RoomUser(BaseModel):
    """User information stored in a chat room.

    Attributes:
        userId: Backend-assigned unique identifier for this connection.
        displayName: Human-readable name shown in the chat UI.
        identitySource: How the identity was established.
        account: Logged-in account name (SSO users only).
    """
    userId: str = Field(..., description="Unique user ID")
    displayName: str = Field(..., description="Display name shown in UI")
    identitySource: IdentitySource = Field(
        default=IdentitySource.ANONYMOUS,
        description="How identity was established (sso, named, anonymous)"
    )
    account: Optional[str] = Field(default=None, description="Logged-in account name")


class ChatMessage(BaseModel):
    """Chat message as stored in history and broadcast to clients.

    Attributes:
        id: Unique message identifier (auto-generated UUID).
        roomId: Room this message belongs to.
        userId: Sender's user ID.
        displayName: Sender's display name.
        content: Message text content.
        ts: Unix timestamp (seconds since epoch).
        tags: Protocol tags (name -> value) attached to this message.
    """
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique message ID"
    )
    roomId: str = Field(..., description="Room ID this message belongs to")
    userId: str = Field(..., description="User ID of the sender")
    displayName: str = Field(default="", description="Display name of the sender")
    content: str = Field(..., description="Message content")
    ts: float = Field(
        default_factory=time.time,
        description="Timestamp in seconds since epoch"
    )
    tags: Dict[str, str] = Field(default_factory=dict, description="Protocol tags")


@dataclass
class PeerSession:
    """State of one connected peer.

    ``caps`` is the peer's CapabilityState: the set of capability names it
    has enabled.
    """
    websocket: WebSocket
    room_id: str
    user_id: str
    secure: bool = False
    caps: Set[str] = field(default_factory=set)

    def has_cap(self, name: str) -> bool:
        return name in self.caps


# =============================================================================
# Connection Manager
# =============================================================================


class ConnectionManager:
    """Manages WebSocket connections and message history for multiple chat rooms.

    Note:
        This is a singleton-style global instance. All WebSocket handlers
        share the same ConnectionManager to maintain consistent state.
    """

    def __init__(self) -> None:
        """Initialize empty connection manager."""
        # room_id -> list of active WebSocket connections
        self.active_connections: Dict[str, List[WebSocket]] = {}

        # room_id -> list of messages (bounded history)
        self.message_history: Dict[str, List[ChatMessage]] = {}

        # room_id -> {userId -> RoomUser}
        self.room_users: Dict[str, Dict[str, RoomUser]] = {}

        # room_id -> guest counter (for "Guest 1", "Guest 2" naming)
        self.guest_counters: Dict[str, int] = {}

        # websocket -> session state (room, user, capabilities, transport)
        self.sessions: Dict[WebSocket, PeerSession] = {}

        # capabilities peers may request
        self.supported_caps: Set[str] = set(SUPPORTED_CAPS)

        # tag name -> capability a peer needs to receive that tag
        self.tag_capabilities: Dict[str, str] = {}

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def connect(
        self, websocket: WebSocket, room_id: str, secure: bool = False
    ) -> Tuple[str, List[ChatMessage]]:
        """Accept a WebSocket connection, assign a userId and add it to a room.

        Args:
            websocket: The WebSocket connection to accept.
            room_id: The room ID to join.
            secure: Whether the transport is encrypted.

        Returns:
            Tuple of (userId, message_history).
        """
        await websocket.accept()

        # Generate userId on backend (never trust client-provided IDs)
        user_id = str(uuid.uuid4())

        self.active_connections.setdefault(room_id, [])
        self.message_history.setdefault(room_id, [])
        self.room_users.setdefault(room_id, {})
        self.guest_counters.setdefault(room_id, 0)

        self.active_connections[room_id].append(websocket)
        self.sessions[websocket] = PeerSession(
            websocket=websocket, room_id=room_id, user_id=user_id, secure=secure
        )
        logger.info(f"[Manager] User {user_id} connected to room {room_id} (secure={secure})")

        return (user_id, self.message_history[room_id])

    def register_user(
        self,
        websocket: WebSocket,
        room_id: str,
        user_id: str,
        display_name: str = "",
        identity_source: str = "anonymous",
        sso_email: Optional[str] = None,
    ) -> RoomUser:
        """Register a user in a room after the client's join message.

        Anonymous users get a "Guest N" name. Only an SSO identity with an
        e-mail address becomes a logged-in account.
        """
        if room_id not in self.room_users:
            self.room_users[room_id] = {}
            self.guest_counters.setdefault(room_id, 0)

        try:
            source = IdentitySource(identity_source)
        except ValueError:
            source = IdentitySource.ANONYMOUS

        display_name = (display_name or "").strip()
        if not display_name:
            self.guest_counters[room_id] += 1
            display_name = f"Guest {self.guest_counters[room_id]}"
            if source != IdentitySource.SSO:
                source = IdentitySource.ANONYMOUS

        account = None
        if source == IdentitySource.SSO and sso_email:
            account = sso_email.strip() or None

        user = RoomUser(
            userId=user_id,
            displayName=display_name,
            identitySource=source,
            account=account,
        )
        self.room_users[room_id][user_id] = user
        logger.info(f"[Manager] Registered {display_name} ({user_id}) in room {room_id}")
        return user

    def get_user(self, room_id: str, user_id: str) -> Optional[RoomUser]:
        """Get a registered user, or None."""
        return self.room_users.get(room_id, {}).get(user_id)

    def get_room_users(self, room_id: str) -> List[RoomUser]:
        """Get all registered users in a room."""
        return list(self.room_users.get(room_id, {}).values())

    def get_session(self, websocket: WebSocket) -> Optional[PeerSession]:
        return self.sessions.get(websocket)

    def disconnect(self, websocket: WebSocket, room_id: str) -> Optional[RoomUser]:
        """Remove a connection and its user from a room.

        Returns:
            The RoomUser that left, if it had registered.
        """
        if websocket in self.active_connections.get(room_id, []):
            self.active_connections[room_id].remove(websocket)

        session = self.sessions.pop(websocket, None)
        if session is None:
            return None

        user = self.room_users.get(room_id, {}).pop(session.user_id, None)
        logger.info(f"[Manager] User {session.user_id} disconnected from room {room_id}")
        return user

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    def add_capability(self, name: str, tags: Iterable[str] = ()) -> None:
        """Make a capability negotiable and gate the given tags behind it."""
        self.supported_caps.add(name)
        for tag in tags:
            self.tag_capabilities[tag] = name

    def request_capabilities(
        self, websocket: WebSocket, names: Iterable[str]
    ) -> Tuple[List[str], List[str]]:
        """Enable (or, with a "-" prefix, disable) capabilities for a peer.

        Returns:
            Tuple of (acknowledged, rejected) capability requests.
        """
        session = self.sessions.get(websocket)
        if session is None:
            return ([], list(names))

        ack: List[str] = []
        nak: List[str] = []
        for raw in names:
            name = str(raw).strip()
            remove = name.startswith("-")
            cap = name[1:] if remove else name
            if cap not in self.supported_caps:
                nak.append(name)
                continue
            if remove:
                session.caps.discard(cap)
            else:
                session.caps.add(cap)
            ack.append(name)

        if ack:
            logger.info(f"[Manager] User {session.user_id} capabilities now {sorted(session.caps)}")
        return (ack, nak)

    def sessions_with_capability(self, name: str) -> List[PeerSession]:
        """Snapshot of all connected peers (any room) with a capability enabled."""
        return [s for s in list(self.sessions.values()) if s.has_cap(name)]

    def render_for(self, websocket: WebSocket, message: dict) -> dict:
        """Strip the tags a peer has not negotiated before delivery."""
        tags = message.get("tags")
        if not tags:
            return message

        session = self.sessions.get(websocket)
        caps = session.caps if session else set()
        visible = {
            name: value for name, value in tags.items()
            if self.tag_capabilities.get(name, MESSAGE_TAGS_CAP) in caps
        }
        if len(visible) == len(tags):
            return message
        rendered = {k: v for k, v in message.items() if k != "tags"}
        if visible:
            rendered["tags"] = visible
        return rendered

    # -------------------------------------------------------------------------
    # History and delivery
    # -------------------------------------------------------------------------

    def add_message(self, room_id: str, message: ChatMessage) -> ChatMessage:
        """Add a message to the room's history.

        Returns:
            The same message (for chaining).
        """
        history = self.message_history.setdefault(room_id, [])
        history.append(message)
        if len(history) > MAX_HISTORY:
            del history[:-MAX_HISTORY]
        return message

    async def broadcast(self, message: dict, room_id: str) -> None:
        """Broadcast a message to all connections in a room concurrently.

        Tags are filtered per recipient. Connections that fail to receive the
        message are removed from the room.
        """
        connections = list(self.active_connections.get(room_id, []))
        await self._deliver(message, room_id, connections)

    async def send_to_sessions(self, message: dict, sessions: List[PeerSession]) -> int:
        """Best-effort delivery of one message to an explicit set of peers.

        Peers that disconnected since the snapshot was taken are skipped.
        Failures are logged and otherwise ignored; nothing is retried.

        Returns:
            Number of peers the message was delivered to.
        """
        targets = [s for s in sessions if s.websocket in self.sessions]
        if not targets:
            return 0
        results = await asyncio.gather(
            *[self._safe_send(s.websocket, self.render_for(s.websocket, message)) for s in targets],
            return_exceptions=True
        )
        return sum(1 for result in results if result is True)

    async def _deliver(self, message: dict, room_id: str, connections: List[WebSocket]) -> None:
        if not connections:
            return

        # Send to all connections concurrently
        results = await asyncio.gather(
            *[self._safe_send(conn, self.render_for(conn, message)) for conn in connections],
            return_exceptions=True
        )

        # Remove failed connections
        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(room_id, failed_connections)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(
        self, room_id: str, failed_connections: List[WebSocket]
    ) -> None:
        """Remove failed connections and their sessions from a room."""
        for conn in failed_connections:
            if conn in self.active_connections.get(room_id, []):
                self.active_connections[room_id].remove(conn)
            session = self.sessions.pop(conn, None)
            if session is not None:
                self.room_users.get(room_id, {}).pop(session.user_id, None)
            logger.debug(f"Removed dead connection from room {room_id}")

    def get_room_size(self, room_id: str) -> int:
        """Get the number of active connections in a room."""
        return len(self.active_connections.get(room_id, []))

    def get_history(self, room_id: str) -> List[ChatMessage]:
        """Get the stored messages of a room, oldest first."""
        return list(self.message_history.get(room_id, []))

    def clear_room(self, room_id: str) -> None:
        """Drop all state for a room (connections, history, users)."""
        for conn in self.active_connections.pop(room_id, []):
            self.sessions.pop(conn, None)
        self.message_history.pop(room_id, None)
        self.room_users.pop(room_id, None)
        self.guest_counters.pop(room_id, None)
        logger.info(f"[Manager] Cleared room {room_id}")


# Global singleton instance
manager = ConnectionManager()
