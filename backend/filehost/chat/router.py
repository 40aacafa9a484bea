"""Chat router providing the WebSocket chat host.

This module provides:
    - WebSocket /ws/chat/{room_id}: Real-time chat messaging
    - GET /isupport: Server feature advertisement (FILEHOST discovery)

Protocol Message Types (client -> server):
    - cap: Enable/disable capabilities ({req: ["filehost", "-message-tags"]})
    - join: User registration ({displayName, identitySource, ssoEmail})
    - command: Chat command ({command: "filehost", args: [...]})
    - (no type): Chat message ({content})

Server -> client:
    - connected, history, cap, user_joined, user_left, message,
      tagmsg, notice, command_result, error
"""
import json
import logging
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from filehost.chat.commands import COMMAND_NAME, run_filehost_command
from filehost.chat.manager import ChatMessage, manager
from filehost.files.service import get_filehost
from filehost.tags.propagator import TagPropagator

logger = logging.getLogger(__name__)

router = APIRouter()

propagator = TagPropagator(manager)


def isupport_tokens() -> dict:
    """Feature tokens advertised to clients on connect."""
    return {"FILEHOST": get_filehost().public_url}


def is_secure(websocket: WebSocket) -> bool:
    """Whether the peer's transport is encrypted (directly or via a TLS proxy)."""
    if websocket.url.scheme == "wss":
        return True
    forwarded = websocket.headers.get("x-forwarded-proto", "")
    return forwarded.split(",")[0].strip().lower() == "https"


@router.get("/isupport")
async def isupport() -> JSONResponse:
    """Return the server feature tokens, including the FILEHOST URL."""
    return JSONResponse(isupport_tokens())


@router.websocket("/ws/chat/{room_id}")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    room_id: str,
) -> None:
    """WebSocket endpoint for real-time chat in a room.

    Protocol Flow:
        1. Client connects → Server assigns userId
           → Server sends: {type: "connected", userId, isupport, caps}
           → Server sends: {type: "history", messages: [], users: []}
        2. Client sends: {type: "cap", req: ["filehost"]}
           → Server replies: {type: "cap", ack: [...], nak: [...]}
        3. Client sends: {type: "join", displayName, identitySource, ssoEmail}
           → Server broadcasts: {type: "user_joined", user: {}, users: []}
        4. Client sends: {content}
           → Server broadcasts: {type: "message", ...fullMessage}
           → If it links a hosted file, capable peers also get {type: "tagmsg"}
        5. Client sends: {type: "command", command: "filehost", args: []}
           → Server replies: {type: "command_result", lines: [...]}
        6. On disconnect → Server broadcasts: {type: "user_left", user: {}, users: []}
    """
    secure = is_secure(websocket)
    logger.info(f"[WS] New connection to room: {room_id}, secure={secure}")

    assigned_user_id, history = await manager.connect(websocket, room_id, secure=secure)
    session = manager.get_session(websocket)

    try:
        await websocket.send_json({
            "type": "connected",
            "userId": assigned_user_id,
            "isupport": isupport_tokens(),
            "caps": sorted(manager.supported_caps),
        })

        await websocket.send_json({
            "type": "history",
            "messages": [
                manager.render_for(websocket, msg.model_dump()) for msg in history
            ],
            "users": [u.model_dump() for u in manager.get_room_users(room_id)],
        })

        # Main message loop
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = None
            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "error": "Invalid message format"})
                continue

            message_type = data.get("type")
            logger.debug(f"[WS] Room {room_id} received: type={message_type or 'message'}")

            # --- Capability negotiation ---
            if message_type == "cap":
                requested = data.get("req") or []
                if not isinstance(requested, list):
                    requested = [requested]
                ack, nak = manager.request_capabilities(websocket, requested)
                await websocket.send_json({"type": "cap", "ack": ack, "nak": nak})
                continue

            # --- User registration ---
            if message_type == "join":
                display_name = data.get("displayName") or ""
                identity_source = data.get("identitySource") or "anonymous"
                sso_email = data.get("ssoEmail")
                if not all(isinstance(v, str) for v in (display_name, identity_source)) or \
                        not (sso_email is None or isinstance(sso_email, str)):
                    await websocket.send_json({
                        "type": "error",
                        "error": "Invalid join: displayName, identitySource and ssoEmail must be strings"
                    })
                    continue
                user = manager.register_user(
                    websocket=websocket,
                    room_id=room_id,
                    user_id=assigned_user_id,
                    display_name=display_name,
                    identity_source=identity_source,
                    sso_email=sso_email,
                )
                users_data = [u.model_dump() for u in manager.get_room_users(room_id)]
                await manager.broadcast({
                    "type": "user_joined",
                    "user": user.model_dump(),
                    "users": users_data
                }, room_id)
                continue

            # --- Chat commands ---
            if message_type == "command":
                command = str(data.get("command", "")).lower()
                if command != COMMAND_NAME:
                    await websocket.send_json({
                        "type": "error",
                        "error": f"Unknown command: {command or '(none)'}"
                    })
                    continue
                args = data.get("args") or []
                if not isinstance(args, list):
                    args = [args]
                reply = run_filehost_command(
                    manager.get_user(room_id, assigned_user_id), args, get_filehost()
                )
                await websocket.send_json(reply.to_message())
                continue

            if message_type not in (None, "message"):
                await websocket.send_json({
                    "type": "error",
                    "error": f"Unsupported message type: {message_type}"
                })
                continue

            # --- Regular chat message ---
            content = data.get("content", "")
            if not isinstance(content, str) or not content.strip():
                await websocket.send_json({
                    "type": "error",
                    "error": "Invalid message format: content is required"
                })
                continue

            filehost = get_filehost()
            check = propagator.inspect(session, content, filehost)
            if check.rejected:
                await websocket.send_json({"type": "notice", "message": check.notice})
                continue

            user_info = manager.get_user(room_id, assigned_user_id)
            display_name = user_info.displayName if user_info else data.get("displayName", "")

            full_message = ChatMessage(
                roomId=room_id,
                userId=assigned_user_id,
                displayName=display_name,
                content=content,
            )
            if check.tag is not None:
                full_message.tags[check.tag.name] = check.tag.value
            manager.add_message(room_id, full_message)

            logger.info(f"[WS] Broadcasting message to {manager.get_room_size(room_id)} connections")
            await manager.broadcast(
                {"type": "message", **full_message.model_dump()},
                room_id
            )

            if check.tag is not None:
                await propagator.fan_out(full_message, check.tag)

    except WebSocketDisconnect:
        disconnected_user = manager.disconnect(websocket, room_id)
        if disconnected_user:
            users_data = [u.model_dump() for u in manager.get_room_users(room_id)]
            await manager.broadcast({
                "type": "user_left",
                "user": disconnected_user.model_dump(),
                "users": users_data
            }, room_id)
    except Exception:
        logger.exception(f"[WS] Chat handler failed in room {room_id}")
        manager.disconnect(websocket, room_id)
        try:
            await websocket.close(code=1011)
        except RuntimeError:
            # Already closed by the peer or the server
            pass
