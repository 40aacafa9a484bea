"""Tests for per-peer tag delivery and metadata propagation."""
import json

import pytest

from filehost.chat.manager import MESSAGE_TAGS_CAP, ChatMessage, ConnectionManager
from filehost.files.service import get_filehost
from filehost.tags.propagator import FILEHOST_CAP, TLS_REQUIRED_NOTICE, TagPropagator
from filehost.tags.schemas import METADATA_TAG


class FakeWebSocket:
    """Records what the server sends; optionally fails every send."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(message)


@pytest.fixture
def connections():
    return ConnectionManager()


@pytest.fixture
def propagator(connections):
    return TagPropagator(connections)


async def _connect(connections, room_id="room", secure=False, caps=(), fail=False):
    ws = FakeWebSocket(fail=fail)
    await connections.connect(ws, room_id, secure=secure)
    if caps:
        connections.request_capabilities(ws, caps)
    return ws


class TestCapabilities:
    @pytest.mark.asyncio
    async def test_propagator_registers_capability(self, connections, propagator):
        assert FILEHOST_CAP in connections.supported_caps
        assert connections.tag_capabilities[METADATA_TAG] == FILEHOST_CAP

    @pytest.mark.asyncio
    async def test_request_and_release(self, connections, propagator):
        ws = await _connect(connections)
        assert connections.request_capabilities(ws, ["filehost", "nope"]) == (["filehost"], ["nope"])
        assert connections.get_session(ws).has_cap(FILEHOST_CAP)
        connections.request_capabilities(ws, ["-filehost"])
        assert not connections.get_session(ws).has_cap(FILEHOST_CAP)

    @pytest.mark.asyncio
    async def test_unknown_socket_naks_everything(self, connections):
        assert connections.request_capabilities(FakeWebSocket(), ["message-tags"]) == ([], ["message-tags"])

    @pytest.mark.asyncio
    async def test_sessions_with_capability_spans_rooms(self, connections, propagator):
        a = await _connect(connections, "a", caps=["filehost"])
        await _connect(connections, "b")
        c = await _connect(connections, "c", caps=["filehost"])
        peers = connections.sessions_with_capability(FILEHOST_CAP)
        assert {s.websocket for s in peers} == {a, c}


class TestRenderFor:
    @pytest.mark.asyncio
    async def test_tag_requires_its_capability(self, connections, propagator):
        ws = await _connect(connections, caps=[MESSAGE_TAGS_CAP])
        message = {"type": "message", "tags": {METADATA_TAG: "{}", "+react": "thumbsup"}}
        assert connections.render_for(ws, message) == {"type": "message", "tags": {"+react": "thumbsup"}}

    @pytest.mark.asyncio
    async def test_capable_peer_sees_message_unchanged(self, connections, propagator):
        ws = await _connect(connections, caps=[FILEHOST_CAP])
        message = {"type": "message", "tags": {METADATA_TAG: "{}"}}
        assert connections.render_for(ws, message) is message

    @pytest.mark.asyncio
    async def test_untagged_message_is_untouched(self, connections):
        ws = await _connect(connections)
        message = {"type": "message", "tags": {}}
        assert connections.render_for(ws, message) is message


class TestInspect:
    @pytest.mark.asyncio
    async def test_tags_link_to_stored_file(self, connections, propagator, storage_dir):
        (storage_dir / "notes.txt").write_bytes(b"n")
        ws = await _connect(connections)
        check = propagator.inspect(connections.get_session(ws), "see https://host/files/notes.txt", get_filehost())
        assert not check.rejected
        assert check.tag.name == METADATA_TAG
        assert json.loads(check.tag.value)["category"] == "text"

    @pytest.mark.asyncio
    async def test_quoted_link_resolves(self, connections, propagator, storage_dir):
        (storage_dir / "my notes.txt").write_bytes(b"n")
        ws = await _connect(connections)
        check = propagator.inspect(connections.get_session(ws), "https://host/files/my%20notes.txt", get_filehost())
        assert json.loads(check.tag.value)["filename"] == "my notes.txt"

    @pytest.mark.asyncio
    async def test_no_tag_without_link(self, connections, propagator, storage_dir):
        ws = await _connect(connections)
        check = propagator.inspect(connections.get_session(ws), "hello there", get_filehost())
        assert check.tag is None and not check.rejected

    @pytest.mark.asyncio
    async def test_later_link_is_tagged_when_first_is_missing(self, connections, propagator, storage_dir):
        (storage_dir / "real.pdf").write_bytes(b"%PDF")
        ws = await _connect(connections)
        text = "old https://host/files/gone.png and new https://host/files/real.pdf"
        check = propagator.inspect(connections.get_session(ws), text, get_filehost())
        assert json.loads(check.tag.value) == {
            "url": "https://host/files/real.pdf",
            "filename": "real.pdf",
            "category": "document",
        }

    @pytest.mark.asyncio
    async def test_later_link_is_tagged_after_empty_link(self, connections, propagator, storage_dir):
        (storage_dir / "real.pdf").write_bytes(b"%PDF")
        ws = await _connect(connections)
        text = "https://host/files/ https://host/files/real.pdf"
        check = propagator.inspect(connections.get_session(ws), text, get_filehost())
        assert json.loads(check.tag.value)["filename"] == "real.pdf"

    @pytest.mark.asyncio
    async def test_first_resolvable_link_wins(self, connections, propagator, storage_dir):
        (storage_dir / "one.txt").write_bytes(b"1")
        (storage_dir / "two.txt").write_bytes(b"2")
        ws = await _connect(connections)
        text = "https://host/files/one.txt https://host/files/two.txt"
        check = propagator.inspect(connections.get_session(ws), text, get_filehost())
        assert json.loads(check.tag.value)["filename"] == "one.txt"

    @pytest.mark.asyncio
    async def test_traversal_link_does_not_resolve(self, connections, propagator, storage_dir):
        (storage_dir.parent / "outside.txt").write_bytes(b"x")
        ws = await _connect(connections)
        check = propagator.inspect(connections.get_session(ws), "https://host/files/../outside.txt", get_filehost())
        assert check.tag is None

    @pytest.mark.asyncio
    async def test_plaintext_rejected_when_tls_required(self, connections, propagator, configure, storage_dir):
        configure(require_tls=True)
        (storage_dir / "notes.txt").write_bytes(b"n")
        ws = await _connect(connections, secure=False)
        check = propagator.inspect(connections.get_session(ws), "https://host/files/notes.txt", get_filehost())
        assert check.rejected
        assert check.notice == TLS_REQUIRED_NOTICE
        assert check.tag is None

    @pytest.mark.asyncio
    async def test_secure_session_passes_tls_policy(self, connections, propagator, configure, storage_dir):
        configure(require_tls=True)
        (storage_dir / "notes.txt").write_bytes(b"n")
        ws = await _connect(connections, secure=True)
        check = propagator.inspect(connections.get_session(ws), "https://host/files/notes.txt", get_filehost())
        assert not check.rejected
        assert check.tag is not None


class TestFanOut:
    @pytest.mark.asyncio
    async def test_companion_goes_to_capable_peers_only(self, connections, propagator, storage_dir):
        (storage_dir / "a.png").write_bytes(b"p")
        capable = await _connect(connections, "a", caps=[FILEHOST_CAP])
        other_room = await _connect(connections, "b", caps=[FILEHOST_CAP])
        plain = await _connect(connections, "a")

        tag = propagator.metadata_tag("https://host/files/a.png", get_filehost())
        message = ChatMessage(roomId="a", userId="u1", content="https://host/files/a.png")

        assert await propagator.fan_out(message, tag) == 2
        for ws in (capable, other_room):
            companion = ws.sent[-1]
            assert companion["type"] == "tagmsg"
            assert companion["msgId"] == message.id
            assert companion["tags"] == {tag.name: tag.value}
        assert plain.sent == []

    @pytest.mark.asyncio
    async def test_failed_delivery_is_skipped(self, connections, propagator, storage_dir):
        (storage_dir / "a.png").write_bytes(b"p")
        healthy = await _connect(connections, "a", caps=[FILEHOST_CAP])
        await _connect(connections, "b", caps=[FILEHOST_CAP], fail=True)

        tag = propagator.metadata_tag("https://host/files/a.png", get_filehost())
        message = ChatMessage(roomId="a", userId="u1", content="x")

        assert await propagator.fan_out(message, tag) == 1
        assert healthy.sent[-1]["type"] == "tagmsg"

    @pytest.mark.asyncio
    async def test_disconnected_peer_is_skipped(self, connections, propagator, storage_dir):
        (storage_dir / "a.png").write_bytes(b"p")
        gone = await _connect(connections, "b", caps=[FILEHOST_CAP])
        peers = connections.sessions_with_capability(FILEHOST_CAP)
        connections.disconnect(gone, "b")

        tag = propagator.metadata_tag("https://host/files/a.png", get_filehost())
        companion = {"type": "tagmsg", "tags": {tag.name: tag.value}}
        assert await connections.send_to_sessions(companion, peers) == 0
        assert gone.sent == []


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_broadcast_filters_per_peer_and_drops_dead(self, connections, propagator):
        capable = await _connect(connections, caps=[FILEHOST_CAP])
        plain = await _connect(connections)
        dead = await _connect(connections, fail=True)

        await connections.broadcast({"type": "message", "tags": {METADATA_TAG: "{}"}}, "room")

        assert capable.sent == [{"type": "message", "tags": {METADATA_TAG: "{}"}}]
        assert plain.sent == [{"type": "message"}]
        assert dead not in connections.active_connections["room"]
        assert dead not in connections.sessions
        assert connections.sessions_with_capability(FILEHOST_CAP) == [connections.get_session(capable)]

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, connections):
        from filehost.chat.manager import MAX_HISTORY

        for i in range(MAX_HISTORY + 5):
            connections.add_message("room", ChatMessage(roomId="room", userId="u", content=str(i)))
        history = connections.get_history("room")
        assert len(history) == MAX_HISTORY
        assert history[0].content == "5"
