"""Tests for message submission and fan-out through the chat core."""
import pytest

from parley.chat.pipeline import (
    MessagePipeline,
    chat_id_from_room,
    room_key,
    string_field,
    to_receive_payload,
)
from parley.errors import AccessDenied, NotFound, UnregisteredConnection, ValidationError
from parley.files.schemas import BlobRef


async def _joined(core, socket, user, chat):
    cid = await core.connect(socket)
    await core.join_chat(cid, user.id, user.username)
    await core.join_room(cid, room_key(chat.id))
    return cid


class TestRoomKeys:
    def test_room_key_format(self):
        assert room_key("abc") == "chat:abc"

    def test_chat_id_from_room(self):
        assert chat_id_from_room("chat:abc") == "abc"
        assert chat_id_from_room("room:abc") is None
        assert chat_id_from_room("chat:") is None
        assert chat_id_from_room(None) is None
        assert chat_id_from_room(123) is None
        assert chat_id_from_room(["chat:abc"]) is None

    def test_string_field(self):
        assert string_field({"roomKey": "", "room": "chat:1"}, "roomKey", "room") == "chat:1"
        assert string_field({}, "chatId") is None
        with pytest.raises(ValidationError):
            string_field({"chatId": 7}, "chatId")


class TestMessagePipeline:
    @pytest.mark.asyncio
    async def test_submit_text_persists(self, store, alice, direct_chat):
        message = await MessagePipeline(store).submit_text(alice.id, direct_chat.id, "hi")

        assert message.content == "hi"
        assert message.sender_name == "alice"
        assert message.file_url is None
        assert (await store.get_message(message.id)).id == message.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   \n", None])
    async def test_empty_content_rejected(self, store, alice, direct_chat, content):
        with pytest.raises(ValidationError):
            await MessagePipeline(store).submit_text(alice.id, direct_chat.id, content)
        assert await store.list_messages(direct_chat.id) == []

    @pytest.mark.asyncio
    async def test_non_member_rejected(self, store, carol, direct_chat):
        with pytest.raises(AccessDenied):
            await MessagePipeline(store).submit_text(carol.id, direct_chat.id, "hi")

    @pytest.mark.asyncio
    async def test_missing_chat(self, store, alice):
        with pytest.raises(NotFound):
            await MessagePipeline(store).submit_text(alice.id, "no-such-chat", "hi")

    @pytest.mark.asyncio
    async def test_attachment_is_classified(self, store, alice, direct_chat):
        blob = BlobRef(url="http://files/1", mime_type="application/octet-stream", file_name="clip.MOV")
        message = await MessagePipeline(store).submit_attachment(alice.id, direct_chat.id, blob)

        assert message.content is None
        assert message.file_type == "video"
        assert message.file_name == "clip.MOV"

    @pytest.mark.asyncio
    async def test_receive_payload_shape(self, store, alice, direct_chat):
        message = await MessagePipeline(store).submit_text(alice.id, direct_chat.id, "hi")
        payload = to_receive_payload(message)

        assert payload["id"] == message.id
        assert payload["chatId"] == direct_chat.id
        assert payload["senderId"] == alice.id
        assert payload["senderName"] == "alice"
        assert payload["text"] == "hi"
        assert payload["room"] == room_key(direct_chat.id)
        assert payload["timestamp"] == message.created_at.isoformat()
        assert "fileUrl" not in payload


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_self_echo_carries_identical_ids(self, core, alice, bob, direct_chat, make_socket):
        ws_a, ws_b = make_socket(), make_socket()
        c_a = await _joined(core, ws_a, alice, direct_chat)
        await _joined(core, ws_b, bob, direct_chat)

        message = await core.send_message(
            c_a, {"room": room_key(direct_chat.id), "text": "hi", "senderId": alice.id}
        )

        got_a = ws_a.events("receive_message")
        got_b = ws_b.events("receive_message")
        assert len(got_a) == len(got_b) == 1
        assert got_a[0]["id"] == got_b[0]["id"] == message.id
        assert got_a[0]["timestamp"] == got_b[0]["timestamp"]

    @pytest.mark.asyncio
    async def test_send_clears_typing_for_others(self, core, alice, bob, direct_chat, make_socket):
        ws_a, ws_b = make_socket(), make_socket()
        c_a = await _joined(core, ws_a, alice, direct_chat)
        await _joined(core, ws_b, bob, direct_chat)

        await core.send_message(c_a, {"room": room_key(direct_chat.id), "text": "hi"})

        assert ws_b.events("user_typing")[-1]["isTyping"] is False
        assert ws_a.events("user_typing") == []

    @pytest.mark.asyncio
    async def test_sender_mismatch_rejected(self, core, alice, bob, direct_chat, make_socket):
        ws_a = make_socket()
        c_a = await _joined(core, ws_a, alice, direct_chat)

        with pytest.raises(AccessDenied):
            await core.send_message(
                c_a, {"room": room_key(direct_chat.id), "text": "hi", "senderId": bob.id}
            )
        assert ws_a.events("receive_message") == []

    @pytest.mark.asyncio
    async def test_unregistered_connection_rejected(self, core, direct_chat, make_socket):
        cid = await core.connect(make_socket())

        with pytest.raises(UnregisteredConnection):
            await core.send_message(cid, {"room": room_key(direct_chat.id), "text": "hi"})

    @pytest.mark.asyncio
    async def test_missing_room_rejected(self, core, alice, direct_chat, make_socket):
        c_a = await _joined(core, make_socket(), alice, direct_chat)

        with pytest.raises(ValidationError):
            await core.send_message(c_a, {"text": "hi"})

    @pytest.mark.asyncio
    async def test_attachment_event(self, core, alice, bob, direct_chat, make_socket):
        ws_b = make_socket()
        c_a = await _joined(core, make_socket(), alice, direct_chat)
        await _joined(core, ws_b, bob, direct_chat)

        await core.send_message(c_a, {
            "room": room_key(direct_chat.id),
            "fileUrl": "http://files/abc",
            "fileType": "application/pdf",
            "fileName": "report.PDF",
        })

        received = ws_b.events("receive_message")[0]
        assert received["fileUrl"] == "http://files/abc"
        assert received["fileType"] == "document"
        assert received["fileName"] == "report.PDF"
        assert received["text"] is None

    @pytest.mark.asyncio
    async def test_chat_deleted_during_submission(
        self, core, store, alice, bob, direct_chat, make_socket, monkeypatch
    ):
        """Membership passed, chat vanished before the write: error, no broadcast."""
        ws_a, ws_b = make_socket(), make_socket()
        c_a = await _joined(core, ws_a, alice, direct_chat)
        await _joined(core, ws_b, bob, direct_chat)

        async def stale_is_member(chat_id, user_id):
            return True

        await store.delete_chat(direct_chat.id)
        monkeypatch.setattr(store, "is_member", stale_is_member)

        with pytest.raises(NotFound):
            await core.send_message(c_a, {"room": room_key(direct_chat.id), "text": "hi"})

        assert ws_a.events("receive_message") == []
        assert ws_b.events("receive_message") == []
        assert await store.list_messages(direct_chat.id) == []


class TestJoinRoom:
    @pytest.mark.asyncio
    async def test_member_joins_and_gets_ack(self, core, alice, direct_chat, make_socket):
        ws = make_socket()
        await _joined(core, ws, alice, direct_chat)

        assert ws.events("room_joined") == [
            {"type": "room_joined", "roomKey": room_key(direct_chat.id)}
        ]

    @pytest.mark.asyncio
    async def test_non_member_refused(self, core, carol, direct_chat, make_socket):
        cid = await core.connect(make_socket())
        await core.join_chat(cid, carol.id, carol.username)

        with pytest.raises(AccessDenied):
            await core.join_room(cid, room_key(direct_chat.id))
        assert core.rooms.room_size(room_key(direct_chat.id)) == 0

    @pytest.mark.asyncio
    async def test_unverified_join_when_disabled(self, core, carol, direct_chat, make_socket, isolated_services):
        isolated_services.rooms.verify_membership = False
        cid = await core.connect(make_socket())

        await core.join_room(cid, room_key(direct_chat.id))
        assert core.rooms.members(room_key(direct_chat.id)) == [cid]

    @pytest.mark.asyncio
    async def test_malformed_room_key(self, core, alice, make_socket):
        cid = await core.connect(make_socket())
        await core.join_chat(cid, alice.id, alice.username)

        with pytest.raises(ValidationError):
            await core.join_room(cid, "lobby")
