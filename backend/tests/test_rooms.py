"""Tests for room membership and fan-out."""
import pytest

from parley.chat.rooms import RoomRouter


class TestMembership:
    def test_join_and_leave(self, make_socket):
        router = RoomRouter()
        router.attach("c1", make_socket())
        router.join("c1", "chat:1")

        assert router.members("chat:1") == ["c1"]
        assert router.rooms_of("c1") == {"chat:1"}

        assert router.leave("c1", "chat:1") is True
        assert router.rooms_of("c1") == set()

    def test_empty_room_is_dropped(self, make_socket):
        router = RoomRouter()
        router.attach("c1", make_socket())
        router.join("c1", "chat:1")
        router.leave("c1", "chat:1")

        assert router.has_room("chat:1") is False

    def test_leave_room_not_joined(self):
        router = RoomRouter()
        assert router.leave("c1", "chat:1") is False

    def test_join_twice_is_harmless(self, make_socket):
        router = RoomRouter()
        router.attach("c1", make_socket())
        router.join("c1", "chat:1")
        router.join("c1", "chat:1")

        assert router.room_size("chat:1") == 1

    def test_detach_leaves_every_room(self, make_socket):
        router = RoomRouter()
        router.attach("c1", make_socket())
        router.attach("c2", make_socket())
        for key in ("chat:b", "chat:a"):
            router.join("c1", key)
        router.join("c2", "chat:a")

        assert router.detach("c1") == ["chat:a", "chat:b"]
        assert router.members("chat:a") == ["c2"]
        assert router.has_room("chat:b") is False
        assert router.is_attached("c1") is False


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_broadcast_reaches_every_member(self, make_socket):
        router = RoomRouter()
        ws1, ws2, outsider = make_socket(), make_socket(), make_socket()
        router.attach("c1", ws1)
        router.attach("c2", ws2)
        router.attach("c3", outsider)
        router.join("c1", "chat:1")
        router.join("c2", "chat:1")

        delivered = await router.broadcast("chat:1", "ping", {"n": 1})

        assert delivered == 2
        assert ws1.sent == [{"type": "ping", "n": 1}]
        assert ws2.sent == [{"type": "ping", "n": 1}]
        assert outsider.sent == []

    @pytest.mark.asyncio
    async def test_broadcast_exclude_skips_origin(self, make_socket):
        router = RoomRouter()
        ws1, ws2 = make_socket(), make_socket()
        router.attach("c1", ws1)
        router.attach("c2", ws2)
        router.join("c1", "chat:1")
        router.join("c2", "chat:1")

        await router.broadcast("chat:1", "ping", {}, exclude="c1")

        assert ws1.sent == []
        assert len(ws2.sent) == 1

    @pytest.mark.asyncio
    async def test_broadcast_to_unknown_room(self):
        router = RoomRouter()
        assert await router.broadcast("chat:none", "ping", {}) == 0

    @pytest.mark.asyncio
    async def test_dead_connection_is_detached(self, make_socket):
        router = RoomRouter()
        alive, dead = make_socket(), make_socket(broken=True)
        router.attach("alive", alive)
        router.attach("dead", dead)
        router.join("alive", "chat:1")
        router.join("dead", "chat:1")

        delivered = await router.broadcast("chat:1", "ping", {})

        assert delivered == 1
        assert router.members("chat:1") == ["alive"]
        assert router.is_attached("dead") is False

    @pytest.mark.asyncio
    async def test_broadcast_all_ignores_rooms(self, make_socket):
        router = RoomRouter()
        ws1, ws2 = make_socket(), make_socket()
        router.attach("c1", ws1)
        router.attach("c2", ws2)

        assert await router.broadcast_all("hello", {}) == 2

    @pytest.mark.asyncio
    async def test_send_to(self, make_socket):
        router = RoomRouter()
        ws = make_socket()
        router.attach("c1", ws)

        assert await router.send_to("c1", "ack", {"ok": True}) is True
        assert await router.send_to("missing", "ack", {}) is False
        assert ws.sent == [{"type": "ack", "ok": True}]
