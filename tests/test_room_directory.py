"""
tests.test_room_directory
~~~~~~~~~~~~~~~~~~~~~~~~~

RoomDirectory 单元测试：懒创建、房主、锁定、封禁与有界历史。
"""
from __future__ import annotations

from app.services.room_directory import RoomDirectory


class TestRoomLifecycle:

    def test_get_or_create_is_lazy_and_stable(self) -> None:
        rooms = RoomDirectory()

        assert rooms.get("lobby") is None
        room = rooms.get_or_create("lobby")
        assert rooms.get_or_create("lobby") is room
        assert room.host is None
        assert room.is_locked is False

    def test_room_ids_are_case_sensitive(self) -> None:
        rooms = RoomDirectory()

        assert rooms.get_or_create("Lobby") is not rooms.get_or_create("lobby")


class TestHost:

    def test_set_host_only_when_unset(self) -> None:
        rooms = RoomDirectory()

        assert rooms.set_host("lobby", "alice") is True
        assert rooms.set_host("lobby", "bob") is False
        assert rooms.get_host("lobby") == "alice"

    def test_forced_transfer(self) -> None:
        rooms = RoomDirectory()
        rooms.set_host("lobby", "alice")

        assert rooms.set_host("lobby", "bob", force=True) is True
        assert rooms.get_host("lobby") == "bob"

    def test_reassign_picks_first_remaining(self) -> None:
        rooms = RoomDirectory()
        rooms.set_host("lobby", "alice")

        assert rooms.reassign_host("lobby", ["bob", "carol"]) == "bob"
        assert rooms.get_host("lobby") == "bob"

    def test_reassign_with_no_one_left_clears_host(self) -> None:
        """房间清空后房主置空，下一个加入者可成为房主。"""
        rooms = RoomDirectory()
        rooms.set_host("lobby", "alice")

        assert rooms.reassign_host("lobby", []) is None
        assert rooms.get_host("lobby") is None
        assert rooms.set_host("lobby", "dave") is True


class TestLockAndBan:

    def test_toggle_lock(self) -> None:
        rooms = RoomDirectory()

        assert rooms.toggle_lock("lobby") is True
        assert rooms.is_locked("lobby") is True
        assert rooms.toggle_lock("lobby") is False
        assert rooms.is_locked("lobby") is False

    def test_ban_is_case_insensitive(self) -> None:
        rooms = RoomDirectory()
        rooms.ban("lobby", "Mallory")

        assert rooms.is_banned("lobby", "mallory") is True
        assert rooms.is_banned("lobby", "MALLORY") is True
        assert rooms.is_banned("den", "mallory") is False


class TestHistory:

    def test_append_stamps_id_and_timestamp(self) -> None:
        rooms = RoomDirectory()

        message = rooms.append_history("lobby", "alice", "hello")

        assert message.type == "chat"
        assert message.author == "alice"
        assert message.message == "hello"
        assert message.id
        assert message.timestamp.endswith("Z")
        assert rooms.get_history("lobby") == [message]

    def test_ids_are_unique(self) -> None:
        rooms = RoomDirectory()

        ids = {rooms.append_history("lobby", "alice", f"m{i}").id for i in range(10)}

        assert len(ids) == 10

    def test_history_evicts_oldest_beyond_capacity(self) -> None:
        """第 51 条消息后，第 1 条被淘汰，第 2–51 条按顺序保留。"""
        rooms = RoomDirectory(history_limit=50)

        for i in range(1, 52):
            rooms.append_history("lobby", "alice", f"message {i}")

        history = rooms.get_history("lobby")
        assert len(history) == 50
        assert [m.message for m in history] == [f"message {i}" for i in range(2, 52)]

    def test_history_is_per_room(self) -> None:
        rooms = RoomDirectory()
        rooms.append_history("lobby", "alice", "hi")

        assert rooms.get_history("den") == []

    def test_get_history_returns_snapshot(self) -> None:
        rooms = RoomDirectory()
        snapshot = rooms.get_history("lobby")
        rooms.append_history("lobby", "alice", "later")

        assert snapshot == []
