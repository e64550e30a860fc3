"""
tests.test_envelopes
~~~~~~~~~~~~~~~~~~~~

信封解析与序列化测试。
"""
from __future__ import annotations

import json

import pytest

from app.schemas.envelopes import (
    AdminEnvelope,
    ChatMessage,
    DirectMessageEnvelope,
    HostUpdate,
    HostUpdatePayload,
    JoinEnvelope,
    MalformedEnvelope,
    PongEnvelope,
    PrivateMessage,
    RoomState,
    RoomStatePayload,
    RoomUser,
    TypingEnvelope,
    UnknownEnvelopeType,
    dump_envelope,
    parse_envelope,
)


class TestParseEnvelope:
    """入站帧解析。"""

    def test_join_uses_camel_case_fields(self) -> None:
        envelope = parse_envelope('{"type": "join", "payload": {"roomId": "lobby", "username": "alice"}}')

        assert isinstance(envelope, JoinEnvelope)
        assert envelope.payload.room_id == "lobby"
        assert envelope.payload.username == "alice"

    def test_join_with_missing_fields_still_parses(self) -> None:
        """缺字段的 join 交给路由层按策略违规处理，而不是当作格式错误。"""
        envelope = parse_envelope('{"type": "join"}')

        assert isinstance(envelope, JoinEnvelope)
        assert envelope.payload.room_id is None

    def test_join_with_non_string_fields_still_parses(self) -> None:
        envelope = parse_envelope('{"type": "join", "payload": {"roomId": 123, "username": "bob"}}')

        assert isinstance(envelope, JoinEnvelope)
        assert envelope.payload.room_id == 123

    def test_dm_and_admin(self) -> None:
        dm = parse_envelope('{"type": "dm", "payload": {"toUsername": "bob", "message": "hi"}}')
        admin = parse_envelope('{"type": "admin", "payload": {"command": "kick", "targetUser": "bob"}}')

        assert isinstance(dm, DirectMessageEnvelope)
        assert dm.payload.to_username == "bob"
        assert isinstance(admin, AdminEnvelope)
        assert admin.payload.target_user == "bob"

    def test_typing_without_payload(self) -> None:
        assert isinstance(parse_envelope('{"type": "typing"}'), TypingEnvelope)

    def test_pong(self) -> None:
        assert isinstance(parse_envelope(b'{"type": "pong"}'), PongEnvelope)

    @pytest.mark.parametrize(
        "frame",
        [
            "not json",
            "[1, 2, 3]",
            '{"payload": {}}',
            '{"type": 42}',
            '{"type": "chat", "payload": "oops"}',
            '{"type": "admin", "payload": {"command": "nuke"}}',
        ],
    )
    def test_malformed(self, frame: str) -> None:
        with pytest.raises(MalformedEnvelope):
            parse_envelope(frame)

    def test_unknown_type(self) -> None:
        with pytest.raises(UnknownEnvelopeType) as exc_info:
            parse_envelope('{"type": "dance", "payload": {}}')

        assert exc_info.value.envelope_type == "dance"


class TestDumpEnvelope:
    """出站信封序列化。"""

    def test_chat_message_is_flat(self) -> None:
        message = ChatMessage.create(author="alice", message="hello")

        data = json.loads(dump_envelope(message))

        assert data == {
            "type": "chat",
            "id": message.id,
            "author": "alice",
            "message": "hello",
            "timestamp": message.timestamp,
        }

    def test_private_message_uses_from_field(self) -> None:
        message = PrivateMessage.create(from_user="alice", to="bob", message="psst")

        data = json.loads(dump_envelope(message))

        assert data["type"] == "private_message"
        assert data["from"] == "alice"
        assert data["to"] == "bob"
        assert "from_user" not in data

    def test_payload_fields_are_camel_case(self) -> None:
        state = RoomState(
            payload=RoomStatePayload(
                users=[RoomUser(username="alice", is_host=True)], is_locked=False, host="alice",
            ),
        )

        data = json.loads(dump_envelope(state))

        assert data == {
            "type": "room_state",
            "payload": {"users": [{"username": "alice", "isHost": True}], "isLocked": False, "host": "alice"},
        }
        assert json.loads(dump_envelope(HostUpdate(payload=HostUpdatePayload(new_host="bob")))) == {
            "type": "host_update",
            "payload": {"newHost": "bob"},
        }
