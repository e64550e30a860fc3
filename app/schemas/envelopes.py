"""
app.schemas.envelopes
~~~~~~~~~~~~~~~~~~~~~

WebSocket 信封（Envelope）模型 —— 客户端与服务端之间的全部线上消息格式。

每一帧都是一个 UTF-8 JSON 对象 ``{"type": str, "payload"?: object}``。

- 入站信封按 ``type`` 组成判别联合（discriminated union），由 ``parse_envelope()`` 解析。
- 出站信封统一通过 ``dump_envelope()`` 序列化（字段使用 camelCase 别名）。
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """所有线上模型的基类：Python 侧 snake_case，线上 camelCase。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _utc_timestamp() -> str:
    """服务端接收时间，ISO 8601 毫秒精度，``Z`` 结尾。"""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _new_message_id() -> str:
    return str(uuid.uuid4())


# ── 解析异常 ──────────────────────────────────────────────────────────

class EnvelopeError(Exception):
    """入站帧无法解析为已知信封。"""


class MalformedEnvelope(EnvelopeError):
    """帧不是合法 JSON 信封，或 payload 不符合对应类型的结构。"""


class UnknownEnvelopeType(EnvelopeError):
    """信封结构合法，但 ``type`` 不是已知的入站类型。"""

    def __init__(self, envelope_type: str) -> None:
        super().__init__(envelope_type)
        self.envelope_type = envelope_type


# ── 入站信封 ──────────────────────────────────────────────────────────

class JoinPayload(WireModel):
    # 缺失、为空或类型不对都由路由层按策略违规处理（1008 关闭），而不是当作格式错误
    room_id: Any = None
    username: Any = None


class ChatPayload(WireModel):
    message: str = ""


class DirectMessagePayload(WireModel):
    to_username: str = ""
    message: str = ""


class AdminPayload(WireModel):
    command: Literal["lock", "kick", "ban"]
    target_user: str | None = None


class JoinEnvelope(WireModel):
    type: Literal["join"]
    payload: JoinPayload = Field(default_factory=JoinPayload)


class ChatEnvelope(WireModel):
    type: Literal["chat"]
    payload: ChatPayload = Field(default_factory=ChatPayload)


class TypingEnvelope(WireModel):
    type: Literal["typing"]
    payload: dict[str, Any] = Field(default_factory=dict)


class StopTypingEnvelope(WireModel):
    type: Literal["stop_typing"]
    payload: dict[str, Any] = Field(default_factory=dict)


class DirectMessageEnvelope(WireModel):
    type: Literal["dm"]
    payload: DirectMessagePayload = Field(default_factory=DirectMessagePayload)


class AdminEnvelope(WireModel):
    type: Literal["admin"]
    payload: AdminPayload


class PongEnvelope(WireModel):
    """客户端对 ``ping`` 探测的应答。"""

    type: Literal["pong"]
    payload: dict[str, Any] = Field(default_factory=dict)


InboundEnvelope = Annotated[
    Union[
        JoinEnvelope,
        ChatEnvelope,
        TypingEnvelope,
        StopTypingEnvelope,
        DirectMessageEnvelope,
        AdminEnvelope,
        PongEnvelope,
    ],
    Field(discriminator="type"),
]

INBOUND_TYPES: frozenset[str] = frozenset(
    {"join", "chat", "typing", "stop_typing", "dm", "admin", "pong"},
)

_INBOUND_ADAPTER: TypeAdapter[InboundEnvelope] = TypeAdapter(InboundEnvelope)


class _RawEnvelope(BaseModel):
    type: str
    payload: dict[str, Any] | None = None


def parse_envelope(frame: str | bytes) -> InboundEnvelope:
    """把一帧原始文本解析为类型化的入站信封。

    Args:
        frame: WebSocket 收到的原始帧。

    Returns:
        对应类型的入站信封实例。

    Raises:
        MalformedEnvelope: 非 JSON 对象、缺少 ``type``，或 payload 结构不合法。
        UnknownEnvelopeType: ``type`` 不在 ``INBOUND_TYPES`` 中。
    """
    try:
        raw = _RawEnvelope.model_validate_json(frame)
    except ValidationError as e:
        raise MalformedEnvelope(str(e)) from e

    if raw.type not in INBOUND_TYPES:
        raise UnknownEnvelopeType(raw.type)

    try:
        return _INBOUND_ADAPTER.validate_python(
            {"type": raw.type, "payload": raw.payload or {}},
        )
    except ValidationError as e:
        raise MalformedEnvelope(str(e)) from e


# ── 消息实体（可进入房间历史） ────────────────────────────────────────

class ChatMessage(WireModel):
    """房间公开聊天消息。"""

    type: Literal["chat"] = "chat"
    id: str
    author: str
    message: str
    timestamp: str

    @classmethod
    def create(cls, author: str, message: str) -> ChatMessage:
        """以服务端时间和新 ID 构造一条聊天消息。"""
        return cls(id=_new_message_id(), author=author, message=message, timestamp=_utc_timestamp())


class PrivateMessage(WireModel):
    """同房间内两个用户之间的私信。"""

    type: Literal["private_message"] = "private_message"
    id: str
    from_user: str = Field(alias="from")
    to: str
    message: str
    timestamp: str

    @classmethod
    def create(cls, from_user: str, to: str, message: str) -> PrivateMessage:
        """以服务端时间和新 ID 构造一条私信。"""
        return cls(
            id=_new_message_id(),
            from_user=from_user,
            to=to,
            message=message,
            timestamp=_utc_timestamp(),
        )


HistoryEntry = Union[ChatMessage, PrivateMessage]


# ── 出站信封 ──────────────────────────────────────────────────────────

class SystemNotice(WireModel):
    type: Literal["system"] = "system"
    message: str


class ErrorNotice(WireModel):
    type: Literal["error"] = "error"
    message: str


class HistorySnapshot(WireModel):
    type: Literal["history"] = "history"
    payload: list[HistoryEntry]


class RoomUser(WireModel):
    username: str
    is_host: bool


class RoomStatePayload(WireModel):
    users: list[RoomUser]
    is_locked: bool
    host: str | None


class RoomState(WireModel):
    type: Literal["room_state"] = "room_state"
    payload: RoomStatePayload


class UserJoinedPayload(WireModel):
    username: str
    is_host: bool


class UserJoined(WireModel):
    type: Literal["user_joined"] = "user_joined"
    payload: UserJoinedPayload


DepartureReason = Literal["left", "kicked", "banned"]


class UserLeftPayload(WireModel):
    username: str
    reason: DepartureReason


class UserLeft(WireModel):
    type: Literal["user_left"] = "user_left"
    payload: UserLeftPayload


class HostUpdatePayload(WireModel):
    new_host: str


class HostUpdate(WireModel):
    type: Literal["host_update"] = "host_update"
    payload: HostUpdatePayload


class RoomLockPayload(WireModel):
    is_locked: bool


class RoomLockUpdate(WireModel):
    type: Literal["room_lock_update"] = "room_lock_update"
    payload: RoomLockPayload


class TypingPayload(WireModel):
    username: str


class UserTyping(WireModel):
    type: Literal["user_typing"] = "user_typing"
    payload: TypingPayload


class UserStopTyping(WireModel):
    type: Literal["user_stop_typing"] = "user_stop_typing"
    payload: TypingPayload


class Ping(WireModel):
    """心跳探测。"""

    type: Literal["ping"] = "ping"


def dump_envelope(envelope: BaseModel) -> str:
    """把出站信封序列化为线上 JSON 文本。"""
    return envelope.model_dump_json(by_alias=True)
