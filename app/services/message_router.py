"""
app.services.message_router
~~~~~~~~~~~~~~~~~~~~~~~~~~~

入站消息路由 —— 每个连接的入站处理流水线。

对每一帧依次执行:
  1. 心跳应答（``pong``）直接标记存活，不计入限流
  2. 限流：超限回复 ``error`` 并丢弃
  3. 解析：格式错误记录日志并丢弃，未知类型记录日志并忽略
  4. 按信封类型分发到对应处理器

所有公开入口（``handle_frame`` / ``handle_disconnect``）都在调度锁内执行，
一个事件处理完之前不会开始下一个事件，房间与连接状态无需额外加锁。
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from app.core.logging import get_logger
from app.core.rate_limit import WebSocketRateLimiter
from app.schemas.envelopes import (
    AdminEnvelope,
    ChatEnvelope,
    DepartureReason,
    DirectMessageEnvelope,
    EnvelopeError,
    ErrorNotice,
    HistorySnapshot,
    HostUpdate,
    HostUpdatePayload,
    JoinEnvelope,
    PongEnvelope,
    PrivateMessage,
    RoomLockPayload,
    RoomLockUpdate,
    RoomState,
    RoomStatePayload,
    RoomUser,
    StopTypingEnvelope,
    SystemNotice,
    TypingEnvelope,
    TypingPayload,
    UnknownEnvelopeType,
    UserJoined,
    UserJoinedPayload,
    UserLeft,
    UserLeftPayload,
    UserStopTyping,
    UserTyping,
    parse_envelope,
)
from app.services.connection_registry import Connection, ConnectionRegistry
from app.services.room_broadcaster import RoomBroadcaster
from app.services.room_directory import RoomDirectory

logger = get_logger(__name__)

# ── 关闭码 ────────────────────────────────────────────────────────────
CLOSE_NORMAL: int = 1000
CLOSE_GOING_AWAY: int = 1001
CLOSE_POLICY_VIOLATION: int = 1008
CLOSE_SERVICE_RESTART: int = 1012
CLOSE_KICKED: int = 4001
CLOSE_BANNED: int = 4002


class JoinRejected(Exception):
    """``join`` 因策略被拒绝，连接将以 1008 关闭。"""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def _as_identifier(value: Any) -> str:
    """非字符串一律视为空标识，由 join 校验拒绝。"""
    if not isinstance(value, str):
        return ""
    return value.strip()


class MessageRouter:
    """入站信封的校验与分发。

    Attributes:
        registry: 连接注册表。
        rooms: 房间目录。
        broadcaster: 房间广播器。
        rate_limiter: 按连接计数的限流器。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomDirectory,
        broadcaster: RoomBroadcaster,
        rate_limiter: WebSocketRateLimiter,
        lock: asyncio.Lock,
        max_name_length: int = 20,
        max_message_length: int = 200,
    ) -> None:
        self.registry = registry
        self.rooms = rooms
        self.broadcaster = broadcaster
        self.rate_limiter = rate_limiter
        self.max_name_length = max_name_length
        self.max_message_length = max_message_length
        self._lock = lock
        self._handlers: dict[type, Callable[[Connection, Any], Awaitable[None]]] = {
            JoinEnvelope: self._handle_join,
            ChatEnvelope: self._handle_chat,
            TypingEnvelope: self._handle_typing,
            StopTypingEnvelope: self._handle_stop_typing,
            DirectMessageEnvelope: self._handle_dm,
            AdminEnvelope: self._handle_admin,
        }

    # ── 公开入口 ──────────────────────────────────────────────────────

    async def handle_frame(self, connection: Connection, frame: str | bytes) -> None:
        """处理一帧入站数据。"""
        async with self._lock:
            await self._dispatch(connection, frame)

    async def handle_disconnect(self, connection: Connection) -> None:
        """传输关闭后的清理（对端关闭、异常或服务端主动关闭后）。"""
        async with self._lock:
            await self.evict(connection)

    async def evict(
        self,
        connection: Connection,
        code: int | None = None,
        reason: str = "",
    ) -> None:
        """注销连接并执行离房清理，可选地以 ``code`` 关闭传输。

        调用方必须已持有调度锁。重复调用无副作用。
        """
        if not self.registry.unregister(connection):
            return
        if connection.has_membership:
            await self._depart(connection, "left")
        if code is not None:
            await connection.close(code, reason)
        logger.info("连接已注销 | conn=%s | 在线: %d", connection.id, len(self.registry))

    # ── 流水线 ────────────────────────────────────────────────────────

    async def _dispatch(self, connection: Connection, frame: str | bytes) -> None:
        if connection.closed or connection not in self.registry:
            return

        envelope: Any = None
        parse_error: EnvelopeError | None = None
        try:
            envelope = parse_envelope(frame)
        except EnvelopeError as e:
            parse_error = e

        if isinstance(envelope, PongEnvelope):
            self.registry.mark_alive(connection)
            return

        if not self.rate_limiter.is_allowed(connection):
            logger.warning("触发限流，丢弃消息 | conn=%s | count=%d", connection.id, connection.rate_count)
            await self.broadcaster.send(
                connection,
                ErrorNotice(message="You are sending messages too fast. Please slow down."),
            )
            return

        if isinstance(parse_error, UnknownEnvelopeType):
            logger.warning("未知消息类型: %s | conn=%s", parse_error.envelope_type, connection.id)
            return
        if parse_error is not None:
            logger.warning("消息格式错误，已丢弃 | conn=%s | %s", connection.id, parse_error)
            return

        logger.debug("分发消息 | type=%s | conn=%s", envelope.type, connection.id)
        await self._handlers[type(envelope)](connection, envelope)

    # ── join ──────────────────────────────────────────────────────────

    def _validate_join(self, envelope: JoinEnvelope) -> tuple[str, str]:
        """按顺序校验：格式 → 锁定 → 封禁 → 重名。"""
        room_id = _as_identifier(envelope.payload.room_id)
        username = _as_identifier(envelope.payload.username)
        if (
            not room_id
            or not username
            or len(room_id) > self.max_name_length
            or len(username) > self.max_name_length
        ):
            raise JoinRejected(
                f"Room ID and username are required and must be at most {self.max_name_length} characters.",
            )
        if self.rooms.is_locked(room_id):
            raise JoinRejected("This room is locked.")
        if self.rooms.is_banned(room_id, username):
            raise JoinRejected("You are banned from this room.")
        if self.registry.is_username_taken(room_id, username):
            raise JoinRejected("Username is already taken in this room.")
        return room_id, username

    async def _handle_join(self, connection: Connection, envelope: JoinEnvelope) -> None:
        # 已在房间内的连接重新 join：先按正常离开处理
        if connection.has_membership:
            await self._depart(connection, "left")

        try:
            room_id, username = self._validate_join(envelope)
        except JoinRejected as e:
            logger.info("拒绝加入 | conn=%s | %s", connection.id, e.reason)
            await connection.close(CLOSE_POLICY_VIOLATION, e.reason)
            return

        self.registry.set_membership(connection, room_id, username)
        occupants = self.registry.occupants(room_id)
        is_host = False
        if len(occupants) == 1:
            is_host = self.rooms.set_host(room_id, username)
        logger.info(
            "用户加入房间 | room=%s | user=%s | host=%s | 成员: %d",
            room_id, username, is_host, len(occupants),
        )

        await self.broadcaster.send(connection, SystemNotice(message=f'Welcome to room "{room_id}"!'))
        await self.broadcaster.send(connection, self._room_state(room_id))
        await self.broadcaster.send(connection, HistorySnapshot(payload=self.rooms.get_history(room_id)))

        await self.broadcaster.broadcast_to_room(
            room_id,
            UserJoined(payload=UserJoinedPayload(username=username, is_host=is_host)),
            exclude=connection,
        )
        await self.broadcaster.broadcast_to_room(
            room_id, SystemNotice(message=f"{username} has joined the room."), exclude=connection,
        )

    def _room_state(self, room_id: str) -> RoomState:
        host = self.rooms.get_host(room_id)
        users = [
            RoomUser(username=c.username, is_host=c.username == host)
            for c in self.registry.occupants(room_id)
        ]
        return RoomState(
            payload=RoomStatePayload(users=users, is_locked=self.rooms.is_locked(room_id), host=host),
        )

    # ── chat / typing ─────────────────────────────────────────────────

    def _clean_text(self, text: str) -> str | None:
        """trim 后非空且不超长则返回文本，否则返回 ``None``。"""
        text = text.strip()
        if not text or len(text) > self.max_message_length:
            return None
        return text

    async def _handle_chat(self, connection: Connection, envelope: ChatEnvelope) -> None:
        if not connection.has_membership:
            return
        text = self._clean_text(envelope.payload.message)
        if text is None:
            # 空消息或超长消息静默丢弃，不回复错误
            logger.debug("聊天内容无效，已丢弃 | conn=%s", connection.id)
            return

        message = self.rooms.append_history(connection.room_id, connection.username, text)
        await self.broadcaster.broadcast_to_room(connection.room_id, message)

    async def _handle_typing(self, connection: Connection, envelope: TypingEnvelope) -> None:
        if not connection.has_membership:
            return
        await self.broadcaster.broadcast_to_room(
            connection.room_id,
            UserTyping(payload=TypingPayload(username=connection.username)),
            exclude=connection,
        )

    async def _handle_stop_typing(self, connection: Connection, envelope: StopTypingEnvelope) -> None:
        if not connection.has_membership:
            return
        await self.broadcaster.broadcast_to_room(
            connection.room_id,
            UserStopTyping(payload=TypingPayload(username=connection.username)),
            exclude=connection,
        )

    # ── dm ────────────────────────────────────────────────────────────

    async def _handle_dm(self, connection: Connection, envelope: DirectMessageEnvelope) -> None:
        if not connection.has_membership:
            return
        text = self._clean_text(envelope.payload.message)
        if text is None:
            return

        to_username = envelope.payload.to_username.strip()
        if not to_username:
            await self.broadcaster.send(connection, ErrorNotice(message="Direct messages need a target user."))
            return
        recipient = self.registry.find_by_username(connection.room_id, to_username)
        if recipient is None:
            await self.broadcaster.send(
                connection, ErrorNotice(message=f'User "{to_username}" not found in this room.'),
            )
            return

        message = PrivateMessage.create(
            from_user=connection.username, to=recipient.username, message=text,
        )
        await self.broadcaster.send(recipient, message)
        if recipient is not connection:
            await self.broadcaster.send(connection, message)

    # ── admin ─────────────────────────────────────────────────────────

    async def _handle_admin(self, connection: Connection, envelope: AdminEnvelope) -> None:
        room_id = connection.room_id
        if not connection.has_membership or self.rooms.get_host(room_id) != connection.username:
            await self.broadcaster.send(
                connection, ErrorNotice(message="Only the room host can use admin commands."),
            )
            return

        command = envelope.payload.command
        if command == "lock":
            await self._admin_lock(connection)
            return

        target_name = (envelope.payload.target_user or "").strip()
        if not target_name:
            await self.broadcaster.send(connection, ErrorNotice(message=f"The {command} command needs a target user."))
            return
        if target_name.lower() == connection.username.lower():
            await self.broadcaster.send(connection, ErrorNotice(message=f"You cannot {command} yourself."))
            return

        if command == "kick":
            await self._admin_kick(connection, target_name)
        else:
            await self._admin_ban(connection, target_name)

    async def _admin_lock(self, connection: Connection) -> None:
        room_id = connection.room_id
        is_locked = self.rooms.toggle_lock(room_id)
        logger.info("房间锁定状态变更 | room=%s | locked=%s | by=%s", room_id, is_locked, connection.username)
        await self.broadcaster.broadcast_to_room(room_id, RoomLockUpdate(payload=RoomLockPayload(is_locked=is_locked)))
        status = "locked" if is_locked else "unlocked"
        await self.broadcaster.broadcast_to_room(room_id, SystemNotice(message=f"Room is now {status}."))

    async def _admin_kick(self, connection: Connection, target_name: str) -> None:
        room_id = connection.room_id
        target = self.registry.find_by_username(room_id, target_name)
        if target is None:
            await self.broadcaster.send(
                connection, ErrorNotice(message=f'User "{target_name}" not found in this room.'),
            )
            return

        username = target.username
        logger.info("用户被踢出 | room=%s | user=%s | by=%s", room_id, username, connection.username)
        await self.broadcaster.send(target, SystemNotice(message="You have been kicked from the room."))
        await target.close(CLOSE_KICKED, "Kicked by host")
        await self._depart(target, "kicked")
        await self.broadcaster.broadcast_to_room(
            room_id, SystemNotice(message=f"{username} was kicked by the host."),
        )

    async def _admin_ban(self, connection: Connection, target_name: str) -> None:
        room_id = connection.room_id
        self.rooms.ban(room_id, target_name)
        target = self.registry.find_by_username(room_id, target_name)
        logger.info(
            "用户被封禁 | room=%s | user=%s | online=%s | by=%s",
            room_id, target_name, target is not None, connection.username,
        )

        username = target_name
        if target is not None:
            username = target.username
            await self.broadcaster.send(target, SystemNotice(message="You have been banned from the room."))
            await target.close(CLOSE_BANNED, "Banned by host")
            await self._depart(target, "banned")
        await self.broadcaster.broadcast_to_room(
            room_id, SystemNotice(message=f"{username} has been banned from the room."),
        )

    # ── 离房 ──────────────────────────────────────────────────────────

    async def _depart(self, connection: Connection, reason: DepartureReason) -> None:
        """清除成员身份并通知房间；离开者为房主时选出继任者。"""
        previous = self.registry.clear_membership(connection)
        if previous is None:
            return
        room_id, username = previous
        logger.info("用户离开房间 | room=%s | user=%s | reason=%s", room_id, username, reason)

        await self.broadcaster.broadcast_to_room(
            room_id, UserLeft(payload=UserLeftPayload(username=username, reason=reason)),
        )
        if reason == "left":
            await self.broadcaster.broadcast_to_room(
                room_id, SystemNotice(message=f"{username} has left the room."),
            )

        if self.rooms.get_host(room_id) == username:
            remaining = [c.username for c in self.registry.occupants(room_id)]
            new_host = self.rooms.reassign_host(room_id, remaining)
            if new_host is not None:
                await self.broadcaster.broadcast_to_room(
                    room_id, HostUpdate(payload=HostUpdatePayload(new_host=new_host)),
                )
