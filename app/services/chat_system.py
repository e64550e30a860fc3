"""
app.services.chat_system
~~~~~~~~~~~~~~~~~~~~~~~~

聊天中继系统 —— 组装并持有注册表、房间目录、广播器、路由和心跳巡检。

在 FastAPI lifespan 中创建并挂载到 ``app.state.chat_system``，
生命周期与服务进程一致；各组件通过构造函数显式注入，不使用模块级单例。
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from fastapi import WebSocket

from app.core.logging import get_logger
from app.core.rate_limit import WebSocketRateLimiter
from app.core.settings import Settings, get_settings
from app.schemas.envelopes import SystemNotice
from app.schemas.status import RoomInfoData, StatusData
from app.services.connection_registry import Connection, ConnectionRegistry
from app.services.heartbeat import HeartbeatSupervisor
from app.services.message_router import CLOSE_GOING_AWAY, CLOSE_SERVICE_RESTART, MessageRouter
from app.services.room_broadcaster import RoomBroadcaster
from app.services.room_directory import RoomDirectory

logger = get_logger(__name__)


class ChatSystem:
    """房间聊天中继的运行时状态。

    Attributes:
        registry: 连接注册表。
        rooms: 房间目录。
        broadcaster: 房间广播器。
        router: 入站消息路由。
        heartbeat: 心跳巡检器。
    """

    def __init__(
        self,
        config: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = config or get_settings()
        # 所有状态变更共用一把调度锁，保证事件逐个执行完毕
        self.lock = asyncio.Lock()

        self.registry = ConnectionRegistry()
        self.rooms = RoomDirectory(history_limit=config.ROOM_HISTORY_LIMIT)
        self.broadcaster = RoomBroadcaster(self.registry)

        self.rate_limiter = WebSocketRateLimiter(
            max_messages=config.WS_RATE_LIMIT_MESSAGES,
            window_seconds=config.WS_RATE_LIMIT_WINDOW,
            clock=clock,
        )
        self.router = MessageRouter(
            registry=self.registry,
            rooms=self.rooms,
            broadcaster=self.broadcaster,
            rate_limiter=self.rate_limiter,
            lock=self.lock,
            max_name_length=config.MAX_NAME_LENGTH,
            max_message_length=config.MAX_MESSAGE_LENGTH,
        )
        self.heartbeat = HeartbeatSupervisor(
            registry=self.registry,
            broadcaster=self.broadcaster,
            lock=self.lock,
            on_expired=self._expire,
            interval=config.HEARTBEAT_INTERVAL,
        )

    async def _expire(self, connection: Connection) -> None:
        await self.router.evict(connection, code=CLOSE_GOING_AWAY, reason="Heartbeat timeout")

    # ── 连接生命周期 ──────────────────────────────────────────────────

    async def connect(self, websocket: WebSocket) -> Connection:
        """接受 WebSocket 握手并登记新连接。"""
        await websocket.accept()
        async with self.lock:
            connection = self.registry.register(websocket)
        logger.info("新连接 | conn=%s | 在线: %d", connection.id, len(self.registry))
        return connection

    async def disconnect(self, connection: Connection) -> None:
        """传输关闭后的清理。"""
        await self.router.handle_disconnect(connection)

    # ── 进程生命周期 ──────────────────────────────────────────────────

    def start(self) -> None:
        self.heartbeat.start()

    async def shutdown(self) -> None:
        """停止心跳，通知所有连接服务重启并以 1012 关闭。"""
        await self.heartbeat.stop()
        async with self.lock:
            connections = list(self.registry)
            await self.broadcaster.broadcast_all(SystemNotice(message="Server is restarting..."))
            await asyncio.gather(
                *(c.close(CLOSE_SERVICE_RESTART, "Server restarting") for c in connections),
            )
        logger.info("聊天系统已关闭 | 关闭连接: %d", len(connections))

    # ── 只读查询 ──────────────────────────────────────────────────────

    def status(self) -> StatusData:
        return StatusData(
            connections=len(self.registry),
            rooms=len(self.registry.active_room_ids()),
        )

    def room_info(self, room_id: str) -> RoomInfoData | None:
        """房间快照；房间从未被引用过时返回 ``None``（不会创建房间）。"""
        room = self.rooms.get(room_id)
        if room is None:
            return None
        return RoomInfoData(
            room_id=room.room_id,
            host=room.host,
            is_locked=room.is_locked,
            users=[c.username for c in self.registry.occupants(room_id)],
            history_size=len(room.history),
        )
