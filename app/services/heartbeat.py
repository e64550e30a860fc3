"""
app.services.heartbeat
~~~~~~~~~~~~~~~~~~~~~~

心跳巡检 —— 周期性扫描连接注册表，终止无响应的连接。

每个连接只有两个状态:
  - Alive：上次巡检后收到过 ``pong``
  - Unconfirmed：已发出 ``ping``，尚未收到应答

每次巡检时，Unconfirmed 的连接被终止（并执行与正常断开相同的离房清理），
Alive 的连接转为 Unconfirmed 并收到新的 ``ping``。任何时刻收到 ``pong`` 都会回到 Alive。
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from app.core.logging import get_logger
from app.schemas.envelopes import Ping
from app.services.connection_registry import Connection, ConnectionRegistry
from app.services.room_broadcaster import RoomBroadcaster

logger = get_logger(__name__)

# 终止回调：调用时调度锁已被持有
ExpireCallback = Callable[[Connection], Awaitable[None]]


class HeartbeatSupervisor:
    """心跳巡检器。

    Attributes:
        registry: 被巡检的连接注册表。
        broadcaster: 用于发送 ``ping``。
        interval: 巡检周期（秒）。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        broadcaster: RoomBroadcaster,
        lock: asyncio.Lock,
        on_expired: ExpireCallback,
        interval: float = 60.0,
    ) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self.interval = interval
        self._lock = lock
        self._on_expired = on_expired
        self._task: asyncio.Task[None] | None = None

    async def sweep(self) -> list[Connection]:
        """执行一次巡检，返回本次被终止的连接。"""
        async with self._lock:
            expired: list[Connection] = []
            probed: list[Connection] = []
            for connection in self.registry:
                if connection.is_alive:
                    connection.is_alive = False
                    probed.append(connection)
                else:
                    expired.append(connection)

            for connection in expired:
                logger.warning("心跳超时，终止连接 | conn=%s | user=%s", connection.id, connection.username)
                await self._on_expired(connection)

            await self.broadcaster.send_many(probed, Ping())
            if expired:
                logger.info("心跳巡检完成 | 终止: %d | 探测: %d", len(expired), len(probed))
            return expired

    async def run(self) -> None:
        """按固定周期循环巡检，直到被取消。"""
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("心跳巡检异常: %s", e, exc_info=True)

    def start(self) -> None:
        """在当前事件循环中启动后台巡检任务。"""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="heartbeat-supervisor")
            logger.info("心跳巡检已启动 | interval=%.1fs", self.interval)

    async def stop(self) -> None:
        """取消后台巡检任务并等待其退出。"""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
