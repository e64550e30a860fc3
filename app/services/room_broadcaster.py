"""
app.services.room_broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间广播器 —— 把出站信封扇出到房间内的在线连接。

投递是“发出即忘”：单个接收方发送失败只记录日志，不影响其他接收方，
也不会向调用方抛出异常。
"""
from __future__ import annotations

import asyncio
from collections.abc import Iterable

from pydantic import BaseModel

from app.core.logging import get_logger
from app.schemas.envelopes import dump_envelope
from app.services.connection_registry import Connection, ConnectionRegistry

logger = get_logger(__name__)


class RoomBroadcaster:
    """基于连接注册表的广播器。

    Attributes:
        registry: 用于查找房间成员的连接注册表。
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def send(self, connection: Connection, envelope: BaseModel) -> bool:
        """向单个连接发送信封，返回是否发送成功。"""
        if connection.closed:
            return False
        try:
            await connection.send_text(dump_envelope(envelope))
        except Exception as e:
            logger.warning("发送失败 | conn=%s | %s", connection.id, e)
            return False
        return True

    async def send_many(self, connections: Iterable[Connection], envelope: BaseModel) -> int:
        """向一组连接发送同一信封（只序列化一次），返回成功数。"""
        targets = [c for c in connections if not c.closed]
        if not targets:
            return 0
        text = dump_envelope(envelope)
        results = await asyncio.gather(
            *(c.send_text(text) for c in targets), return_exceptions=True,
        )
        delivered = 0
        for connection, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("广播失败 | conn=%s | %s", connection.id, result)
            else:
                delivered += 1
        return delivered

    async def broadcast_to_room(
        self,
        room_id: str,
        envelope: BaseModel,
        exclude: Connection | None = None,
    ) -> int:
        """向房间内除 ``exclude`` 外的所有在线成员广播，返回成功数。"""
        recipients = [c for c in self.registry.occupants(room_id) if c is not exclude]
        return await self.send_many(recipients, envelope)

    async def broadcast_all(self, envelope: BaseModel) -> int:
        """向全部已注册连接广播（不区分房间），用于服务关闭通知。"""
        return await self.send_many(self.registry, envelope)
