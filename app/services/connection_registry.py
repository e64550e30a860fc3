"""
app.services.connection_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

连接注册表 —— 持有进程内全部 WebSocket 连接及其会话状态。

每个 ``Connection`` 记录房间成员身份、显示名、心跳存活标记和限流计数。
房间成员通过扫描注册表得到（按加入顺序排序），不维护反向索引。
"""
from __future__ import annotations

import itertools
import uuid
from collections.abc import Callable, Iterator

from fastapi import WebSocket

from app.core.logging import get_logger

logger = get_logger(__name__)


class Connection:
    """单个 WebSocket 连接的会话状态。

    Attributes:
        id: 连接唯一标识（仅用于日志与内部查找）。
        websocket: 底层传输对象。
        room_id: 当前所在房间；未成功 ``join`` 前为 ``None``。
        username: 当前房间内的显示名；与 ``room_id`` 同时设置/清除。
        join_seq: 加入房间时的全局序号，决定房主继任顺序。
        is_alive: 心跳状态，``True`` 为 Alive，``False`` 为 Unconfirmed。
        rate_window_start: 当前限流窗口的起点。
        rate_count: 当前限流窗口内已到达的消息数。
        closed: 服务端是否已关闭该连接。
    """

    def __init__(self, connection_id: str, websocket: WebSocket) -> None:
        self.id = connection_id
        self.websocket = websocket
        self.room_id: str | None = None
        self.username: str | None = None
        self.join_seq: int = 0
        self.is_alive: bool = True
        # 首条消息必然开启新窗口
        self.rate_window_start: float = float("-inf")
        self.rate_count: int = 0
        self.closed: bool = False

    @property
    def has_membership(self) -> bool:
        return self.room_id is not None and self.username is not None

    async def send_text(self, text: str) -> None:
        """发送一帧文本。传输已关闭时会抛出异常，由调用方决定如何处理。"""
        await self.websocket.send_text(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """以指定关闭码关闭连接。重复调用无副作用。"""
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            # 对端可能已先行断开
            logger.debug("关闭连接失败 | conn=%s | code=%d | %s", self.id, code, e)

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, room_id={self.room_id!r}, username={self.username!r})"


class ConnectionRegistry:
    """进程内连接注册表。

    所有读写都在调度锁内完成，因此不需要额外的并发控制。
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._join_counter = itertools.count(1)

    # ── 生命周期 ──────────────────────────────────────────────────────

    def register(self, websocket: WebSocket) -> Connection:
        """为新传输会话创建连接记录（默认 Alive、无房间）。"""
        connection = Connection(uuid.uuid4().hex[:12], websocket)
        self._connections[connection.id] = connection
        return connection

    def unregister(self, connection: Connection) -> bool:
        """移除连接。返回该连接此前是否仍在注册表中。"""
        return self._connections.pop(connection.id, None) is not None

    def __contains__(self, connection: object) -> bool:
        return isinstance(connection, Connection) and connection.id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[Connection]:
        # 快照，允许遍历过程中注册/注销
        return iter(list(self._connections.values()))

    def for_each(
        self,
        predicate: Callable[[Connection], bool],
        action: Callable[[Connection], None],
    ) -> None:
        """对满足 ``predicate`` 的每个连接执行 ``action``。"""
        for connection in self:
            if predicate(connection):
                action(connection)

    # ── 房间成员 ──────────────────────────────────────────────────────

    def set_membership(self, connection: Connection, room_id: str, username: str) -> None:
        connection.room_id = room_id
        connection.username = username
        connection.join_seq = next(self._join_counter)

    def clear_membership(self, connection: Connection) -> tuple[str, str] | None:
        """清除成员身份，返回原 ``(room_id, username)``；本无成员身份时返回 ``None``。"""
        if not connection.has_membership:
            return None
        previous = (connection.room_id, connection.username)
        connection.room_id = None
        connection.username = None
        connection.join_seq = 0
        return previous  # type: ignore[return-value]

    def occupants(self, room_id: str) -> list[Connection]:
        """房间当前成员，按加入顺序（最早加入在前）。"""
        members = [c for c in self._connections.values() if c.room_id == room_id and c.username is not None]
        members.sort(key=lambda c: c.join_seq)
        return members

    def is_username_taken(self, room_id: str, username: str) -> bool:
        """房间内是否已有同名成员（大小写不敏感）。"""
        return self.find_by_username(room_id, username) is not None

    def find_by_username(self, room_id: str, username: str) -> Connection | None:
        """在指定房间内按用户名查找连接（大小写不敏感）。"""
        wanted = username.lower()
        for connection in self.occupants(room_id):
            if connection.username.lower() == wanted:  # type: ignore[union-attr]
                return connection
        return None

    def active_room_ids(self) -> set[str]:
        """至少有一名成员的房间 ID 集合。"""
        return {c.room_id for c in self._connections.values() if c.room_id is not None}

    # ── 心跳 ──────────────────────────────────────────────────────────

    def mark_alive(self, connection: Connection) -> None:
        connection.is_alive = True
