"""
app.services.room_directory
~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间目录 —— 管理每个房间的房主、锁定状态、封禁名单和有界历史。

房间在首次被引用时懒创建，不会被显式销毁；没有成员的房间只是不再被访问。
"""
from __future__ import annotations

from collections import deque
from collections.abc import Sequence

from app.core.logging import get_logger
from app.schemas.envelopes import ChatMessage, HistoryEntry

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT: int = 50


class Room:
    """单个房间的状态。

    Attributes:
        room_id: 房间标识（大小写敏感）。
        host: 房主用户名；无人时为 ``None``。
        is_locked: 是否拒绝新成员加入。
        banned: 被封禁的用户名（统一小写）。
        history: 最近的消息，超出容量时丢弃最旧的一条。
    """

    def __init__(self, room_id: str, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.room_id = room_id
        self.host: str | None = None
        self.is_locked: bool = False
        self.banned: set[str] = set()
        self.history: deque[HistoryEntry] = deque(maxlen=history_limit)


class RoomDirectory:
    """房间目录。由 ``ChatSystem`` 持有并注入路由层。"""

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.history_limit = history_limit
        self._rooms: dict[str, Room] = {}

    def get_or_create(self, room_id: str) -> Room:
        """获取房间，不存在则创建。"""
        room = self._rooms.get(room_id)
        if room is None:
            room = Room(room_id, self.history_limit)
            self._rooms[room_id] = room
            logger.info("房间已创建 | room=%s", room_id)
        return room

    def get(self, room_id: str) -> Room | None:
        """只读查找，不会创建房间。"""
        return self._rooms.get(room_id)

    def __len__(self) -> int:
        return len(self._rooms)

    # ── 房主 ──────────────────────────────────────────────────────────

    def set_host(self, room_id: str, username: str, force: bool = False) -> bool:
        """设置房主。默认仅在房主为空时生效，``force=True`` 时强制转移。

        Returns:
            房主是否被设置为 ``username``。
        """
        room = self.get_or_create(room_id)
        if room.host is not None and not force:
            return False
        room.host = username
        return True

    def get_host(self, room_id: str) -> str | None:
        return self.get_or_create(room_id).host

    def clear_host(self, room_id: str) -> None:
        self.get_or_create(room_id).host = None

    def reassign_host(self, room_id: str, remaining: Sequence[str]) -> str | None:
        """房主离开后选出继任者。

        Args:
            room_id: 房间标识。
            remaining: 剩余成员用户名，按加入顺序排列。

        Returns:
            新房主；没有剩余成员时返回 ``None`` 并清空房主，等待下一位加入者。
        """
        if not remaining:
            self.clear_host(room_id)
            return None
        new_host = remaining[0]
        self.set_host(room_id, new_host, force=True)
        logger.info("房主已转移 | room=%s | new_host=%s", room_id, new_host)
        return new_host

    # ── 锁定 ──────────────────────────────────────────────────────────

    def toggle_lock(self, room_id: str) -> bool:
        """切换锁定状态，返回新状态。"""
        room = self.get_or_create(room_id)
        room.is_locked = not room.is_locked
        return room.is_locked

    def is_locked(self, room_id: str) -> bool:
        return self.get_or_create(room_id).is_locked

    # ── 封禁 ──────────────────────────────────────────────────────────

    def ban(self, room_id: str, username: str) -> None:
        self.get_or_create(room_id).banned.add(username.lower())

    def is_banned(self, room_id: str, username: str) -> bool:
        return username.lower() in self.get_or_create(room_id).banned

    # ── 历史 ──────────────────────────────────────────────────────────

    def append_history(self, room_id: str, author: str, text: str) -> ChatMessage:
        """生成带 ID 与服务端时间戳的聊天消息并追加到历史。

        返回的同一实例应直接用于广播，保证历史与广播内容一致。
        """
        message = ChatMessage.create(author=author, message=text)
        self.get_or_create(room_id).history.append(message)
        return message

    def get_history(self, room_id: str) -> list[HistoryEntry]:
        """按时间顺序返回房间历史的快照。"""
        return list(self.get_or_create(room_id).history)
