"""
app.schemas.status
~~~~~~~~~~~~~~~~~~

HTTP 状态查询接口的 Pydantic 响应模型。
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class StatusData(BaseModel):
    """服务运行状态摘要。"""

    connections: int = Field(..., description="当前活跃的 WebSocket 连接数")
    rooms: int = Field(..., description="当前至少有一名成员的房间数")


class RoomInfoData(BaseModel):
    """单个房间的只读快照。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    room_id: str = Field(..., description="房间唯一标识")
    host: str | None = Field(default=None, description="当前房主用户名")
    is_locked: bool = Field(..., description="房间是否已锁定")
    users: list[str] = Field(..., description="当前成员（按加入顺序）")
    history_size: int = Field(..., description="房间历史消息条数")
