"""
app.api.status
~~~~~~~~~~~~~~

只读状态旁路接口 —— 连接数、活跃房间数与单个房间快照。

端点:
  - ``GET /status``            → 在线连接数与活跃房间数
  - ``GET /rooms/{room_id}``   → 房间快照（不存在返回 404，不会创建房间）
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.api.deps import get_chat_system
from app.core.rate_limit import limiter
from app.core.settings import settings
from app.schemas.api_response import ApiResponse
from app.schemas.status import RoomInfoData, StatusData
from app.services.chat_system import ChatSystem

router: APIRouter = APIRouter()


@router.get("/status", summary="服务运行状态", response_model=ApiResponse[StatusData])
@limiter.limit(settings.STATUS_RATE_LIMIT)
async def get_status(request: Request, system: ChatSystem = Depends(get_chat_system)):
    """返回当前 WebSocket 连接总数与至少有一名成员的房间数。"""
    return ApiResponse.ok(data=system.status())


@router.get("/rooms/{room_id}", summary="获取房间快照", response_model=ApiResponse[RoomInfoData])
@limiter.limit(settings.STATUS_RATE_LIMIT)
async def get_room(request: Request, room_id: str, system: ChatSystem = Depends(get_chat_system)):
    """返回指定房间的房主、锁定状态、成员列表和历史条数。

    Args:
        request: FastAPI Request 对象（用于限流判断）。
        room_id: 房间标识（大小写敏感）。
    """
    info = system.room_info(room_id)
    if info is None:
        return JSONResponse(
            status_code=404,
            content=ApiResponse.fail(msg=f"房间不存在: {room_id}", code=404).model_dump(),
        )
    return ApiResponse.ok(data=info)
