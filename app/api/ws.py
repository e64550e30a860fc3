"""
app.api.ws
~~~~~~~~~~

WebSocket 实时交互接口 —— 房间聊天中继。

客户端连接 ``/ws`` 后发送 ``join`` 信封加入房间，之后的每一帧都交给
``MessageRouter`` 处理。连接关闭（对端断开、被踢出/封禁、心跳超时）后
统一走 ``ChatSystem.disconnect()`` 完成离房清理。
"""
from __future__ import annotations

from fastapi import APIRouter, WebSocket

from app.core.logging import connection_id_ctx_var, get_logger
from app.services.chat_system import ChatSystem

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket 房间聊天端点。

    消息协议（每帧一个 JSON 对象）:
      - 入站：``join`` / ``chat`` / ``typing`` / ``stop_typing`` / ``dm`` / ``admin`` / ``pong``
      - 出站：``system`` / ``history`` / ``room_state`` / ``user_joined`` / ``user_left`` /
        ``host_update`` / ``room_lock_update`` / ``chat`` / ``private_message`` /
        ``user_typing`` / ``user_stop_typing`` / ``error`` / ``ping``
    """
    system: ChatSystem = websocket.app.state.chat_system
    connection = await system.connect(websocket)
    token = connection_id_ctx_var.set(connection.id)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("客户端断开 | code=%s", message.get("code"))
                break

            frame = message.get("text")
            if frame is None:
                frame = message.get("bytes") or b""

            try:
                await system.router.handle_frame(connection, frame)
            except Exception as e:
                # 单帧处理失败不影响连接本身
                logger.error("消息处理异常: %s", e, exc_info=True)
    except Exception as e:
        logger.error("WebSocket 异常: %s", e, exc_info=True)
    finally:
        await system.disconnect(connection)
        connection_id_ctx_var.reset(token)
