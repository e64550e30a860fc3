"""
app.core.rate_limit
~~~~~~~~~~~~~~~~~~~

API 与 WebSocket 的限流配置。

- HTTP 接口：``slowapi`` 基于客户端 IP 限流。
- WebSocket：按连接计数的固定窗口限流器，计数状态保存在连接对象上。
"""
from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

from slowapi import Limiter
from slowapi.util import get_remote_address


# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)


class RateLimitState(Protocol):
    """限流器读写的最小连接状态。"""

    rate_window_start: float
    rate_count: int


# --------- WebSocket 限流器 ---------
class WebSocketRateLimiter:
    """基于计数窗口的 WebSocket 消息限流器。

    每个连接各自维护窗口起点与计数：窗口过期则重置为当前时刻并从 1 开始计数，
    否则计数加一。计数超过 ``max_messages`` 时拒绝该帧。

    Attributes:
        max_messages: 单个窗口内允许的最大消息数。
        window_seconds: 窗口长度（秒）。
    """

    def __init__(
        self,
        max_messages: int = 5,
        window_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_messages = max_messages
        self.window_seconds = window_seconds
        self._clock = clock

    def is_allowed(self, state: RateLimitState) -> bool:
        """记录一次到达的消息并判断是否放行。

        Args:
            state: 连接上的限流状态（会被原地更新）。

        Returns:
            是否允许处理该消息。
        """
        now = self._clock()
        if now - state.rate_window_start >= self.window_seconds:
            state.rate_window_start = now
            state.rate_count = 1
        else:
            state.rate_count += 1
        return state.rate_count <= self.max_messages
