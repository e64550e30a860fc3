"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存假 WebSocket 驱动聊天系统，
使路由、广播和心跳测试无需真实网络即可运行。
"""
from __future__ import annotations

import os

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from app.core.settings import Settings  # noqa: E402
from app.services.chat_system import ChatSystem  # noqa: E402
from tests.fakes import ChatHarness, FakeClock  # noqa: E402


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_settings() -> Settings:
    """与默认策略一致的测试配置（5 条 / 5 秒，历史 50 条）。"""
    return Settings(
        WS_RATE_LIMIT_MESSAGES=5,
        WS_RATE_LIMIT_WINDOW=5.0,
        HEARTBEAT_INTERVAL=60.0,
        ROOM_HISTORY_LIMIT=50,
        MAX_NAME_LENGTH=20,
        MAX_MESSAGE_LENGTH=200,
    )


@pytest.fixture()
def chat_system(test_settings: Settings, fake_clock: FakeClock) -> ChatSystem:
    return ChatSystem(test_settings, clock=fake_clock)


@pytest.fixture()
def harness(chat_system: ChatSystem, fake_clock: FakeClock) -> ChatHarness:
    return ChatHarness(chat_system, fake_clock)
