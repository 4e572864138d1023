"""
事件总线模块 - 实现平台适配器与实况核心之间的解耦通信。

消息流向：
  Discord Gateway → DiscordPlatform → 事件数据类 → EventBus → LiveService → SessionPool / SessionSlot
"""

from livepool.bus.events import (
    GuildAvailable,
    MessageCreated,
    MessageDeleted,
    MessageUpdated,
    ReactionAdded,
    ReactionRemoved,
)
from livepool.bus.queue import EventBus

__all__ = [
    "EventBus",
    "GuildAvailable",
    "MessageCreated",
    "MessageUpdated",
    "MessageDeleted",
    "ReactionAdded",
    "ReactionRemoved",
]
