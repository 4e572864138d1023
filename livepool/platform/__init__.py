"""
平台模块 - 实况核心依赖的聊天平台能力接口及其 Discord 实现。

DiscordPlatform 依赖 httpx / websockets，按需从 livepool.platform.discord 导入。
"""

from livepool.platform.base import (
    ChannelInfo,
    ChatPlatform,
    ForbiddenError,
    Message,
    NotFoundError,
    PlatformError,
    Webhook,
)

__all__ = [
    "ChatPlatform",
    "ChannelInfo",
    "Message",
    "Webhook",
    "PlatformError",
    "NotFoundError",
    "ForbiddenError",
]
