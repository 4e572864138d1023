"""
平台事件类型定义模块 - 定义事件总线中传输的数据结构。

平台适配器（如 DiscordPlatform）把 Gateway 推送的原始事件转换为
下面这些数据类并发布到 EventBus，LiveService 按类型订阅处理。

【Java 开发者类比】
- 使用 Python 的 @dataclass 装饰器，等价于 Java 的 record 类
- 每个事件类相当于 Spring 的 ApplicationEvent 子类
"""

from dataclasses import dataclass, field

from livepool.platform.base import Message


@dataclass
class GuildAvailable:
    """服务器可用（启动时或重连后收到 GUILD_CREATE）。"""
    guild_id: str


@dataclass
class MessageCreated:
    """新消息。"""
    message: Message


@dataclass
class MessageUpdated:
    """消息被编辑。message 为编辑后的快照。"""
    message: Message


@dataclass
class MessageDeleted:
    """消息被删除。"""
    guild_id: str
    channel_id: str
    message_id: str


@dataclass
class ReactionAdded:
    """
    有人添加了反应。

    属性:
        emoji: 规范化后的表情键（Unicode 表情本身，或自定义表情 ID）
        user_bot: 操作者是否为机器人
        member_roles: 操作者在服务器中的身份组 ID 列表
    """
    guild_id: str
    channel_id: str
    message_id: str
    user_id: str
    emoji: str
    user_bot: bool = False
    member_roles: list[str] = field(default_factory=list)


@dataclass
class ReactionRemoved:
    """有人移除了反应。Discord 不在此事件中附带成员信息。"""
    guild_id: str
    channel_id: str
    message_id: str
    user_id: str
    emoji: str


PlatformEvent = GuildAvailable | MessageCreated | MessageUpdated | MessageDeleted | ReactionAdded | ReactionRemoved
