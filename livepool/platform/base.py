"""
聊天平台基类模块 - 定义实况核心依赖的"窄能力接口"。

本模块提供了 ChatPlatform 抽象基类。实况核心（SessionPool / SessionSlot）
只通过这里声明的方法操作平台，不直接接触 Discord 的原始数据结构：
- 生产环境：DiscordPlatform（platform/discord.py）通过 Gateway + REST 实现
- 测试环境：tests/fakes.py 中的 FakePlatform 在内存中实现

【能力分组】
- 频道：list_channels / get_channel / create_channel / delete_channel / last_activity
- 消息：fetch_message / send_message / edit_message / delete_message / pin / unpin
- 反应与权限：add_reaction / set_send_permission / has_manage_channels
- 状态载体：list_webhooks / create_webhook / rename_webhook

【错误约定】
所有方法都是异步的，失败时抛出 PlatformError；
目标资源不存在（如消息已被删除）时抛出其子类 NotFoundError。

【Java 开发者类比】
- ChatPlatform 相当于 Java 的 interface + Adapter 模式
- PlatformError 相当于受检异常的基类
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime


class PlatformError(Exception):
    """平台操作失败（网络错误、限流、权限不足等）。"""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status  # HTTP 状态码（如有）


class NotFoundError(PlatformError):
    """目标资源不存在（消息、频道或 Webhook 已被删除）。"""


class ForbiddenError(PlatformError):
    """机器人缺少执行该操作的权限。"""


@dataclass
class ChannelInfo:
    """
    频道快照。

    属性:
        id: 频道 ID
        guild_id: 所属服务器 ID
        name: 频道名
        position: 频道在列表中的排序位置
        parent_id: 所属分类（category）ID，未分类时为 None
        type: 频道类型（0 = 文字频道，4 = 分类）
    """
    id: str
    guild_id: str
    name: str
    position: int = 0
    parent_id: str | None = None
    type: int = 0

    @property
    def is_text(self) -> bool:
        return self.type == 0

    @property
    def mention(self) -> str:
        return f"<#{self.id}>"


@dataclass
class Message:
    """
    消息快照。

    属性:
        reactions: {表情键: 非机器人本身的反应数}
        author_roles: 发送者的身份组 ID（服务器消息才有）
    """
    id: str
    channel_id: str
    guild_id: str
    content: str
    created_at: datetime
    author_id: str = ""
    author_bot: bool = False
    author_system: bool = False
    author_roles: list[str] = field(default_factory=list)
    reactions: dict[str, int] = field(default_factory=dict)


@dataclass
class Webhook:
    """Webhook 快照。livepool 用它的名称存放实况状态标签。"""
    id: str
    channel_id: str
    name: str
    owner_id: str | None = None


class ChatPlatform(ABC):
    """
    聊天平台抽象基类 - 实况核心与具体平台之间的统一契约。
    """

    name: str = "base"

    @property
    @abstractmethod
    def bot_user_id(self) -> str:
        """机器人自身的用户 ID。"""

    @abstractmethod
    async def start(self) -> None:
        """连接平台并开始接收事件（长期运行）。"""

    @abstractmethod
    async def stop(self) -> None:
        """断开连接并释放资源。"""

    @abstractmethod
    def guild_ids(self) -> list[str]:
        """当前可用的服务器 ID 列表。"""

    # ---- 频道 ----

    @abstractmethod
    def list_channels(self, guild_id: str) -> list[ChannelInfo]:
        """列出服务器内的所有频道（来自缓存，不会挂起）。"""

    @abstractmethod
    def get_channel(self, channel_id: str) -> ChannelInfo | None:
        """按 ID 获取频道快照。"""

    @abstractmethod
    async def create_channel(
        self,
        guild_id: str,
        name: str,
        *,
        parent_id: str | None = None,
        position: int | None = None,
        topic: str = "",
        nsfw: bool = False,
        rate_limit: int = 0,
        deny_send_roles: list[str] | None = None,
    ) -> ChannelInfo:
        """创建文字频道。deny_send_roles 中的身份组被禁止发言。"""

    @abstractmethod
    async def delete_channel(self, channel_id: str) -> None:
        """删除频道。"""

    @abstractmethod
    async def last_activity(self, channel_id: str) -> datetime | None:
        """频道内最后一条消息的时间；频道为空时返回 None。"""

    # ---- 消息 ----

    @abstractmethod
    async def fetch_message(self, channel_id: str, message_id: str) -> Message:
        """获取消息；不存在时抛出 NotFoundError。"""

    @abstractmethod
    async def send_message(self, channel_id: str, content: str) -> Message:
        """发送消息。"""

    @abstractmethod
    async def edit_message(self, channel_id: str, message_id: str, content: str) -> Message:
        """编辑机器人自己发送的消息。"""

    @abstractmethod
    async def delete_message(self, channel_id: str, message_id: str) -> None:
        """删除消息。"""

    @abstractmethod
    async def pin_message(self, channel_id: str, message_id: str) -> None:
        """置顶消息。"""

    @abstractmethod
    async def unpin_message(self, channel_id: str, message_id: str) -> None:
        """取消置顶。"""

    # ---- 反应与权限 ----

    @abstractmethod
    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        """以机器人身份添加反应。"""

    @abstractmethod
    async def set_send_permission(self, channel_id: str, role_id: str, allow: bool) -> None:
        """设置身份组在频道中的发言权限覆盖。"""

    @abstractmethod
    async def has_manage_channels(self, guild_id: str, user_id: str, role_ids: list[str]) -> bool:
        """成员是否拥有"管理频道"权限。"""

    # ---- 状态载体 ----

    @abstractmethod
    async def list_webhooks(self, channel_id: str) -> list[Webhook]:
        """列出频道的 Webhook。"""

    @abstractmethod
    async def create_webhook(self, channel_id: str, name: str) -> Webhook:
        """创建 Webhook。"""

    @abstractmethod
    async def rename_webhook(self, webhook_id: str, name: str) -> Webhook:
        """修改 Webhook 名称。"""
