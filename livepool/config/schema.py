"""
配置数据模型定义 (config/schema.py)
=================================
本模块使用 Pydantic 定义 livepool 的完整配置结构。
所有配置项都有默认值，用户只需在 config.json 中覆盖需要修改的部分。

整体配置结构（树形）：
Config (根配置)
├── discord         - Discord Bot 连接参数（Token、Gateway 地址、Intents）
├── watchdog        - 自动结束巡检配置（巡检间隔、提前警告时间）
├── data_dir        - 数据目录（服务器配置文件存放位置）
└── guild_defaults  - 新服务器的默认实况配置（GuildConfig）

GuildConfig 是"每个服务器一份"的实况频道池配置，
由 GuildConfigStore（store.py）负责读写和变更通知。

对于 Java 开发者：
- Pydantic 的 BaseModel 类似于 Java 的 POJO/Record，但自带字段验证和默认值
- BaseSettings 类似于 Spring 的 @ConfigurationProperties，额外支持从环境变量读取配置
"""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


# ==============================================================================
# Discord 连接配置
# ==============================================================================


class DiscordConfig(BaseModel):
    """Discord 连接配置。使用 Gateway WebSocket 接收事件，REST API 执行操作。"""
    token: str = ""  # 从 Discord Developer Portal 获取的 Bot Token
    gateway_url: str = "wss://gateway.discord.gg/?v=10&encoding=json"  # Discord Gateway 地址
    api_base: str = "https://discord.com/api/v10"  # REST API 基础 URL
    # Gateway Intents 位掩码: GUILDS + GUILD_MESSAGES + GUILD_MESSAGE_REACTIONS + MESSAGE_CONTENT
    intents: int = 34305


class WatchdogConfig(BaseModel):
    """自动结束巡检配置。"""
    enabled: bool = True
    interval_s: int = 60  # 巡检间隔（秒）
    warn_minutes: int = 5  # 距离自动结束还剩多少分钟时发出一次警告

    @field_validator("interval_s")
    @classmethod
    def _positive_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("interval_s must be at least 1 second")
        return v


# ==============================================================================
# 服务器（guild）级实况配置
# ==============================================================================


class GuildConfig(BaseModel):
    """
    单个服务器的实况频道池配置。

    字段说明：
    - accept_channel: 受理频道 ID，在此频道贴链接即开启实况（None 表示未启用）
    - naming_pattern: 实况频道名前缀，实际频道名为 "<前缀><1~3位数字>"
    - min_size / max_size: 频道池的下限和上限
    - close_emoji: 结束实况用的反应表情
    - restriction_roles: 实况未进行时禁止发言的身份组
    - allow_roles: 允许开启实况的身份组（为空表示所有人）
    - admin_roles: 额外视为管理员的身份组
    - auto_close_minutes: 无人发言多少分钟后自动结束（0 表示关闭）
    - pin_on_open: 开启时是否置顶镜像消息
    - only_trigger_author_can_close: 是否仅限发起人（或管理员）结束实况
    - topic / nsfw / rate_limit: 新建频道的默认属性
    """
    accept_channel: str | None = None
    naming_pattern: str = "live-"
    min_size: int = Field(default=1, ge=0)
    max_size: int = Field(default=5, ge=0)
    close_emoji: str = "✅"
    restriction_roles: list[str] = Field(default_factory=list)
    allow_roles: list[str] = Field(default_factory=list)
    admin_roles: list[str] = Field(default_factory=list)
    auto_close_minutes: int = Field(default=0, ge=0)
    pin_on_open: bool = True
    only_trigger_author_can_close: bool = False
    topic: str = Field(default="", max_length=900)
    nsfw: bool = False
    rate_limit: int = Field(default=0, ge=0, le=21600)  # 慢速模式（秒），Discord 上限 6 小时

    @field_validator("naming_pattern")
    @classmethod
    def _non_empty_pattern(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("naming_pattern must not be empty")
        return v

    @model_validator(mode="after")
    def _bounds(self) -> "GuildConfig":
        if self.max_size < self.min_size:
            raise ValueError(
                f"max_size ({self.max_size}) must be at least min_size ({self.min_size})"
            )
        return self


# ==============================================================================
# 根配置类
# ==============================================================================


class Config(BaseSettings):
    """
    livepool 根配置类。

    继承自 Pydantic 的 BaseSettings，除了支持从 JSON 文件加载外，
    还支持从环境变量读取配置：
    - 环境变量前缀: LIVEPOOL_
    - 嵌套分隔符: __ (双下划线)
    - 示例: LIVEPOOL_DISCORD__TOKEN=xxx 可覆盖 discord.token
    """
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    data_dir: str = "~/.livepool"
    guild_defaults: GuildConfig = Field(default_factory=GuildConfig)

    @property
    def data_path(self) -> Path:
        """获取展开后的数据目录绝对路径。"""
        return Path(self.data_dir).expanduser()

    @property
    def guilds_path(self) -> Path:
        """服务器配置文件目录。"""
        return self.data_path / "guilds"

    model_config = ConfigDict(
        env_prefix="LIVEPOOL_",
        env_nested_delimiter="__"
    )
