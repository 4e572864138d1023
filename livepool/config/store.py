"""
服务器配置存储模块 (config/store.py)
=================================
GuildConfigStore 负责每个服务器实况配置的读取、修改、持久化和变更通知。

【读】read(guild_id) 返回配置快照（深拷贝），调用方修改快照不会影响存储。
【写】update(guild_id, **changes) 验证 → 落盘 → 按变更字段发出命名事件。
【通知】subscribe(event, callback) 注册异步回调，回调参数为 guild_id。

变更事件与字段的对应关系：
- accept-changed    ← accept_channel
- naming-changed    ← naming_pattern
- min-size-changed  ← min_size
- restrict-changed  ← restriction_roles

【存储格式】~/.livepool/guilds/<guild_id>.json，camelCase 键名。
"""

from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable

from loguru import logger
from pydantic import Field, TypeAdapter, ValidationError

from livepool.config.loader import read_json_model, write_json_model
from livepool.config.schema import GuildConfig

ACCEPT_CHANGED = "accept-changed"
NAMING_CHANGED = "naming-changed"
MIN_SIZE_CHANGED = "min-size-changed"
RESTRICT_CHANGED = "restrict-changed"

# 字段 → 变更事件
FIELD_EVENTS: dict[str, str] = {
    "accept_channel": ACCEPT_CHANGED,
    "naming_pattern": NAMING_CHANGED,
    "min_size": MIN_SIZE_CHANGED,
    "restriction_roles": RESTRICT_CHANGED,
}

ConfigListener = Callable[[str], Awaitable[None]]

# 提升 max_size 之前先把 min_size 转成整数（命令行传进来的是字符串）
_SIZE = TypeAdapter(Annotated[int, Field(ge=0)])


class ConfigError(ValueError):
    """配置值不合法。"""


class GuildConfigStore:
    """
    服务器配置存储 - 内存缓存 + JSON 文件持久化。

    属性:
        guilds_dir: 配置文件目录
        defaults: 新服务器使用的默认配置
        _cache: {guild_id: GuildConfig}
        _listeners: {事件名: [回调列表]}
    """

    def __init__(self, guilds_dir: Path, defaults: GuildConfig | None = None):
        self.guilds_dir = guilds_dir
        self.defaults = defaults or GuildConfig()
        self._cache: dict[str, GuildConfig] = {}
        self._listeners: dict[str, list[ConfigListener]] = {}

    def _path(self, guild_id: str) -> Path:
        return self.guilds_dir / f"{guild_id}.json"

    def _get(self, guild_id: str) -> GuildConfig:
        if guild_id not in self._cache:
            loaded = read_json_model(self._path(guild_id), GuildConfig)
            self._cache[guild_id] = loaded or self.defaults.model_copy(deep=True)
        return self._cache[guild_id]

    def read(self, guild_id: str) -> GuildConfig:
        """读取服务器配置快照。"""
        return self._get(guild_id).model_copy(deep=True)

    def known_guilds(self) -> list[str]:
        """列出磁盘上已有配置文件的服务器 ID。"""
        if not self.guilds_dir.exists():
            return []
        return sorted(p.stem for p in self.guilds_dir.glob("*.json"))

    def subscribe(self, event: str, callback: ConfigListener) -> None:
        """注册配置变更回调。"""
        self._listeners.setdefault(event, []).append(callback)

    async def update(self, guild_id: str, **changes: Any) -> GuildConfig:
        """
        修改服务器配置。

        特殊规则：
        - 提高 min_size 超过当前 max_size 时，max_size 同步提高
        - 单独把 max_size 调到 min_size 以下会被拒绝

        参数:
            guild_id: 服务器 ID
            **changes: 要修改的字段

        返回:
            修改后的配置快照

        异常:
            ConfigError: 未知字段或值不合法
        """
        current = self._get(guild_id)
        unknown = set(changes) - set(GuildConfig.model_fields)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        data = current.model_dump()
        data.update(changes)
        try:
            if "min_size" in changes and "max_size" not in changes:
                data["min_size"] = _SIZE.validate_python(data["min_size"])
                data["max_size"] = max(data["max_size"], data["min_size"])
            updated = GuildConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(str(e)) from e

        changed = [k for k in GuildConfig.model_fields if getattr(updated, k) != getattr(current, k)]
        if not changed:
            return updated.model_copy(deep=True)

        write_json_model(self._path(guild_id), updated)
        self._cache[guild_id] = updated
        logger.info(f"Guild {guild_id} config updated: {', '.join(changed)}")

        for event in dict.fromkeys(FIELD_EVENTS[k] for k in changed if k in FIELD_EVENTS):
            await self._emit(event, guild_id)
        return updated.model_copy(deep=True)

    async def _emit(self, event: str, guild_id: str) -> None:
        """按注册顺序调用回调；单个回调失败不影响其他回调。"""
        for callback in self._listeners.get(event, []):
            try:
                await callback(guild_id)
            except Exception as e:
                logger.error(f"Config listener for {event} failed on guild {guild_id}: {e}")
