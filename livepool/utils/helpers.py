"""
工具函数集合 - livepool 项目全局通用的辅助函数。

函数分类：
- 路径管理：ensure_dir
- 时间工具：utcnow, snowflake_time, format_elapsed
- Discord 工具：emoji_key, jump_url, contains_link
"""

import re
from datetime import datetime, timezone
from pathlib import Path

# Discord 纪元（2015-01-01T00:00:00Z）的毫秒时间戳，雪花 ID 的时间部分以此为起点
DISCORD_EPOCH_MS = 1420070400000

# 受理频道中触发实况的链接格式
LINK_PATTERN = re.compile(r"https?://[\w!?/+\-_~;.,*&@#$%()'\[\]]+")


def ensure_dir(path: Path) -> Path:
    """
    确保目录存在，不存在则递归创建。

    参数:
        path: 目标目录路径

    返回:
        创建后的目录路径（原样返回）
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def utcnow() -> datetime:
    """当前 UTC 时间（带时区信息）。"""
    return datetime.now(timezone.utc)


def snowflake_time(snowflake: str | int) -> datetime:
    """
    从 Discord 雪花 ID 中提取创建时间。

    雪花 ID 的高 42 位是相对 Discord 纪元的毫秒数，
    因此任何消息的创建时间都可以直接由其 ID 推出，无需额外存储。

    参数:
        snowflake: 雪花 ID（字符串或整数）

    返回:
        UTC 时间
    """
    ms = (int(snowflake) >> 22) + DISCORD_EPOCH_MS
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def format_elapsed(start: datetime, now: datetime) -> str:
    """
    把经过时间渲染为 "1d 2h 3m" 形式。

    规则：
    - 按天/小时/分钟拆分，值为 0 的单位省略
    - 不足 1 分钟时显示秒数，如 "42s"
    - 负数（时钟回拨）视为 "0s"

    参数:
        start: 开始时间
        now: 当前时间

    返回:
        格式化后的字符串
    """
    total = int((now - start).total_seconds())
    if total < 60:
        return f"{max(total, 0)}s"

    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    return " ".join(parts)


def emoji_key(emoji: str) -> str:
    """
    将表情符号规范化为比较用的键。

    自定义表情在 API 中写作 "name:id"（或 "<:name:id>"），比较时只取 id；
    Unicode 表情原样返回。
    """
    emoji = emoji.strip().lstrip("<").rstrip(">")
    if emoji.startswith("a:"):
        emoji = emoji[2:]
    if ":" in emoji:
        return emoji.rsplit(":", 1)[1]
    return emoji


def jump_url(guild_id: str, channel_id: str, message_id: str) -> str:
    """生成消息的跳转链接。"""
    return f"https://discord.com/channels/{guild_id}/{channel_id}/{message_id}"


def contains_link(content: str) -> bool:
    """判断消息内容是否包含 http(s) 链接。"""
    return bool(LINK_PATTERN.search(content or ""))
