"""工具函数模块 - 提供路径、时间、Discord ID 等通用辅助函数。"""

from livepool.utils.helpers import ensure_dir, format_elapsed, utcnow

__all__ = ["ensure_dir", "format_elapsed", "utcnow"]
