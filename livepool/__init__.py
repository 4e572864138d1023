"""
livepool - Discord 实况频道池管理机器人

模块概述：
    本文件是 livepool 包的入口文件（__init__.py），定义了包的元信息。
    livepool 在每个服务器（guild）中维护一组"实况频道"（slot），
    当受理频道里有人贴出链接时，自动分配一个空闲频道开启实况，
    结束后回收该频道供下一场实况使用。

    整个框架的核心功能包括：
    - 频道池的分配、扩容与收缩（SessionPool）
    - 单个实况频道的状态机（SessionSlot：开启/恢复/取消/结束）
    - 通过 Webhook 名称持久化实况状态，重启后无需数据库即可恢复
    - 超时自动结束（Watchdog）
"""

# 版本号，遵循语义化版本规范（主版本.次版本.修订号）
__version__ = "0.1.0"

# 项目 logo 表情符号，用于 CLI 输出等场景的品牌标识
__logo__ = "🔴"
