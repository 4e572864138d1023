"""
无人发言巡检服务 - 定期检查所有实况频道，超时自动结束。

本模块实现了周期性巡检：
- 按固定间隔（默认 60 秒）遍历所有服务器的 LIVE 频道
- 服务器配置了 auto_close_minutes > 0 时，无人发言达到该时长就自动结束实况
- 剩余时间进入 warn_minutes 以内时先在频道里发一次警告

架构设计：
- 基于 asyncio.Task 的定期循环（start / stop / _run_loop / _tick）
- 通过 pools 回调获取当前所有 SessionPool，不持有池的引用
- 单个频道检查失败只记录日志，不影响同一轮的其他频道
- trigger_now() 方法支持手动触发，适合调试和测试
"""

import asyncio
from datetime import datetime
from typing import Callable, Iterable

from loguru import logger

from livepool.live.pool import SessionPool

# 默认巡检间隔：60 秒
DEFAULT_WATCHDOG_INTERVAL_S = 60


class Watchdog:
    """
    无人发言巡检服务。

    工作流程：
    1. 每隔 interval_s 秒执行一次 _tick()
    2. 遍历 pools() 返回的每个池中的 LIVE 频道
    3. 调用 slot.auto_close()，由频道自行判断警告或结束
    """

    def __init__(
        self,
        pools: Callable[[], Iterable[SessionPool]],
        interval_s: int = DEFAULT_WATCHDOG_INTERVAL_S,
        warn_minutes: int = 5,
        enabled: bool = True,
    ):
        """
        参数:
            pools: 返回当前所有 SessionPool 的回调
            interval_s: 巡检间隔秒数
            warn_minutes: 自动结束前多少分钟发出警告
            enabled: 是否启用
        """
        self.pools = pools
        self.interval_s = interval_s
        self.warn_minutes = warn_minutes
        self.enabled = enabled
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """启动巡检。enabled=False 时直接返回。"""
        if not self.enabled:
            logger.info("Watchdog disabled")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Watchdog started (every {self.interval_s}s)")

    def stop(self) -> None:
        """停止巡检并取消循环任务。"""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run_loop(self) -> None:
        """巡检主循环。先等待一个间隔，再执行检查。"""
        while self._running:
            try:
                await asyncio.sleep(self.interval_s)
                if self._running:
                    await self._tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Watchdog error: {e}")

    async def _tick(self, now: datetime | None = None) -> int:
        """
        执行一轮巡检。

        返回:
            本轮自动结束的实况数
        """
        closed = 0
        for pool in list(self.pools()):
            if pool.config.auto_close_minutes <= 0:
                continue
            for slot in list(pool.live_slots()):
                try:
                    if await slot.auto_close(now=now, warn_minutes=self.warn_minutes):
                        closed += 1
                except Exception as e:
                    logger.error(f"Watchdog check failed on {slot.channel.name}: {e}")

        if closed:
            logger.info(f"Watchdog: auto-closed {closed} live session(s)")
        else:
            logger.debug("Watchdog: nothing to close")
        return closed

    async def trigger_now(self, now: datetime | None = None) -> int:
        """手动触发一轮巡检。"""
        return await self._tick(now=now)
