"""
启动恢复模块 - 进程启动（或频道重新发现）时并发检查每个频道的状态标签。
"""

from __future__ import annotations

import asyncio

from loguru import logger

from livepool.live.slot import SessionSlot, SlotStatus


class RecoveryScanner:
    """
    并发调用每个频道的 check_living()。

    单个频道恢复失败只记录日志，不影响其他频道；失败的频道保持 IDLE。
    """

    async def scan(self, slots: list[SessionSlot]) -> int:
        """
        参数:
            slots: 待恢复的频道

        返回:
            恢复为 LIVE 的频道数
        """
        if not slots:
            return 0
        results = await asyncio.gather(*(slot.check_living() for slot in slots), return_exceptions=True)

        live = 0
        for slot, result in zip(slots, results):
            if isinstance(result, BaseException):
                logger.error(f"Slot {slot.channel.name}: recovery failed: {result}")
            elif result is SlotStatus.LIVE:
                live += 1
        logger.info(f"Recovery scanned {len(slots)} slots, {live} live")
        return live
