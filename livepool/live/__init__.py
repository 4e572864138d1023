"""实况核心模块 - 状态标签、频道状态机、频道池、巡检与恢复。"""

from livepool.live.codec import SessionRefs, decode, encode
from livepool.live.pool import SessionIndex, SessionPool
from livepool.live.recovery import RecoveryScanner
from livepool.live.service import LiveService
from livepool.live.slot import Session, SessionSlot, SlotStateError, SlotStatus
from livepool.live.watchdog import Watchdog

__all__ = [
    "SessionRefs",
    "encode",
    "decode",
    "Session",
    "SessionSlot",
    "SlotStatus",
    "SlotStateError",
    "SessionIndex",
    "SessionPool",
    "RecoveryScanner",
    "Watchdog",
    "LiveService",
]
