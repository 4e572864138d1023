"""
实况频道池模块 - 一个服务器内所有实况频道的分配、扩缩容与路由。

SessionPool 是每个服务器一个的"调度中心"：
- 发现：受理频道所在分类（或整个服务器）中名称匹配 "<前缀><数字>" 的文字频道就是实况频道
- 分配：route() 优先选 IDLE，其次 RESUMABLE；都没有时在 max_size 内新建频道，超限则发"已满"公告
- 伸缩：reconcile_size() 补足到 min_size；min_size 变更时再从末尾删除多余的 IDLE 频道
- 索引：SessionIndex 按触发消息 / 公告消息 ID 反查频道，供事件处理使用

【分配的原子性】
route() 在第一个 await 之前同步地选中并 claim() 频道，
所以两个并发的触发绝不会拿到同一个频道；正在新建的频道也计入容量（_provisioning）。

【恢复屏障】
update_channels() 期间 _ready 被清除，route() 会等待恢复扫描完成后再选频道，
避免把"其实还在实况中"的频道当作空闲分配出去。
"""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING, Iterator

from loguru import logger

from livepool.live.recovery import RecoveryScanner
from livepool.live.slot import Session, SessionSlot, SlotStatus
from livepool.platform.base import ChannelInfo, ChatPlatform, Message, PlatformError
from livepool.utils.helpers import jump_url

if TYPE_CHECKING:
    from livepool.config.schema import GuildConfig
    from livepool.config.store import GuildConfigStore

EXTENSION_EMOJI = "🆕"
FULL_TEXT = "⚠️ **All live channels are busy**"
PROVISION_FAILED_TEXT = "⚠️ **Could not create a new live channel**"

# Discord 的频道数量上限
GUILD_CHANNEL_LIMIT = 500
CATEGORY_CHANNEL_LIMIT = 50

_SUFFIX_PATTERN = re.compile(r"(\d{1,3})$")
_TRAILING_ID = re.compile(r"/(\d+)\s*$")


class SessionIndex:
    """
    实况反查索引。

    - by_trigger: 触发消息 ID → 实况中的频道
    - by_notice: 公告消息 ID → 实况中的频道
    - resumables: 公告消息 ID → 可恢复的频道
    """

    def __init__(self):
        self.by_trigger: dict[str, SessionSlot] = {}
        self.by_notice: dict[str, SessionSlot] = {}
        self.resumables: dict[str, SessionSlot] = {}

    def add(self, slot: SessionSlot, session: Session) -> None:
        self.by_trigger[session.trigger.id] = slot
        self.by_notice[session.notice.id] = slot

    def remove(self, session: Session) -> None:
        self.by_trigger.pop(session.trigger.id, None)
        self.by_notice.pop(session.notice.id, None)

    def add_resumable(self, slot: SessionSlot, session: Session) -> None:
        self.resumables[session.notice.id] = slot

    def remove_resumable(self, session: Session) -> None:
        self.resumables.pop(session.notice.id, None)

    def trigger(self, message_id: str) -> SessionSlot | None:
        return self.by_trigger.get(message_id)

    def notice(self, message_id: str) -> SessionSlot | None:
        return self.by_notice.get(message_id)

    def resumable(self, message_id: str) -> SessionSlot | None:
        return self.resumables.get(message_id)


class SessionPool:
    """
    单个服务器的实况频道池。

    属性:
        guild_id: 服务器 ID
        platform: 平台接口
        store: 配置存储（每次处理变更前重新读取快照）
        config: 当前配置快照
        accept_channel: 受理频道（未配置或已不存在时为 None）
        slots: 当前匹配命名规则的频道，按位置排序
        draining: 已不再匹配、但实况尚未结束的频道
        index: 实况反查索引
    """

    def __init__(
        self,
        guild_id: str,
        platform: ChatPlatform,
        store: GuildConfigStore,
        accept_routes: dict[str, SessionPool] | None = None,
    ):
        self.guild_id = guild_id
        self.platform = platform
        self.store = store
        self.config: GuildConfig = store.read(guild_id)
        self.accept_routes = accept_routes if accept_routes is not None else {}
        self.accept_channel: ChannelInfo | None = None
        self.slots: list[SessionSlot] = []
        self.draining: list[SessionSlot] = []
        self.index = SessionIndex()
        self.recovery = RecoveryScanner()
        self._ready = asyncio.Event()
        self._provisioning = 0
        self._number_floor = 0

    def refresh_config(self) -> GuildConfig:
        self.config = self.store.read(self.guild_id)
        return self.config

    @property
    def size(self) -> int:
        """已有频道数 + 正在新建的频道数。"""
        return len(self.slots) + self._provisioning

    def live_slots(self) -> Iterator[SessionSlot]:
        for slot in [*self.slots, *self.draining]:
            if slot.status is SlotStatus.LIVE:
                yield slot

    # ------------------------------------------------------------------
    # 受理频道与频道发现
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """服务器可用时的初始化：绑定受理频道并发现、恢复实况频道。"""
        self.refresh_config()
        self.bind_accept()
        await self.update_channels()

    def bind_accept(self) -> None:
        """按配置绑定受理频道，并更新全局的受理频道路由表。"""
        if self.accept_channel is not None and self.accept_routes.get(self.accept_channel.id) is self:
            del self.accept_routes[self.accept_channel.id]
        self.accept_channel = None

        channel_id = self.config.accept_channel
        if not channel_id:
            return
        channel = self.platform.get_channel(channel_id)
        if channel is None or channel.guild_id != self.guild_id or not channel.is_text:
            logger.warning(f"Guild {self.guild_id}: accept channel {channel_id} not found")
            return
        self.accept_channel = channel
        self.accept_routes[channel.id] = self

    async def update_accept(self) -> None:
        """受理频道变更：重新绑定并重新发现频道。"""
        self.refresh_config()
        self.bind_accept()
        await self.update_channels()

    def scope_channels(self) -> list[ChannelInfo]:
        """受理频道所在分类的频道；未分类时为整个服务器的频道。"""
        accept = self.accept_channel
        if accept is None:
            return []
        channels = self.platform.list_channels(self.guild_id)
        if accept.parent_id:
            return [c for c in channels if c.parent_id == accept.parent_id]
        return channels

    def discover_slots(self) -> list[ChannelInfo]:
        """找出命名匹配 "<前缀><1~3 位数字>" 的文字频道，按位置排序。"""
        pattern = re.compile(rf"^{re.escape(self.config.naming_pattern)}\d{{1,3}}$")
        found = [c for c in self.scope_channels() if c.is_text and pattern.match(c.name)]
        return sorted(found, key=lambda c: (c.position, c.id))

    async def update_channels(self) -> None:
        """
        重新发现实况频道。

        - 仍匹配的频道保留原有状态对象
        - 新出现的频道交给 RecoveryScanner 从标签恢复
        - 不再匹配的频道：IDLE / RESUMABLE 直接丢弃，LIVE 的进入 draining，结束后再丢弃
        """
        self.refresh_config()
        self._ready.clear()
        try:
            existing = {s.channel.id: s for s in [*self.slots, *self.draining]}
            slots: list[SessionSlot] = []
            fresh: list[SessionSlot] = []
            for channel in self.discover_slots():
                slot = existing.pop(channel.id, None)
                if slot is None:
                    slot = SessionSlot(self, channel)
                    fresh.append(slot)
                else:
                    slot.channel = channel
                slots.append(slot)

            self.draining = []
            for slot in existing.values():
                if slot.status is SlotStatus.LIVE or slot.in_flight:
                    self.draining.append(slot)
                else:
                    slot.discard_resumable()
            self.slots = slots
            self._number_floor = 0

            if fresh:
                await self.recovery.scan(fresh)
        finally:
            self._ready.set()

        logger.info(
            f"Guild {self.guild_id}: {len(self.slots)} live slots "
            f"({sum(1 for _ in self.live_slots())} live, {len(self.draining)} draining)"
        )
        await self.reconcile_size(shrink=False)

    # ------------------------------------------------------------------
    # 伸缩
    # ------------------------------------------------------------------

    async def reconcile_size(self, shrink: bool = True) -> None:
        """
        补足到 min_size；shrink 时再从末尾删除多余的 IDLE 频道。

        重新发现频道（启动、改名、换受理频道）只补足不删除，
        删除只在 min_size 变更时进行。
        """
        self.refresh_config()
        if self.accept_channel is None:
            return
        await self._ready.wait()

        min_size = self.config.min_size
        while self.size < min_size:
            if await self.provision_slot() is None:
                break

        if not shrink:
            return
        for slot in reversed(list(self.slots)):
            if len(self.slots) <= min_size:
                break
            if slot.status is SlotStatus.IDLE and not slot.in_flight:
                if not await self.remove_slot(slot):
                    break

    def _reserve_number(self) -> int:
        numbers = [self._number_floor]
        for slot in self.slots:
            match = _SUFFIX_PATTERN.search(slot.channel.name)
            if match:
                numbers.append(int(match.group(1)))
        number = max(numbers) + 1
        self._number_floor = number
        return number

    def _next_position(self) -> int:
        last = self.slots[-1].channel.position if self.slots else self.accept_channel.position
        position = last + 1
        return 0 if position > len(self.scope_channels()) else position

    async def provision_slot(self, claim: bool = False) -> SessionSlot | None:
        """
        新建一个实况频道。

        编号与位置在第一个 await 之前同步预留，并发新建不会撞名。
        失败时在受理频道发出警告并返回 None，池状态不变。

        参数:
            claim: 是否为调用方占用新频道（route / extend 使用）
        """
        accept = self.accept_channel
        if accept is None:
            return None
        cfg = self.config
        number = self._reserve_number()
        position = self._next_position()
        name = f"{cfg.naming_pattern}{number}"

        self._provisioning += 1
        try:
            channel = await self.platform.create_channel(
                self.guild_id,
                name,
                parent_id=accept.parent_id,
                position=position,
                topic=cfg.topic,
                nsfw=cfg.nsfw,
                rate_limit=cfg.rate_limit,
                deny_send_roles=list(cfg.restriction_roles),
            )
        except PlatformError as e:
            logger.warning(f"Guild {self.guild_id}: failed to create {name}: {e}")
            await self._report_provision_failure()
            return None
        finally:
            self._provisioning -= 1

        slot = SessionSlot(self, channel)
        slot.claim()
        self.slots.append(slot)
        logger.info(f"Guild {self.guild_id}: created live slot {name}")
        try:
            await slot.check_living()
        except PlatformError as e:
            logger.warning(f"Slot {name}: state holder setup failed: {e}")
        finally:
            if not claim:
                slot.release()
        return slot

    async def _report_provision_failure(self) -> None:
        text = PROVISION_FAILED_TEXT
        guild_count = len(self.platform.list_channels(self.guild_id))
        parent_id = self.accept_channel.parent_id
        if guild_count >= GUILD_CHANNEL_LIMIT:
            text += f"\nThis server has reached the {GUILD_CHANNEL_LIMIT} channel limit."
        elif parent_id and len(self.scope_channels()) >= CATEGORY_CHANNEL_LIMIT:
            text += f"\nThis category has reached the {CATEGORY_CHANNEL_LIMIT} channel limit."
        try:
            await self.platform.send_message(self.accept_channel.id, text)
        except PlatformError as e:
            logger.warning(f"Guild {self.guild_id}: failed to report provision failure: {e}")

    async def remove_slot(self, slot: SessionSlot) -> bool:
        """删除一个频道。删除失败时放回原位。"""
        if slot not in self.slots:
            return False
        index = self.slots.index(slot)
        self.slots.remove(slot)
        try:
            await self.platform.delete_channel(slot.channel.id)
        except PlatformError as e:
            logger.warning(f"Guild {self.guild_id}: failed to delete {slot.channel.name}: {e}")
            self.slots.insert(index, slot)
            return False
        slot.discard_resumable()
        logger.info(f"Guild {self.guild_id}: removed live slot {slot.channel.name}")
        return True

    # ------------------------------------------------------------------
    # 路由
    # ------------------------------------------------------------------

    def _claim_free_slot(self) -> SessionSlot | None:
        free = [s for s in self.slots if s.available]
        slot = next((s for s in free if s.status is SlotStatus.IDLE), None)
        if slot is None and free:
            slot = free[0]
        if slot is not None:
            slot.claim()
        return slot

    async def route(self, trigger: Message) -> SessionSlot | None:
        """
        为触发消息分配频道并开启实况。

        返回:
            开启实况的频道；已满或新建失败时返回 None

        异常:
            PlatformError: 开启失败（频道已回到 IDLE）
        """
        await self._ready.wait()
        slot = self._claim_free_slot()
        if slot is None:
            if self.size >= self.config.max_size:
                await self._post_full_notice(trigger)
                return None
            slot = await self.provision_slot(claim=True)
            if slot is None:
                return None

        try:
            await slot.open(trigger)
        except Exception:
            await self.end_routing(slot)
            raise
        return slot

    async def _post_full_notice(self, trigger: Message) -> None:
        """发"已满"公告，附带触发消息链接，管理员点 🆕 可临时扩容。"""
        if self.accept_channel is None:
            return
        accept_id = self.accept_channel.id
        text = (
            f"{FULL_TEXT}\n"
            f"An admin can react with {EXTENSION_EMOJI} to open an extra channel for:\n"
            f"{jump_url(self.guild_id, trigger.channel_id, trigger.id)}"
        )
        notice = await self.platform.send_message(accept_id, text)
        await self.platform.add_reaction(accept_id, notice.id, EXTENSION_EMOJI)
        logger.info(f"Guild {self.guild_id}: pool full, trigger {trigger.id} waiting for extension")

    @staticmethod
    def full_notice_target(notice: Message) -> str | None:
        """从"已满"公告中取出触发消息 ID；不是"已满"公告时返回 None。"""
        if not notice.content.startswith(FULL_TEXT):
            return None
        match = _TRAILING_ID.search(notice.content)
        return match.group(1) if match else None

    async def extend(self, trigger: Message) -> SessionSlot | None:
        """
        管理员临时扩容：不受 max_size 限制新建一个频道并为触发消息开启实况。

        扩出来的频道排在 min_size 之后，实况结束即被删除。

        返回:
            开启实况的频道；触发消息已在实况中或新建失败时返回 None
        """
        await self._ready.wait()
        if self.accept_channel is None or self.index.trigger(trigger.id) is not None:
            return None

        slot = await self.provision_slot(claim=True)
        if slot is None:
            return None
        try:
            await slot.open(trigger)
        except Exception:
            await self.end_routing(slot)
            raise
        logger.info(f"Guild {self.guild_id}: extended pool with {slot.channel.name}")
        return slot

    async def end_routing(self, slot: SessionSlot) -> None:
        """
        实况结束（或开启失败）后调用：释放占用，并执行延迟缩容。

        - draining 中的频道一旦不再 LIVE 就被丢弃
        - 排在 min_size 之后的 IDLE 频道被删除
        """
        slot.release()
        if slot in self.draining:
            if slot.status is not SlotStatus.LIVE:
                self.draining.remove(slot)
                slot.discard_resumable()
            return
        if slot.status is not SlotStatus.IDLE or slot not in self.slots:
            return
        if self.slots.index(slot) >= self.config.min_size:
            await self.remove_slot(slot)

    async def update_restrictions(self) -> None:
        """发言限制身份组变更：按各频道当前状态重新应用权限覆盖。"""
        self.refresh_config()
        for slot in [*self.slots, *self.draining]:
            allow = slot.status is SlotStatus.LIVE
            for role_id in self.config.restriction_roles:
                try:
                    await self.platform.set_send_permission(slot.channel.id, role_id, allow)
                except PlatformError as e:
                    logger.warning(f"Slot {slot.channel.name}: failed to update restriction for {role_id}: {e}")
