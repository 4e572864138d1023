"""
实况频道状态机模块 - 管理单个实况频道（slot）的完整生命周期。

状态迁移：
    IDLE ──open──▶ LIVE ──close──▶ RESUMABLE ──resume──▶ LIVE
                    │                  │
                    └──cancel/abort──▶ IDLE ◀──(重新分配时丢弃)

- IDLE：空闲，可被 SessionPool.route() 分配
- LIVE：实况进行中，session 不为 None
- RESUMABLE：刚正常结束，保留 last_session，撤销结束反应即可恢复

【持久化】
状态标签写在频道内机器人自己的 Webhook 名称上（见 codec.py），
进程重启后 check_living() 只依据这个标签恢复状态。

【失败处理】
- open / resume 的任一步失败 → abort()：标签写回 CLOSED、恢复发言限制、回到 IDLE，然后把异常继续抛给调用方
- close / cancel 的各个步骤尽力而为：单步失败只记日志，状态迁移照常完成
- edit 失败只记日志

【并发】
状态的内存迁移都在第一个 await 之前同步完成，
因此并发的第二次 close（如 Watchdog 和用户反应同时触发）会看到非 LIVE 状态并直接返回。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable

from loguru import logger

from livepool.live.codec import CLOSED_TAG, SessionRefs, decode, encode, is_tag
from livepool.platform.base import ChannelInfo, Message, NotFoundError, PlatformError, Webhook
from livepool.utils.helpers import format_elapsed, utcnow

if TYPE_CHECKING:
    from livepool.config.schema import GuildConfig
    from livepool.live.pool import SessionPool

OPENED_TEXT = "🔴 **Live started**"
RESUMED_TEXT = "🔴 **Live resumed**"
CLOSED_TEXT = "⚪ **Live ended**"
CANCELED_TEXT = "↩️ **Live canceled**"
WARNING_TEXT = "⏳ **This live will end automatically in {minutes} min unless someone posts**"


class SlotStatus(str, Enum):
    """实况频道状态。"""
    IDLE = "idle"
    LIVE = "live"
    RESUMABLE = "resumable"


class SlotStateError(RuntimeError):
    """在当前状态下不允许执行该操作。"""


@dataclass
class Session:
    """
    一场实况。

    属性:
        trigger: 受理频道中触发实况的原始消息
        mirror: 转贴到实况频道中的副本
        notice: 受理频道中的公开公告（其创建时间即实况开始时间）
        warned: 是否已发出自动结束警告
        warning: 自动结束警告消息
        warning_basis: 发出警告时观测到的最后活动时间
    """
    trigger: Message
    mirror: Message
    notice: Message
    warned: bool = False
    warning: Message | None = None
    warning_basis: datetime | None = None

    @property
    def refs(self) -> SessionRefs:
        return SessionRefs(self.trigger.id, self.mirror.id, self.notice.id)

    @property
    def opened_at(self) -> datetime:
        return self.notice.created_at


class SessionSlot:
    """
    单个实况频道的状态机。

    属性:
        pool: 所属的 SessionPool
        channel: 频道快照
        holder: 存放状态标签的 Webhook（首次需要时才获取或创建）
        status: 当前状态
        session: 进行中的实况（仅 LIVE）
        last_session: 可恢复的实况（仅 RESUMABLE）
        in_flight: 已被某个操作占用（分配中、恢复中），不可再被分配
    """

    def __init__(self, pool: SessionPool, channel: ChannelInfo):
        self.pool = pool
        self.platform = pool.platform
        self.channel = channel
        self.holder: Webhook | None = None
        self.status = SlotStatus.IDLE
        self.session: Session | None = None
        self.last_session: Session | None = None
        self.in_flight = False

    def __repr__(self) -> str:
        return f"SessionSlot({self.channel.name!r}, {self.status.value})"

    @property
    def config(self) -> GuildConfig:
        return self.pool.config

    @property
    def tag(self) -> str:
        """当前持久化的标签（与 Webhook 名称一致）。"""
        return self.holder.name if self.holder else CLOSED_TAG

    @property
    def available(self) -> bool:
        """能否被分配给新的实况。"""
        return self.status is not SlotStatus.LIVE and not self.in_flight

    def claim(self) -> None:
        """占用本频道。必须在任何 await 之前同步调用。"""
        if not self.available:
            raise SlotStateError(f"{self.channel.name} is not available")
        self.in_flight = True

    def release(self) -> None:
        self.in_flight = False

    # ------------------------------------------------------------------
    # 状态标签
    # ------------------------------------------------------------------

    async def _ensure_holder(self) -> Webhook:
        """
        获取或创建存放标签的 Webhook。

        查找顺序：名称是合法标签的自有 Webhook → 任意自有 Webhook（改名为 CLOSED）→ 新建。
        有多个标签 Webhook 时优先 OPENED，其次 ID 最小的；其余的改回 CLOSED，
        保证下次恢复读到的是同一个。
        """
        if self.holder is not None:
            return self.holder

        bot_id = self.platform.bot_user_id
        owned = [w for w in await self.platform.list_webhooks(self.channel.id) if w.owner_id == bot_id]
        tagged = sorted((w for w in owned if is_tag(w.name)), key=lambda w: (decode(w.name) is None, int(w.id)))
        holder = tagged[0] if tagged else None
        for extra in tagged[1:]:
            if extra.name != CLOSED_TAG:
                await self.platform.rename_webhook(extra.id, CLOSED_TAG)
        if holder is None and owned:
            holder = await self.platform.rename_webhook(owned[0].id, CLOSED_TAG)
        if holder is None:
            holder = await self.platform.create_webhook(self.channel.id, CLOSED_TAG)
        self.holder = holder
        return holder

    async def _write_tag(self, refs: SessionRefs | None) -> None:
        tag = encode(refs)
        holder = await self._ensure_holder()
        try:
            self.holder = await self.platform.rename_webhook(holder.id, tag)
        except NotFoundError:
            # Webhook 被人删掉了，重建一个
            self.holder = None
            holder = await self._ensure_holder()
            self.holder = await self.platform.rename_webhook(holder.id, tag)

    # ------------------------------------------------------------------
    # 内存状态迁移（同步）
    # ------------------------------------------------------------------

    def _enter_living(self, session: Session) -> None:
        if self.last_session is not None:
            self.pool.index.remove_resumable(self.last_session)
        self.status = SlotStatus.LIVE
        self.session = session
        self.last_session = None
        self.pool.index.add(self, session)

    def _exit_living(self) -> Session | None:
        session = self.session
        if session is not None:
            self.pool.index.remove(session)
        self.session = None
        self.status = SlotStatus.IDLE
        return session

    def _enter_resumable(self, session: Session) -> None:
        self.status = SlotStatus.RESUMABLE
        self.last_session = session
        self.pool.index.add_resumable(self, session)

    def discard_resumable(self) -> None:
        """丢弃可恢复的旧实况（重新分配或频道移出池时）。"""
        if self.last_session is not None:
            self.pool.index.remove_resumable(self.last_session)
        self.last_session = None
        if self.status is SlotStatus.RESUMABLE:
            self.status = SlotStatus.IDLE

    async def _attempt(self, action: str, step: Awaitable[Any]) -> Any:
        """执行一个尽力而为的平台步骤；平台错误只记录日志。"""
        try:
            return await step
        except PlatformError as e:
            logger.warning(f"Slot {self.channel.name}: {action} failed: {e}")
            return None

    async def _set_restrictions(self, allow: bool) -> None:
        for role_id in self.config.restriction_roles:
            await self.platform.set_send_permission(self.channel.id, role_id, allow)

    def _accept_id(self) -> str:
        accept = self.pool.accept_channel
        if accept is None:
            raise SlotStateError(f"Pool of guild {self.pool.guild_id} has no accept channel")
        return accept.id

    # ------------------------------------------------------------------
    # 生命周期操作
    # ------------------------------------------------------------------

    async def check_living(self) -> SlotStatus:
        """
        从 Webhook 标签恢复本频道的状态。

        标签声称实况进行中时，逐一取回三条引用消息；
        任何一条已不存在（NotFoundError）就把标签改回 CLOSED，回到 IDLE。
        其他平台错误向上抛出，由 RecoveryScanner 记录。

        返回:
            恢复后的状态
        """
        if self.session is not None:
            self._exit_living()
        self.discard_resumable()

        holder = await self._ensure_holder()
        refs = decode(holder.name)
        if refs is None:
            return self.status

        try:
            accept_id = self._accept_id()
            trigger = await self.platform.fetch_message(accept_id, refs.trigger_id)
            mirror = await self.platform.fetch_message(self.channel.id, refs.mirror_id)
            notice = await self.platform.fetch_message(accept_id, refs.notice_id)
        except (NotFoundError, SlotStateError) as e:
            logger.warning(f"Slot {self.channel.name}: stale live tag {holder.name} ({e}), resetting")
            await self._write_tag(None)
            return self.status

        self._enter_living(Session(trigger=trigger, mirror=mirror, notice=notice))
        logger.info(f"Slot {self.channel.name}: recovered live session for trigger {trigger.id}")
        return self.status

    async def open(self, trigger: Message) -> Session:
        """
        为触发消息开启实况。

        步骤：放开发言限制 → 频道内发开始提示 → 转贴触发消息 → （可选）置顶
        → 受理频道发公告并加结束反应 → 写入标签。任一步失败则 abort() 并重新抛出。

        参数:
            trigger: 受理频道中的触发消息

        返回:
            新的 Session
        """
        if self.status is SlotStatus.LIVE:
            raise SlotStateError(f"{self.channel.name} is already live")
        if not self.in_flight:
            self.claim()
        # 重新分配会丢弃可恢复的旧实况
        self.discard_resumable()

        cfg = self.config
        notice: Message | None = None
        try:
            accept_id = self._accept_id()
            await self._set_restrictions(True)
            await self.platform.send_message(self.channel.id, OPENED_TEXT)
            mirror = await self.platform.send_message(self.channel.id, trigger.content)
            if cfg.pin_on_open:
                await self.platform.pin_message(self.channel.id, mirror.id)
            notice = await self.platform.send_message(accept_id, self._notice_text(OPENED_TEXT))
            await self.platform.add_reaction(accept_id, notice.id, cfg.close_emoji)
            session = Session(trigger=trigger, mirror=mirror, notice=notice)
            await self._write_tag(session.refs)
        except Exception:
            await self.abort(posted_notice=notice)
            raise
        finally:
            self.release()

        self._enter_living(session)
        logger.info(f"Slot {self.channel.name}: live opened for trigger {trigger.id}")
        return session

    async def resume(self) -> bool:
        """
        恢复最近一次正常结束的实况，沿用原来的三条消息。

        三条消息中任何一条已不存在时返回 False，频道保持 RESUMABLE。
        后续步骤失败则 abort() 并重新抛出。
        """
        if self.status is not SlotStatus.RESUMABLE or self.in_flight:
            return False
        last = self.last_session
        self.in_flight = True
        try:
            try:
                trigger = await self.platform.fetch_message(last.trigger.channel_id, last.trigger.id)
                mirror = await self.platform.fetch_message(self.channel.id, last.mirror.id)
                await self.platform.fetch_message(last.notice.channel_id, last.notice.id)
            except NotFoundError as e:
                logger.info(f"Slot {self.channel.name}: cannot resume, message gone ({e})")
                return False

            if self.status is not SlotStatus.RESUMABLE or self.last_session is not last:
                return False

            try:
                await self._set_restrictions(True)
                await self.platform.send_message(self.channel.id, RESUMED_TEXT)
                if self.config.pin_on_open:
                    await self.platform.pin_message(self.channel.id, mirror.id)
                notice = await self.platform.edit_message(
                    last.notice.channel_id, last.notice.id, self._notice_text(RESUMED_TEXT)
                )
                session = Session(trigger=trigger, mirror=mirror, notice=notice)
                await self._write_tag(session.refs)
            except Exception:
                await self.abort()
                raise
        finally:
            self.release()

        self._enter_living(session)
        logger.info(f"Slot {self.channel.name}: live resumed for trigger {trigger.id}")
        return True

    async def abort(self, posted_notice: Message | None = None) -> None:
        """
        中止开启/恢复：回到 IDLE，移出索引，标签写回 CLOSED，恢复发言限制。

        清理步骤尽力而为；调用方负责重新抛出原始异常。
        """
        self._exit_living()
        self.discard_resumable()
        self.status = SlotStatus.IDLE

        await self._attempt("reset tag", self._write_tag(None))
        await self._attempt("restore restrictions", self._set_restrictions(False))
        if posted_notice is not None:
            await self._attempt(
                "delete notice",
                self.platform.delete_message(posted_notice.channel_id, posted_notice.id),
            )
        logger.warning(f"Slot {self.channel.name}: open aborted")

    async def edit(self, content: str) -> None:
        """触发消息被编辑时同步更新镜像。"""
        if self.status is not SlotStatus.LIVE:
            return
        session = self.session
        mirror = await self._attempt(
            "edit mirror", self.platform.edit_message(self.channel.id, session.mirror.id, content)
        )
        if mirror is not None:
            session.mirror = mirror

    async def cancel(self) -> bool:
        """
        触发消息被删除：删除镜像和公告，回到 IDLE，不保留可恢复状态。

        返回:
            是否执行了取消（非 LIVE 时为 False）
        """
        if self.status is not SlotStatus.LIVE:
            return False
        session = self._exit_living()
        notice = session.notice

        await self._attempt("delete mirror", self.platform.delete_message(self.channel.id, session.mirror.id))
        await self._attempt("delete notice", self.platform.delete_message(notice.channel_id, notice.id))
        await self._attempt("restore restrictions", self._set_restrictions(False))
        await self._attempt("reset tag", self._write_tag(None))
        await self._attempt("post canceled notice", self.platform.send_message(self.channel.id, CANCELED_TEXT))

        logger.info(f"Slot {self.channel.name}: live canceled (trigger {session.trigger.id} deleted)")
        await self.pool.end_routing(self)
        return True

    async def close(self, automatic: bool = False, now: datetime | None = None) -> bool:
        """
        结束实况，进入 RESUMABLE。

        参数:
            automatic: 是否由 Watchdog 因无人发言触发
            now: 当前时间（计算实况时长用，测试时可注入）

        返回:
            是否执行了结束（非 LIVE 时为 False，重复调用无副作用）
        """
        if self.status is not SlotStatus.LIVE:
            return False
        session = self._exit_living()
        self._enter_resumable(session)
        now = now or utcnow()

        await self._attempt("restore restrictions", self._set_restrictions(False))
        await self._attempt("unpin mirror", self.platform.unpin_message(self.channel.id, session.mirror.id))
        await self._attempt("reset tag", self._write_tag(None))
        await self._attempt("post closed notice", self.platform.send_message(self.channel.id, CLOSED_TEXT))
        notice = await self._attempt(
            "edit notice",
            self.platform.edit_message(
                session.notice.channel_id, session.notice.id, self._closed_text(session, automatic, now)
            ),
        )
        if notice is not None:
            session.notice = notice

        logger.info(f"Slot {self.channel.name}: live closed ({'auto' if automatic else 'manual'})")
        await self.pool.end_routing(self)
        return True

    async def auto_close(self, now: datetime | None = None, warn_minutes: int = 5) -> bool:
        """
        Watchdog 巡检入口。

        无人发言时长达到 auto_close_minutes 时自动结束；
        剩余时间进入 warn_minutes 以内时发一次警告（同一场实况只发一次）。
        机器人的警告消息本身不算作活动。

        返回:
            是否因此结束了实况
        """
        minutes = self.config.auto_close_minutes
        if self.status is not SlotStatus.LIVE or minutes <= 0:
            return False
        session = self.session
        now = now or utcnow()

        last = await self.platform.last_activity(self.channel.id) or session.opened_at
        if self.session is not session:
            return False
        if session.warning is not None and last <= session.warning.created_at:
            last = session.warning_basis

        limit = timedelta(minutes=minutes)
        idle = now - last
        if idle >= limit:
            return await self.close(automatic=True, now=now)

        remaining = limit - idle
        if minutes > warn_minutes and not session.warned and remaining <= timedelta(minutes=warn_minutes):
            session.warned = True
            session.warning_basis = last
            text = WARNING_TEXT.format(minutes=math.ceil(remaining.total_seconds() / 60))
            session.warning = await self._attempt(
                "post auto-close warning", self.platform.send_message(self.channel.id, text)
            )
        return False

    # ------------------------------------------------------------------
    # 公告文本
    # ------------------------------------------------------------------

    def _notice_text(self, headline: str) -> str:
        cfg = self.config
        who = "the trigger author" if cfg.only_trigger_author_can_close else "anyone"
        return f"{headline} {self.channel.mention}\nWhen the live is over, {who} can react with {cfg.close_emoji}"

    def _closed_text(self, session: Session, automatic: bool, now: datetime) -> str:
        text = f"{CLOSED_TEXT} {self.channel.mention}\nDuration: {format_elapsed(session.opened_at, now)}"
        if automatic:
            text += f"\nClosed automatically after {self.config.auto_close_minutes} min without messages"
        return text
