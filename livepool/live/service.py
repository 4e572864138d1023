"""
实况服务模块 - 把平台事件和配置变更分派给各服务器的 SessionPool。

LiveService 是实况核心的"入口"：
- 每个服务器一个 SessionPool，服务器可用（GUILD_CREATE）时创建并加载
- 维护受理频道路由表 accept_routes：受理频道 ID → SessionPool
- 订阅事件总线上的消息 / 反应事件，按引用反查到具体频道后调用状态机操作
- 订阅配置存储的变更事件，驱动池的重新绑定、重新发现、伸缩和权限更新

【事件 → 操作】
- 受理频道里带链接的新消息         → pool.route()
- 触发消息被编辑                   → slot.edit()
- 触发消息被删除                   → slot.cancel()
- 公告被删除                       → slot.close()
- 公告上添加结束表情               → slot.close()
- 可恢复公告上的结束表情全部撤销   → slot.resume()
- 管理员在"已满"公告上添加 🆕      → pool.extend()
"""

from loguru import logger

from livepool.bus.events import (
    GuildAvailable,
    MessageCreated,
    MessageDeleted,
    MessageUpdated,
    ReactionAdded,
    ReactionRemoved,
)
from livepool.bus.queue import EventBus
from livepool.config.store import (
    ACCEPT_CHANGED,
    MIN_SIZE_CHANGED,
    NAMING_CHANGED,
    RESTRICT_CHANGED,
    GuildConfigStore,
)
from livepool.live.pool import EXTENSION_EMOJI, SessionPool
from livepool.live.slot import SlotStateError
from livepool.platform.base import ChatPlatform, Message, PlatformError
from livepool.utils.helpers import contains_link, emoji_key

FAILURE_TEXT = "⚠️ **Could not start the live.** Please try again later."


class LiveService:
    """
    实况服务。

    属性:
        platform: 平台接口
        bus: 事件总线
        store: 服务器配置存储
        pools: {guild_id: SessionPool}
        accept_routes: {受理频道 ID: SessionPool}
    """

    def __init__(self, platform: ChatPlatform, bus: EventBus, store: GuildConfigStore):
        self.platform = platform
        self.bus = bus
        self.store = store
        self.pools: dict[str, SessionPool] = {}
        self.accept_routes: dict[str, SessionPool] = {}

        bus.subscribe(GuildAvailable, self.on_guild_available)
        bus.subscribe(MessageCreated, self.on_message)
        bus.subscribe(MessageUpdated, self.on_message_updated)
        bus.subscribe(MessageDeleted, self.on_message_deleted)
        bus.subscribe(ReactionAdded, self.on_reaction_added)
        bus.subscribe(ReactionRemoved, self.on_reaction_removed)

        store.subscribe(ACCEPT_CHANGED, self._on_accept_changed)
        store.subscribe(NAMING_CHANGED, self._on_naming_changed)
        store.subscribe(MIN_SIZE_CHANGED, self._on_min_size_changed)
        store.subscribe(RESTRICT_CHANGED, self._on_restrict_changed)

    def iter_pools(self) -> list[SessionPool]:
        return list(self.pools.values())

    def pool_for(self, guild_id: str) -> SessionPool:
        """获取服务器的池，不存在则创建（尚未加载）。"""
        pool = self.pools.get(guild_id)
        if pool is None:
            pool = SessionPool(guild_id, self.platform, self.store, self.accept_routes)
            self.pools[guild_id] = pool
        return pool

    # ------------------------------------------------------------------
    # 权限判断
    # ------------------------------------------------------------------

    async def is_admin(self, pool: SessionPool, user_id: str, role_ids: list[str]) -> bool:
        """管理员：拥有配置的管理员身份组，或拥有"管理频道"权限。"""
        if set(role_ids) & set(pool.config.admin_roles):
            return True
        return await self.platform.has_manage_channels(pool.guild_id, user_id, role_ids)

    async def may_trigger(self, pool: SessionPool, message: Message) -> bool:
        """配置了允许身份组时，只有这些身份组的成员和管理员能触发实况。"""
        allow_roles = pool.config.allow_roles
        if not allow_roles or set(message.author_roles) & set(allow_roles):
            return True
        return await self.is_admin(pool, message.author_id, message.author_roles)

    # ------------------------------------------------------------------
    # 平台事件
    # ------------------------------------------------------------------

    async def on_guild_available(self, event: GuildAvailable) -> None:
        pool = self.pool_for(event.guild_id)
        await pool.load()

    async def on_message(self, event: MessageCreated) -> None:
        message = event.message
        if message.author_bot or message.author_system:
            return
        pool = self.accept_routes.get(message.channel_id)
        if pool is None or not contains_link(message.content):
            return
        if pool.index.trigger(message.id) is not None:
            return
        if not await self.may_trigger(pool, message):
            logger.debug(f"Guild {pool.guild_id}: {message.author_id} may not trigger a live")
            return

        try:
            await pool.route(message)
        except (PlatformError, SlotStateError) as e:
            logger.error(f"Guild {pool.guild_id}: failed to open live for {message.id}: {e}")
            await self._report_failure(pool)

    async def _report_failure(self, pool: SessionPool) -> None:
        if pool.accept_channel is None:
            return
        try:
            await self.platform.send_message(pool.accept_channel.id, FAILURE_TEXT)
        except PlatformError as e:
            logger.warning(f"Guild {pool.guild_id}: failed to report open failure: {e}")

    async def on_message_updated(self, event: MessageUpdated) -> None:
        message = event.message
        pool = self.pools.get(message.guild_id)
        if pool is None:
            return
        slot = pool.index.trigger(message.id)
        if slot is not None:
            await slot.edit(message.content)

    async def on_message_deleted(self, event: MessageDeleted) -> None:
        pool = self.pools.get(event.guild_id)
        if pool is None:
            return
        slot = pool.index.notice(event.message_id)
        if slot is not None:
            await slot.close()
            return
        slot = pool.index.trigger(event.message_id)
        if slot is not None:
            await slot.cancel()

    async def on_reaction_added(self, event: ReactionAdded) -> None:
        if event.user_bot or event.user_id == self.platform.bot_user_id:
            return
        pool = self.pools.get(event.guild_id)
        if pool is None:
            return

        slot = pool.index.notice(event.message_id)
        if slot is not None:
            if event.emoji != emoji_key(pool.config.close_emoji):
                return
            if pool.config.only_trigger_author_can_close and event.user_id != slot.session.trigger.author_id:
                if not await self.is_admin(pool, event.user_id, event.member_roles):
                    return
            await slot.close()
            return

        accept = pool.accept_channel
        if event.emoji == EXTENSION_EMOJI and accept is not None and event.channel_id == accept.id:
            await self._extend(pool, event)

    async def _extend(self, pool: SessionPool, event: ReactionAdded) -> None:
        """管理员在"已满"公告上点 🆕：删除公告并为对应的触发消息临时扩容。"""
        if not await self.is_admin(pool, event.user_id, event.member_roles):
            return
        try:
            notice = await self.platform.fetch_message(event.channel_id, event.message_id)
        except PlatformError as e:
            logger.debug(f"Guild {pool.guild_id}: extension notice gone: {e}")
            return
        trigger_id = pool.full_notice_target(notice)
        if notice.author_id != self.platform.bot_user_id or trigger_id is None:
            return

        try:
            trigger = await self.platform.fetch_message(pool.accept_channel.id, trigger_id)
        except PlatformError as e:
            logger.info(f"Guild {pool.guild_id}: extension trigger {trigger_id} gone: {e}")
            return
        try:
            await self.platform.delete_message(notice.channel_id, notice.id)
        except PlatformError as e:
            logger.warning(f"Guild {pool.guild_id}: failed to delete full notice: {e}")

        try:
            await pool.extend(trigger)
        except (PlatformError, SlotStateError) as e:
            logger.error(f"Guild {pool.guild_id}: extension failed for {trigger.id}: {e}")
            await self._report_failure(pool)

    async def on_reaction_removed(self, event: ReactionRemoved) -> None:
        pool = self.pools.get(event.guild_id)
        if pool is None:
            return
        slot = pool.index.resumable(event.message_id)
        key = emoji_key(pool.config.close_emoji)
        if slot is None or event.emoji != key:
            return
        try:
            notice = await self.platform.fetch_message(event.channel_id, event.message_id)
        except PlatformError as e:
            logger.debug(f"Guild {pool.guild_id}: resumable notice gone: {e}")
            return
        if notice.reactions.get(key, 0) > 0:
            return
        await slot.resume()

    # ------------------------------------------------------------------
    # 配置变更
    # ------------------------------------------------------------------

    async def _on_accept_changed(self, guild_id: str) -> None:
        if guild_id in self.pools:
            await self.pools[guild_id].update_accept()

    async def _on_naming_changed(self, guild_id: str) -> None:
        if guild_id in self.pools:
            await self.pools[guild_id].update_channels()

    async def _on_min_size_changed(self, guild_id: str) -> None:
        if guild_id in self.pools:
            await self.pools[guild_id].reconcile_size()

    async def _on_restrict_changed(self, guild_id: str) -> None:
        if guild_id in self.pools:
            await self.pools[guild_id].update_restrictions()
