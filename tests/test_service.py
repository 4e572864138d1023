"""Tests for LiveService event and config routing."""

import asyncio
from dataclasses import replace

import pytest

from livepool.bus.events import (
    GuildAvailable,
    MessageCreated,
    MessageDeleted,
    MessageUpdated,
    ReactionAdded,
    ReactionRemoved,
)
from livepool.bus.queue import EventBus
from livepool.live.pool import EXTENSION_EMOJI, FULL_TEXT
from livepool.live.service import FAILURE_TEXT, LiveService
from livepool.live.slot import SlotStatus
from tests.fakes import BOT_ID, GUILD_ID, USER_ID


async def _dispatch(bus, event):
    await asyncio.gather(*bus.dispatch_one(event))


@pytest.fixture
def make_service(platform, make_store):
    async def _make(slots: int = 2, **overrides):
        for number in range(1, slots + 1):
            platform.add_channel(f"live-{number}", parent_id=platform.category.id)
        overrides.setdefault("min_size", slots)
        overrides.setdefault("max_size", max(slots, overrides["min_size"]))
        bus = EventBus()
        service = LiveService(platform, bus, make_store(**overrides))
        await _dispatch(bus, GuildAvailable(guild_id=GUILD_ID))
        return service, bus, service.pools[GUILD_ID]

    return _make


def _reaction(message, emoji="✅", user_id=USER_ID, roles=None, bot=False):
    return ReactionAdded(guild_id=GUILD_ID, channel_id=message.channel_id, message_id=message.id,
                         user_id=user_id, emoji=emoji, user_bot=bot, member_roles=list(roles or []))


class TestTriggers:
    @pytest.mark.asyncio
    async def test_guild_available_loads_pool(self, platform, make_service):
        service, _, pool = await make_service(slots=2)
        assert [s.channel.name for s in pool.slots] == ["live-1", "live-2"]
        assert service.accept_routes == {platform.accept.id: pool}
        assert service.iter_pools() == [pool]

    @pytest.mark.asyncio
    async def test_link_opens_live(self, make_service, trigger):
        _, bus, pool = await make_service()
        message = trigger()

        await _dispatch(bus, MessageCreated(message=message))

        assert pool.index.trigger(message.id) is pool.slots[0]
        assert pool.slots[0].status is SlotStatus.LIVE

    @pytest.mark.asyncio
    async def test_duplicate_event_opens_once(self, make_service, trigger):
        _, bus, pool = await make_service()
        message = trigger()

        await _dispatch(bus, MessageCreated(message=message))
        await _dispatch(bus, MessageCreated(message=message))

        assert [s.status for s in pool.slots] == [SlotStatus.LIVE, SlotStatus.IDLE]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"content": "no link here"},
        {"bot": True},
    ])
    async def test_ignored_messages(self, make_service, trigger, kwargs):
        _, bus, pool = await make_service()

        await _dispatch(bus, MessageCreated(message=trigger(**kwargs)))

        assert all(s.status is SlotStatus.IDLE for s in pool.slots)

    @pytest.mark.asyncio
    async def test_links_outside_accept_channel_ignored(self, platform, make_service):
        _, bus, pool = await make_service()
        elsewhere = platform.add_channel("chat", parent_id=platform.category.id)

        await _dispatch(bus, MessageCreated(message=platform.post(elsewhere.id, "https://example.com")))

        assert all(s.status is SlotStatus.IDLE for s in pool.slots)

    @pytest.mark.asyncio
    async def test_allow_roles(self, platform, make_service, trigger):
        _, bus, pool = await make_service(allow_roles=["5"])

        stranger = trigger(roles=["6"])
        member = trigger(roles=["5"])
        owner = trigger(author_id=platform.owner_id)
        for message in (stranger, member, owner):
            await _dispatch(bus, MessageCreated(message=message))

        assert pool.index.trigger(stranger.id) is None
        assert pool.index.trigger(member.id) is not None
        assert pool.index.trigger(owner.id) is not None

    @pytest.mark.asyncio
    async def test_open_failure_is_reported(self, platform, make_service, trigger):
        _, bus, pool = await make_service()
        platform.fail("send_message")

        await _dispatch(bus, MessageCreated(message=trigger()))

        assert pool.slots[0].status is SlotStatus.IDLE
        assert platform.messages_in(platform.accept.id)[-1].content == FAILURE_TEXT


class TestSessionEvents:
    @pytest.mark.asyncio
    async def test_trigger_edit_updates_mirror(self, platform, make_service, trigger):
        _, bus, pool = await make_service()
        message = trigger()
        await _dispatch(bus, MessageCreated(message=message))

        await _dispatch(bus, MessageUpdated(message=replace(message, content="https://example.com/2")))

        mirror = pool.slots[0].session.mirror
        assert platform.messages[mirror.id].content == "https://example.com/2"

    @pytest.mark.asyncio
    async def test_trigger_delete_cancels(self, platform, make_service, trigger):
        _, bus, pool = await make_service()
        message = trigger()
        await _dispatch(bus, MessageCreated(message=message))
        platform.remove(message.id)

        await _dispatch(bus, MessageDeleted(guild_id=GUILD_ID, channel_id=message.channel_id, message_id=message.id))

        assert pool.slots[0].status is SlotStatus.IDLE
        assert pool.index.resumables == {}

    @pytest.mark.asyncio
    async def test_notice_delete_closes(self, platform, make_service, trigger):
        _, bus, pool = await make_service()
        await _dispatch(bus, MessageCreated(message=trigger()))
        notice = pool.slots[0].session.notice
        platform.remove(notice.id)

        await _dispatch(bus, MessageDeleted(guild_id=GUILD_ID, channel_id=notice.channel_id, message_id=notice.id))

        assert pool.slots[0].status is SlotStatus.RESUMABLE


class TestReactions:
    @pytest.mark.asyncio
    async def test_close_emoji_closes(self, make_service, trigger):
        _, bus, pool = await make_service()
        await _dispatch(bus, MessageCreated(message=trigger()))
        notice = pool.slots[0].session.notice

        await _dispatch(bus, _reaction(notice, emoji="👍"))
        assert pool.slots[0].status is SlotStatus.LIVE

        await _dispatch(bus, _reaction(notice, user_id=BOT_ID))
        assert pool.slots[0].status is SlotStatus.LIVE

        await _dispatch(bus, _reaction(notice))
        assert pool.slots[0].status is SlotStatus.RESUMABLE

    @pytest.mark.asyncio
    async def test_custom_close_emoji_matches_by_id(self, make_service, trigger):
        _, bus, pool = await make_service(close_emoji="<:done:555>")
        await _dispatch(bus, MessageCreated(message=trigger()))

        await _dispatch(bus, _reaction(pool.slots[0].session.notice, emoji="555"))

        assert pool.slots[0].status is SlotStatus.RESUMABLE

    @pytest.mark.asyncio
    async def test_only_trigger_author_can_close(self, platform, make_service, trigger):
        platform.manager_roles.add("8")
        _, bus, pool = await make_service(only_trigger_author_can_close=True)
        await _dispatch(bus, MessageCreated(message=trigger()))
        slot = pool.slots[0]
        notice = slot.session.notice

        await _dispatch(bus, _reaction(notice, user_id="43"))
        assert slot.status is SlotStatus.LIVE

        await _dispatch(bus, _reaction(notice, user_id="44", roles=["8"]))
        assert slot.status is SlotStatus.RESUMABLE

        await slot.resume()
        await _dispatch(bus, _reaction(notice, user_id=USER_ID))
        assert slot.status is SlotStatus.RESUMABLE

    @pytest.mark.asyncio
    async def test_removing_last_close_reaction_resumes(self, platform, make_service, trigger):
        _, bus, pool = await make_service()
        await _dispatch(bus, MessageCreated(message=trigger()))
        slot = pool.slots[0]
        notice = slot.session.notice
        await _dispatch(bus, _reaction(notice))
        removed = ReactionRemoved(guild_id=GUILD_ID, channel_id=notice.channel_id, message_id=notice.id,
                                  user_id=USER_ID, emoji="✅")

        platform.react(notice.id, "✅")
        await _dispatch(bus, removed)
        assert slot.status is SlotStatus.RESUMABLE

        platform.messages[notice.id].reactions.clear()
        await _dispatch(bus, removed)
        assert slot.status is SlotStatus.LIVE
        assert pool.index.notice(notice.id) is slot


class TestExtension:
    async def _fill(self, platform, bus, trigger):
        await _dispatch(bus, MessageCreated(message=trigger()))
        waiting = trigger()
        await _dispatch(bus, MessageCreated(message=waiting))
        full = platform.messages_in(platform.accept.id)[-1]
        assert full.content.startswith(FULL_TEXT)
        return waiting, full

    @pytest.mark.asyncio
    async def test_admin_extension_opens_extra_slot(self, platform, make_service, trigger):
        _, bus, pool = await make_service(slots=1)
        waiting, full = await self._fill(platform, bus, trigger)

        await _dispatch(bus, _reaction(full, emoji=EXTENSION_EMOJI, user_id=platform.owner_id))

        assert full.id not in platform.messages
        assert len(pool.slots) == 2
        assert pool.index.trigger(waiting.id) is pool.slots[1]

    @pytest.mark.asyncio
    async def test_non_admin_cannot_extend(self, platform, make_service, trigger):
        _, bus, pool = await make_service(slots=1)
        waiting, full = await self._fill(platform, bus, trigger)

        await _dispatch(bus, _reaction(full, emoji=EXTENSION_EMOJI))

        assert full.id in platform.messages
        assert len(pool.slots) == 1
        assert pool.index.trigger(waiting.id) is None

    @pytest.mark.asyncio
    async def test_admin_role_from_config(self, platform, make_service, trigger):
        _, bus, pool = await make_service(slots=1, admin_roles=["9"])
        waiting, full = await self._fill(platform, bus, trigger)

        await _dispatch(bus, _reaction(full, emoji=EXTENSION_EMOJI, roles=["9"]))

        assert pool.index.trigger(waiting.id) is not None


class TestConfigEvents:
    @pytest.mark.asyncio
    async def test_min_size_change_reconciles(self, platform, make_service):
        service, _, pool = await make_service(slots=1, max_size=5)

        await service.store.update(GUILD_ID, min_size=3)

        assert [s.channel.name for s in pool.slots] == ["live-1", "live-2", "live-3"]

    @pytest.mark.asyncio
    async def test_restriction_change_updates_overwrites(self, platform, make_service, trigger):
        service, bus, pool = await make_service(slots=2)
        await _dispatch(bus, MessageCreated(message=trigger()))

        await service.store.update(GUILD_ID, restriction_roles=["77"])

        assert platform.permissions[(pool.slots[0].channel.id, "77")] is True
        assert platform.permissions[(pool.slots[1].channel.id, "77")] is False

    @pytest.mark.asyncio
    async def test_accept_change_rebinds(self, platform, make_service, trigger):
        service, bus, pool = await make_service(slots=1)
        other = platform.add_channel("accept-2", parent_id=platform.category.id)

        await service.store.update(GUILD_ID, accept_channel=other.id)
        await _dispatch(bus, MessageCreated(message=trigger()))
        assert pool.slots[0].status is SlotStatus.IDLE

        await _dispatch(bus, MessageCreated(message=platform.post(other.id, "https://example.com")))
        assert pool.slots[0].status is SlotStatus.LIVE

    @pytest.mark.asyncio
    async def test_naming_change_rediscovers(self, platform, make_service):
        service, _, pool = await make_service(slots=1)
        platform.add_channel("stream-4", parent_id=platform.category.id)

        await service.store.update(GUILD_ID, naming_pattern="stream-")

        assert [s.channel.name for s in pool.slots] == ["stream-4"]
