"""Tests for auto-close and the Watchdog service."""

import pytest

from livepool.live.slot import SlotStatus
from livepool.live.watchdog import Watchdog


def _warnings(platform, slot):
    return [m for m in platform.messages_in(slot.channel.id) if m.content.startswith("⏳")]


class TestAutoClose:
    @pytest.mark.asyncio
    async def test_closes_after_threshold_once(self, platform, make_pool, trigger):
        pool = await make_pool(slots=1, auto_close_minutes=30)
        slot = pool.slots[0]
        session = await slot.open(trigger())
        platform.advance(minutes=31)

        assert await slot.auto_close(now=platform.now) is True
        assert slot.status is SlotStatus.RESUMABLE
        notice = platform.messages[session.notice.id].content
        assert "Duration: 31m" in notice
        assert "after 30 min" in notice

        assert await slot.auto_close(now=platform.now) is False
        assert slot.status is SlotStatus.RESUMABLE

    @pytest.mark.asyncio
    async def test_recent_activity_keeps_session_open(self, platform, make_pool, trigger):
        pool = await make_pool(slots=1, auto_close_minutes=30)
        slot = pool.slots[0]
        await slot.open(trigger())
        platform.advance(minutes=20)
        platform.post(slot.channel.id, "gg")
        platform.advance(minutes=20)

        assert await slot.auto_close(now=platform.now) is False
        assert slot.status is SlotStatus.LIVE

    @pytest.mark.asyncio
    async def test_disabled_when_threshold_is_zero(self, platform, make_pool, trigger):
        pool = await make_pool(slots=1)
        slot = pool.slots[0]
        await slot.open(trigger())
        platform.advance(days=2)

        assert await slot.auto_close(now=platform.now) is False
        assert slot.status is SlotStatus.LIVE

    @pytest.mark.asyncio
    async def test_warns_once_before_closing(self, platform, make_pool, trigger):
        pool = await make_pool(slots=1, auto_close_minutes=30)
        slot = pool.slots[0]
        await slot.open(trigger())

        platform.advance(minutes=26)
        assert await slot.auto_close(now=platform.now, warn_minutes=5) is False
        assert len(_warnings(platform, slot)) == 1
        assert "4 min" in _warnings(platform, slot)[0].content

        # the warning itself does not count as activity
        platform.advance(minutes=2)
        assert await slot.auto_close(now=platform.now, warn_minutes=5) is False
        assert len(_warnings(platform, slot)) == 1

        platform.advance(minutes=2)
        assert await slot.auto_close(now=platform.now, warn_minutes=5) is True

    @pytest.mark.asyncio
    async def test_no_warning_when_threshold_is_short(self, platform, make_pool, trigger):
        pool = await make_pool(slots=1, auto_close_minutes=5)
        slot = pool.slots[0]
        await slot.open(trigger())
        platform.advance(minutes=3)

        assert await slot.auto_close(now=platform.now, warn_minutes=5) is False
        assert _warnings(platform, slot) == []

    @pytest.mark.asyncio
    async def test_activity_after_warning_restarts_the_clock(self, platform, make_pool, trigger):
        pool = await make_pool(slots=1, auto_close_minutes=30)
        slot = pool.slots[0]
        await slot.open(trigger())
        platform.advance(minutes=26)
        await slot.auto_close(now=platform.now)
        platform.advance(minutes=2)
        platform.post(slot.channel.id, "still here")

        platform.advance(minutes=29)
        assert await slot.auto_close(now=platform.now) is False
        platform.advance(minutes=1)
        assert await slot.auto_close(now=platform.now) is True


class TestWatchdog:
    @pytest.mark.asyncio
    async def test_tick_closes_idle_sessions(self, platform, make_pool, trigger):
        pool = await make_pool(slots=2, auto_close_minutes=10)
        await pool.route(trigger())
        await pool.route(trigger())
        platform.advance(minutes=10)
        watchdog = Watchdog(lambda: [pool])

        assert await watchdog.trigger_now(now=platform.now) == 2
        assert all(slot.status is SlotStatus.RESUMABLE for slot in pool.slots)
        assert await watchdog.trigger_now(now=platform.now) == 0

    @pytest.mark.asyncio
    async def test_slot_failure_does_not_stop_tick(self, platform, make_pool, trigger):
        pool = await make_pool(slots=2, auto_close_minutes=10)
        first = await pool.route(trigger())
        second = await pool.route(trigger())
        platform.advance(minutes=15)
        platform.fail("last_activity")
        watchdog = Watchdog(lambda: [pool])

        assert await watchdog.trigger_now(now=platform.now) == 1
        assert first.status is SlotStatus.LIVE
        assert second.status is SlotStatus.RESUMABLE

    @pytest.mark.asyncio
    async def test_guilds_without_auto_close_are_skipped(self, platform, make_pool, trigger):
        pool = await make_pool(slots=1)
        await pool.route(trigger())
        platform.advance(days=1)
        calls = len(platform.calls)

        assert await Watchdog(lambda: [pool]).trigger_now(now=platform.now) == 0
        assert len(platform.calls) == calls

    @pytest.mark.asyncio
    async def test_disabled_watchdog_does_not_start(self):
        watchdog = Watchdog(lambda: [], enabled=False)
        await watchdog.start()
        assert watchdog._task is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        watchdog = Watchdog(lambda: [], interval_s=3600)
        await watchdog.start()
        assert watchdog._task is not None
        watchdog.stop()
        assert watchdog._task is None
