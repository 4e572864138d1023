"""Tests for the EventBus."""

import asyncio

import pytest

from livepool.bus.events import GuildAvailable
from livepool.bus.queue import EventBus


@pytest.mark.asyncio
async def test_failing_handler_does_not_affect_others():
    bus = EventBus()
    seen = []

    async def broken(event):
        raise RuntimeError("boom")

    async def record(event):
        seen.append(event.guild_id)

    bus.subscribe(GuildAvailable, broken)
    bus.subscribe(GuildAvailable, record)

    await asyncio.gather(*bus.dispatch_one(GuildAvailable(guild_id="1")))

    assert seen == ["1"]


@pytest.mark.asyncio
async def test_dispatch_loop_delivers_published_events():
    bus = EventBus()
    received = asyncio.Event()

    async def record(event):
        received.set()

    bus.subscribe(GuildAvailable, record)
    runner = asyncio.create_task(bus.dispatch())
    await bus.publish(GuildAvailable(guild_id="1"))

    await asyncio.wait_for(received.wait(), timeout=2)
    bus.stop()
    await asyncio.wait_for(runner, timeout=2)

    assert bus.pending == 0


@pytest.mark.asyncio
async def test_events_without_subscribers_are_dropped():
    bus = EventBus()
    assert bus.dispatch_one(GuildAvailable(guild_id="1")) == []
