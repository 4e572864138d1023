"""Shared pytest fixtures and configuration."""

import pytest

from livepool.config.schema import GuildConfig
from livepool.config.store import GuildConfigStore
from livepool.live.pool import SessionPool
from tests.fakes import GUILD_ID, FakePlatform

LINK = "https://example.com/watch?v=1"


@pytest.fixture
def platform():
    """A fake guild with an accept channel and no live slots."""
    return FakePlatform()


@pytest.fixture
def make_store(platform, tmp_path):
    """Build a config store whose defaults bind the fake accept channel."""

    def _make(**overrides) -> GuildConfigStore:
        overrides.setdefault("accept_channel", platform.accept.id)
        return GuildConfigStore(tmp_path / "guilds", GuildConfig(**overrides))

    return _make


@pytest.fixture
def make_pool(platform, make_store):
    """
    Create ``slots`` live channels, then load a pool over them.

    ``min_size`` defaults to the number of slots so loading does not shrink
    the pool, and ``max_size`` to at least that.
    """

    async def _make(slots: int = 2, **overrides) -> SessionPool:
        for number in range(1, slots + 1):
            platform.add_channel(f"live-{number}", parent_id=platform.category.id)
        overrides.setdefault("min_size", slots)
        overrides.setdefault("max_size", max(slots, overrides["min_size"]))
        pool = SessionPool(GUILD_ID, platform, make_store(**overrides))
        await pool.load()
        return pool

    return _make


@pytest.fixture
def trigger(platform):
    """Post a link into the accept channel."""

    def _post(content: str = LINK, **kwargs):
        return platform.post(platform.accept.id, content, **kwargs)

    return _post
