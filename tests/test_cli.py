"""Tests for the livepool CLI guild commands."""

import json

import pytest
from typer.testing import CliRunner

from livepool.cli.commands import _parse_value, app

runner = CliRunner()


@pytest.fixture(autouse=True)
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "livepool v" in result.stdout


def test_guild_set_writes_camel_case_file(home):
    result = runner.invoke(app, ["guild", "set", "100", "min_size", "3"])

    assert result.exit_code == 0
    data = json.loads((home / ".livepool" / "guilds" / "100.json").read_text())
    assert data["minSize"] == 3
    assert data["maxSize"] == 5


def test_guild_set_rejects_invalid_bounds(home):
    result = runner.invoke(app, ["guild", "set", "100", "max_size", "0"])

    assert result.exit_code == 1
    assert not (home / ".livepool" / "guilds" / "100.json").exists()


def test_guild_set_rejects_unknown_key():
    result = runner.invoke(app, ["guild", "set", "100", "colour", "red"])
    assert result.exit_code == 1


def test_guild_set_reports_non_numeric_size(home):
    result = runner.invoke(app, ["guild", "set", "100", "min_size", "three"])

    assert result.exit_code == 1
    assert "Error" in result.stdout
    assert not (home / ".livepool" / "guilds" / "100.json").exists()


def test_guild_show_lists_settings():
    runner.invoke(app, ["guild", "set", "100", "accept_channel", "<#555>"])

    result = runner.invoke(app, ["guild", "show", "100"])

    assert result.exit_code == 0
    assert "accept_channel" in result.stdout
    assert "555" in result.stdout


@pytest.mark.parametrize("key,raw,expected", [
    ("restriction_roles", "<@&1>, 2,", ["1", "2"]),
    ("restriction_roles", "", []),
    ("accept_channel", "none", None),
    ("accept_channel", "<#42>", "42"),
    ("pin_on_open", "off", False),
    ("nsfw", "yes", True),
    ("min_size", "4", "4"),
])
def test_parse_value(key, raw, expected):
    assert _parse_value(key, raw) == expected
