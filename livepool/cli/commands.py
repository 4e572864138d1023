"""
CLI 命令模块 - livepool 的所有命令行命令定义。

本模块使用 Typer 框架定义 livepool 的 CLI 命令体系：
- onboard：初始化配置文件
- run：启动机器人（Discord 连接 + 事件总线 + 实况服务 + 巡检）
- status：查看配置状态
- guild show / guild set：查看、修改某个服务器的实况配置

技术栈：
- Typer：CLI 框架（基于 Click，支持类型注解自动生成帮助文档）
- Rich：终端美化输出（表格、颜色）
"""

import asyncio
import sys
from typing import Any, get_args, get_origin

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from livepool import __logo__, __version__

# 创建 Typer 应用实例（CLI 根命令）
app = typer.Typer(
    name="livepool",
    help=f"{__logo__} livepool - Discord live channel pool",
    no_args_is_help=True,
)

console = Console()

TRUE_WORDS = {"true", "yes", "on", "enable", "enabled", "1"}
FALSE_WORDS = {"false", "no", "off", "disable", "disabled", "0"}
NONE_WORDS = {"", "none", "null", "-"}


def version_callback(value: bool):
    """--version：打印版本号并退出。"""
    if value:
        console.print(f"{__logo__} livepool v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", callback=version_callback, is_eager=True
    ),
):
    """livepool CLI 根命令回调。"""
    pass


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """
    初始化 livepool 配置。

    在 ~/.livepool/ 下创建默认配置文件 config.json，并打印后续操作指引。
    """
    from livepool.config.loader import get_config_path, save_config
    from livepool.config.schema import Config

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} livepool is ready!")
    console.print("\nNext steps:")
    console.print("  1. Add your bot token to [cyan]~/.livepool/config.json[/cyan]")
    console.print("  2. Bind an accept channel: [cyan]livepool guild set <guild_id> accept_channel <channel_id>[/cyan]")
    console.print("  3. Start: [cyan]livepool run[/cyan]")


# ============================================================================
# Run
# ============================================================================


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    启动 livepool 机器人（核心启动命令）。

    编排所有子服务：
    1. 加载配置，创建事件总线和服务器配置存储
    2. 创建 Discord 平台适配器
    3. 创建实况服务（订阅平台事件与配置变更）
    4. 创建巡检服务（Watchdog）
    5. 启动事件分发和 Gateway 连接，直到被中断
    """
    from livepool.bus.queue import EventBus
    from livepool.config.loader import load_config
    from livepool.config.store import GuildConfigStore
    from livepool.live.service import LiveService
    from livepool.live.watchdog import Watchdog
    from livepool.platform.discord import DiscordPlatform

    logger.enable("livepool")
    if verbose:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")

    config = load_config()
    if not config.discord.token:
        console.print("[red]Error: No Discord token configured.[/red]")
        console.print("Set [cyan]discord.token[/cyan] in ~/.livepool/config.json or LIVEPOOL_DISCORD__TOKEN")
        raise typer.Exit(1)

    console.print(f"{__logo__} Starting livepool...")

    bus = EventBus()
    store = GuildConfigStore(config.guilds_path, config.guild_defaults)
    platform = DiscordPlatform(config.discord, bus)
    service = LiveService(platform, bus, store)
    watchdog = Watchdog(
        service.iter_pools,
        interval_s=config.watchdog.interval_s,
        warn_minutes=config.watchdog.warn_minutes,
        enabled=config.watchdog.enabled,
    )

    known = store.known_guilds()
    if known:
        console.print(f"[green]✓[/green] Guild configs: {len(known)}")
    else:
        console.print("[yellow]Warning: No guild configured yet[/yellow]")
    if config.watchdog.enabled:
        console.print(f"[green]✓[/green] Watchdog: every {config.watchdog.interval_s}s")

    async def main_loop():
        try:
            await watchdog.start()
            await asyncio.gather(
                bus.dispatch(),
                platform.start(),
            )
        finally:
            watchdog.stop()
            bus.stop()
            await platform.stop()

    try:
        asyncio.run(main_loop())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


# ============================================================================
# Guild Commands
# ============================================================================


guild_app = typer.Typer(help="Manage per-guild live settings")
app.add_typer(guild_app, name="guild")


def _make_store():
    from livepool.config.loader import load_config
    from livepool.config.store import GuildConfigStore

    config = load_config()
    return GuildConfigStore(config.guilds_path, config.guild_defaults)


def _parse_value(key: str, raw: str) -> Any:
    """
    把命令行字符串转换为配置字段的值。

    - 列表字段：逗号分隔，支持 <@&id> 形式的身份组提及
    - 可选字段：none / null / - 表示清空，支持 <#id> 形式的频道提及
    - 布尔字段：true/false、yes/no、enable/disable 等
    - 其余交给 Pydantic 校验
    """
    from livepool.config.schema import GuildConfig

    field = GuildConfig.model_fields.get(key)
    if field is None:
        return raw
    annotation = field.annotation
    text = raw.strip()

    if get_origin(annotation) is list:
        return [_strip_mention(part) for part in text.split(",") if part.strip()]
    if type(None) in get_args(annotation):
        return None if text.lower() in NONE_WORDS else _strip_mention(text)
    if annotation is bool:
        if text.lower() in TRUE_WORDS:
            return True
        if text.lower() in FALSE_WORDS:
            return False
    return text


def _strip_mention(text: str) -> str:
    return text.strip().lstrip("<").rstrip(">").lstrip("#@&")


@guild_app.command("show")
def guild_show(
    guild_id: str = typer.Argument(..., help="Guild ID"),
):
    """以表格形式显示服务器的实况配置。"""
    store = _make_store()
    config = store.read(guild_id)

    table = Table(title=f"Guild {guild_id}")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    for key, value in config.model_dump().items():
        if isinstance(value, list):
            shown = ", ".join(value) if value else "[dim]none[/dim]"
        elif value is None or value == "":
            shown = "[dim]not set[/dim]"
        else:
            shown = str(value)
        table.add_row(key, shown)

    console.print(table)


@guild_app.command("set")
def guild_set(
    guild_id: str = typer.Argument(..., help="Guild ID"),
    key: str = typer.Argument(..., help="Config key (e.g. min_size)"),
    value: str = typer.Argument(..., help="New value"),
):
    """
    修改服务器的一项实况配置。

    修改会校验后写入 ~/.livepool/guilds/<guild_id>.json；
    正在运行的机器人会在下次启动时读取到新值。
    """
    from livepool.config.store import ConfigError

    logger.disable("livepool")
    store = _make_store()
    try:
        asyncio.run(store.update(guild_id, **{key: _parse_value(key, value)}))
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] {key} updated for guild {guild_id}")


# ============================================================================
# Status Commands
# ============================================================================


@app.command()
def status():
    """
    显示 livepool 配置状态。

    展示内容：配置文件路径、Token 是否配置、巡检设置、已有配置的服务器。
    """
    from livepool.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} livepool Status\n")

    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Token: {'[green]✓[/green]' if config.discord.token else '[dim]not set[/dim]'}")
    if config.watchdog.enabled:
        console.print(
            f"Watchdog: every {config.watchdog.interval_s}s, warn {config.watchdog.warn_minutes} min before auto-close"
        )
    else:
        console.print("Watchdog: [dim]disabled[/dim]")

    guilds = _make_store().known_guilds()
    console.print(f"Guilds: {', '.join(guilds) if guilds else '[dim]none[/dim]'}")


if __name__ == "__main__":
    app()
