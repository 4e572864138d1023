"""
Discord 平台实现模块 - 基于 Discord Gateway WebSocket 协议 + REST API。

本模块直接使用 Discord Gateway WebSocket API 和 REST API，
而非高级 SDK（如 discord.py），保持了极简的依赖（httpx + websockets）。

【核心功能】
1. 通过 WebSocket 连接 Discord Gateway 接收实时事件
2. 自动心跳保活（HEARTBEAT）、断线自动重连（带5秒延迟）
3. 维护服务器频道/身份组缓存（来自 GUILD_CREATE 与 CHANNEL_* 事件）
4. 把消息、编辑、删除、反应事件转换为 livepool.bus.events 中的数据类并发布
5. 通过 REST API 实现 ChatPlatform 的全部操作（速率限制自动重试）

【Discord Gateway 协议简述】
- op=10 (HELLO): 服务器下发心跳间隔，客户端开始心跳 + 身份验证
- op=2 (IDENTIFY): 客户端发送 token 进行身份验证
- op=0 (DISPATCH): 服务器推送事件（READY、GUILD_CREATE、MESSAGE_CREATE 等）
- op=1 (HEARTBEAT): 心跳包
- op=7 (RECONNECT) / op=9 (INVALID SESSION): 退出循环触发重连
"""

import asyncio
import json
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx
import websockets
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
from livepool.config.schema import DiscordConfig
from livepool.platform.base import (
    ChannelInfo,
    ChatPlatform,
    ForbiddenError,
    Message,
    NotFoundError,
    PlatformError,
    Webhook,
)
from livepool.utils.helpers import snowflake_time

# 权限位
PERMISSION_ADMINISTRATOR = 1 << 3
PERMISSION_MANAGE_CHANNELS = 1 << 4
PERMISSION_SEND_MESSAGES = 1 << 11

# 权限覆盖的目标类型：0 = 身份组
OVERWRITE_ROLE = 0


class DiscordPlatform(ChatPlatform):
    """
    Discord 平台实现 - Gateway WebSocket 收事件，REST API 做操作。

    属性:
        config: Discord 连接配置（token、gateway URL、intents 等）
        bus: 事件总线，收到的平台事件发布到这里
        _ws: WebSocket 连接实例
        _seq: 最新的事件序列号（用于心跳）
        _heartbeat_task: 心跳定时任务
        _http: HTTP 异步客户端（REST API）
        _channels: 频道缓存 {channel_id: ChannelInfo}
        _last_message: 频道最后一条消息 ID {channel_id: message_id}
        _roles: 身份组权限缓存 {guild_id: {role_id: 权限位}}
        _owners: 服务器所有者 {guild_id: user_id}
    """

    name = "discord"

    def __init__(self, config: DiscordConfig, bus: EventBus):
        self.config = config
        self.bus = bus
        self._running = False
        self._ws: websockets.WebSocketClientProtocol | None = None
        self._seq: int | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._http: httpx.AsyncClient | None = None
        self._user_id = ""
        self._channels: dict[str, ChannelInfo] = {}
        self._last_message: dict[str, str | None] = {}
        self._roles: dict[str, dict[str, int]] = {}
        self._owners: dict[str, str] = {}

    @property
    def bot_user_id(self) -> str:
        return self._user_id

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # 连接生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        启动 Discord Gateway 连接。

        采用外层无限循环实现断线自动重连：
        连接断开后等待5秒重新连接，直到 _running 被设为 False。
        """
        if not self.config.token:
            logger.error("Discord bot token not configured")
            return

        self._running = True
        self._http = httpx.AsyncClient(
            base_url=self.config.api_base,
            headers={"Authorization": f"Bot {self.config.token}"},
            timeout=30.0,
        )

        while self._running:
            try:
                logger.info("Connecting to Discord gateway...")
                async with websockets.connect(self.config.gateway_url) as ws:
                    self._ws = ws
                    await self._gateway_loop()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Discord gateway error: {e}")
                if self._running:
                    logger.info("Reconnecting to Discord gateway in 5 seconds...")
                    await asyncio.sleep(5)

    async def stop(self) -> None:
        """按顺序清理：心跳任务 → WebSocket → HTTP 客户端。"""
        self._running = False
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        if self._ws:
            await self._ws.close()
            self._ws = None
        if self._http:
            await self._http.aclose()
            self._http = None

    async def _gateway_loop(self) -> None:
        """Gateway 主消息循环，根据操作码分发处理。"""
        if not self._ws:
            return

        async for raw in self._ws:
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON from Discord gateway: {raw[:100]}")
                continue

            op = data.get("op")
            event_type = data.get("t")
            seq = data.get("s")
            payload = data.get("d")

            if seq is not None:
                self._seq = seq

            if op == 10:
                interval_ms = payload.get("heartbeat_interval", 45000)
                await self._start_heartbeat(interval_ms / 1000)
                await self._identify()
            elif op == 0 and event_type:
                try:
                    await self._handle_dispatch(event_type, payload or {})
                except Exception as e:
                    logger.error(f"Error handling Discord event {event_type}: {e}")
            elif op == 7:
                logger.info("Discord gateway requested reconnect")
                break
            elif op == 9:
                logger.warning("Discord gateway invalid session")
                break

    async def _identify(self) -> None:
        """发送 IDENTIFY 消息进行身份验证。"""
        if not self._ws:
            return

        identify = {
            "op": 2,
            "d": {
                "token": self.config.token,
                "intents": self.config.intents,
                "properties": {
                    "os": "livepool",
                    "browser": "livepool",
                    "device": "livepool",
                },
            },
        }
        await self._ws.send(json.dumps(identify))

    async def _start_heartbeat(self, interval_s: float) -> None:
        """启动或重启心跳循环。"""
        if self._heartbeat_task:
            self._heartbeat_task.cancel()

        async def heartbeat_loop() -> None:
            while self._running and self._ws:
                payload = {"op": 1, "d": self._seq}
                try:
                    await self._ws.send(json.dumps(payload))
                except Exception as e:
                    logger.warning(f"Discord heartbeat failed: {e}")
                    break
                await asyncio.sleep(interval_s)

        self._heartbeat_task = asyncio.create_task(heartbeat_loop())

    # ------------------------------------------------------------------
    # DISPATCH 事件处理
    # ------------------------------------------------------------------

    async def _handle_dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        """
        处理 op=0 推送事件。

        缓存类事件（READY / GUILD_CREATE / CHANNEL_*）直接更新本地缓存，
        业务类事件转换为数据类后发布到事件总线。
        """
        if event_type == "READY":
            self._user_id = str((payload.get("user") or {}).get("id", ""))
            logger.info("Discord gateway READY")
        elif event_type == "GUILD_CREATE":
            self._cache_guild(payload)
            await self.bus.publish(GuildAvailable(guild_id=str(payload["id"])))
        elif event_type in ("CHANNEL_CREATE", "CHANNEL_UPDATE"):
            if payload.get("guild_id"):
                self._cache_channel(payload, str(payload["guild_id"]))
        elif event_type == "CHANNEL_DELETE":
            self._channels.pop(str(payload.get("id")), None)
        elif event_type in ("GUILD_ROLE_CREATE", "GUILD_ROLE_UPDATE"):
            role = payload.get("role") or {}
            self._roles.setdefault(str(payload["guild_id"]), {})[str(role["id"])] = int(role.get("permissions", 0))
        elif event_type == "GUILD_ROLE_DELETE":
            self._roles.get(str(payload["guild_id"]), {}).pop(str(payload.get("role_id")), None)
        elif event_type == "MESSAGE_CREATE":
            if not payload.get("guild_id"):
                return
            self._last_message[str(payload["channel_id"])] = str(payload["id"])
            await self.bus.publish(MessageCreated(message=self._parse_message(payload)))
        elif event_type == "MESSAGE_UPDATE":
            # 仅嵌入内容变化（如链接预览生成）时不带 content 字段
            if not payload.get("guild_id") or "content" not in payload:
                return
            await self.bus.publish(MessageUpdated(message=self._parse_message(payload)))
        elif event_type == "MESSAGE_DELETE":
            if not payload.get("guild_id"):
                return
            await self.bus.publish(MessageDeleted(
                guild_id=str(payload["guild_id"]),
                channel_id=str(payload["channel_id"]),
                message_id=str(payload["id"]),
            ))
        elif event_type == "MESSAGE_REACTION_ADD":
            if not payload.get("guild_id"):
                return
            member = payload.get("member") or {}
            await self.bus.publish(ReactionAdded(
                guild_id=str(payload["guild_id"]),
                channel_id=str(payload["channel_id"]),
                message_id=str(payload["message_id"]),
                user_id=str(payload["user_id"]),
                emoji=self._emoji_from_payload(payload.get("emoji") or {}),
                user_bot=bool((member.get("user") or {}).get("bot")),
                member_roles=[str(r) for r in member.get("roles") or []],
            ))
        elif event_type == "MESSAGE_REACTION_REMOVE":
            if not payload.get("guild_id"):
                return
            await self.bus.publish(ReactionRemoved(
                guild_id=str(payload["guild_id"]),
                channel_id=str(payload["channel_id"]),
                message_id=str(payload["message_id"]),
                user_id=str(payload["user_id"]),
                emoji=self._emoji_from_payload(payload.get("emoji") or {}),
            ))

    def _cache_guild(self, payload: dict[str, Any]) -> None:
        guild_id = str(payload["id"])
        self._owners[guild_id] = str(payload.get("owner_id", ""))
        self._roles[guild_id] = {
            str(role["id"]): int(role.get("permissions", 0)) for role in payload.get("roles") or []
        }
        for channel_id in [cid for cid, ch in self._channels.items() if ch.guild_id == guild_id]:
            self._channels.pop(channel_id)
        for channel in payload.get("channels") or []:
            self._cache_channel(channel, guild_id)

    def _cache_channel(self, payload: dict[str, Any], guild_id: str) -> ChannelInfo:
        info = ChannelInfo(
            id=str(payload["id"]),
            guild_id=guild_id,
            name=payload.get("name", ""),
            position=int(payload.get("position", 0)),
            parent_id=str(payload["parent_id"]) if payload.get("parent_id") else None,
            type=int(payload.get("type", 0)),
        )
        self._channels[info.id] = info
        if "last_message_id" in payload:
            self._last_message[info.id] = payload.get("last_message_id")
        return info

    @staticmethod
    def _emoji_from_payload(emoji: dict[str, Any]) -> str:
        """自定义表情取 ID，Unicode 表情取名称。"""
        return str(emoji.get("id") or emoji.get("name") or "")

    def _parse_message(self, payload: dict[str, Any]) -> Message:
        """把 Discord 消息对象转换为 Message 快照。"""
        author = payload.get("author") or {}
        member = payload.get("member") or {}
        reactions: dict[str, int] = {}
        for reaction in payload.get("reactions") or []:
            key = self._emoji_from_payload(reaction.get("emoji") or {})
            # 不计入机器人自己添加的那一个
            reactions[key] = int(reaction.get("count", 0)) - (1 if reaction.get("me") else 0)

        channel_id = str(payload.get("channel_id", ""))
        guild_id = payload.get("guild_id")
        if not guild_id and channel_id in self._channels:
            guild_id = self._channels[channel_id].guild_id

        return Message(
            id=str(payload["id"]),
            channel_id=channel_id,
            guild_id=str(guild_id or ""),
            content=payload.get("content") or "",
            created_at=snowflake_time(payload["id"]),
            author_id=str(author.get("id", "")),
            author_bot=bool(author.get("bot")),
            author_system=bool(author.get("system")),
            author_roles=[str(r) for r in member.get("roles") or []],
            reactions=reactions,
        )

    # ------------------------------------------------------------------
    # REST 请求
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """
        发送 REST 请求并处理速率限制。

        - 429：按 retry_after 等待后重试，最多 3 次
        - 404：NotFoundError
        - 403：ForbiddenError
        - 其他错误：PlatformError

        返回:
            响应 JSON（204 时为 None）
        """
        if not self._http:
            raise PlatformError("Discord HTTP client not initialized")

        for attempt in range(3):
            try:
                response = await self._http.request(method, path, **kwargs)
            except httpx.HTTPError as e:
                if attempt == 2:
                    raise PlatformError(f"{method} {path} failed: {e}") from e
                await asyncio.sleep(1)
                continue

            if response.status_code == 429:
                retry_after = float(response.json().get("retry_after", 1.0))
                logger.warning(f"Discord rate limited, retrying in {retry_after}s")
                await asyncio.sleep(retry_after)
                continue
            if response.status_code == 404:
                raise NotFoundError(f"{method} {path}: not found", status=404)
            if response.status_code == 403:
                raise ForbiddenError(f"{method} {path}: forbidden", status=403)
            if response.status_code >= 400:
                raise PlatformError(f"{method} {path}: HTTP {response.status_code}", status=response.status_code)
            return response.json() if response.status_code != 204 and response.content else None

        raise PlatformError(f"{method} {path}: rate limited", status=429)

    # ------------------------------------------------------------------
    # ChatPlatform 实现
    # ------------------------------------------------------------------

    def guild_ids(self) -> list[str]:
        return list(self._owners)

    def list_channels(self, guild_id: str) -> list[ChannelInfo]:
        return [ch for ch in self._channels.values() if ch.guild_id == guild_id]

    def get_channel(self, channel_id: str) -> ChannelInfo | None:
        return self._channels.get(channel_id)

    async def create_channel(
        self,
        guild_id: str,
        name: str,
        *,
        parent_id: str | None = None,
        position: int | None = None,
        topic: str = "",
        nsfw: bool = False,
        rate_limit: int = 0,
        deny_send_roles: list[str] | None = None,
    ) -> ChannelInfo:
        body: dict[str, Any] = {
            "name": name,
            "type": 0,
            "topic": topic or None,
            "nsfw": nsfw,
            "rate_limit_per_user": rate_limit,
            "permission_overwrites": [
                {"id": role_id, "type": OVERWRITE_ROLE, "allow": "0", "deny": str(PERMISSION_SEND_MESSAGES)}
                for role_id in deny_send_roles or []
            ],
        }
        if parent_id:
            body["parent_id"] = parent_id
        if position is not None:
            body["position"] = position
        data = await self._request("POST", f"/guilds/{guild_id}/channels", json=body)
        return self._cache_channel(data, guild_id)

    async def delete_channel(self, channel_id: str) -> None:
        await self._request("DELETE", f"/channels/{channel_id}")
        self._channels.pop(channel_id, None)

    async def last_activity(self, channel_id: str) -> datetime | None:
        if channel_id not in self._last_message:
            data = await self._request("GET", f"/channels/{channel_id}")
            self._last_message[channel_id] = data.get("last_message_id")
        last_id = self._last_message.get(channel_id)
        return snowflake_time(last_id) if last_id else None

    async def fetch_message(self, channel_id: str, message_id: str) -> Message:
        data = await self._request("GET", f"/channels/{channel_id}/messages/{message_id}")
        return self._parse_message(data)

    async def send_message(self, channel_id: str, content: str) -> Message:
        data = await self._request("POST", f"/channels/{channel_id}/messages", json={
            "content": content,
            "allowed_mentions": {"parse": []},
        })
        self._last_message[channel_id] = str(data["id"])
        return self._parse_message(data)

    async def edit_message(self, channel_id: str, message_id: str, content: str) -> Message:
        data = await self._request("PATCH", f"/channels/{channel_id}/messages/{message_id}", json={
            "content": content,
        })
        return self._parse_message(data)

    async def delete_message(self, channel_id: str, message_id: str) -> None:
        await self._request("DELETE", f"/channels/{channel_id}/messages/{message_id}")

    async def pin_message(self, channel_id: str, message_id: str) -> None:
        await self._request("PUT", f"/channels/{channel_id}/pins/{message_id}")

    async def unpin_message(self, channel_id: str, message_id: str) -> None:
        await self._request("DELETE", f"/channels/{channel_id}/pins/{message_id}")

    async def add_reaction(self, channel_id: str, message_id: str, emoji: str) -> None:
        # 自定义表情在 URL 中写作 name:id
        raw = emoji.strip().lstrip("<").rstrip(">")
        if raw.startswith("a:"):
            raw = raw[2:]
        await self._request(
            "PUT", f"/channels/{channel_id}/messages/{message_id}/reactions/{quote(raw)}/@me"
        )

    async def set_send_permission(self, channel_id: str, role_id: str, allow: bool) -> None:
        bit = str(PERMISSION_SEND_MESSAGES)
        await self._request("PUT", f"/channels/{channel_id}/permissions/{role_id}", json={
            "type": OVERWRITE_ROLE,
            "allow": bit if allow else "0",
            "deny": "0" if allow else bit,
        })

    async def has_manage_channels(self, guild_id: str, user_id: str, role_ids: list[str]) -> bool:
        if self._owners.get(guild_id) == user_id:
            return True
        roles = self._roles.get(guild_id, {})
        # @everyone 身份组的 ID 与服务器 ID 相同
        permissions = roles.get(guild_id, 0)
        for role_id in role_ids:
            permissions |= roles.get(role_id, 0)
        return bool(permissions & (PERMISSION_ADMINISTRATOR | PERMISSION_MANAGE_CHANNELS))

    async def list_webhooks(self, channel_id: str) -> list[Webhook]:
        data = await self._request("GET", f"/channels/{channel_id}/webhooks")
        return [self._parse_webhook(item) for item in data or []]

    async def create_webhook(self, channel_id: str, name: str) -> Webhook:
        data = await self._request("POST", f"/channels/{channel_id}/webhooks", json={"name": name})
        return self._parse_webhook(data)

    async def rename_webhook(self, webhook_id: str, name: str) -> Webhook:
        data = await self._request("PATCH", f"/webhooks/{webhook_id}", json={"name": name})
        return self._parse_webhook(data)

    @staticmethod
    def _parse_webhook(data: dict[str, Any]) -> Webhook:
        return Webhook(
            id=str(data["id"]),
            channel_id=str(data.get("channel_id", "")),
            name=data.get("name") or "",
            owner_id=str((data.get("user") or {}).get("id")) if data.get("user") else None,
        )
