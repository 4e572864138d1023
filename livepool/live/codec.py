"""
实况状态标签编解码模块。

每个实况频道上有一个机器人创建的 Webhook，其名称就是该频道的状态标签：
- "CLOSED"  空闲
- "OPENED:<触发消息ID>:<镜像消息ID>:<公告消息ID>"  实况进行中

Webhook 名称普通用户看不到也改不了，却能跨进程重启保存，
因此进程重启后完全依靠它来恢复每个频道的状态，不需要数据库。

decode() 是全函数：任何无法识别的字符串都解码为 None（视为空闲），
宁可让损坏的频道回到空闲，也不能凭空恢复出一个"实况中"的频道。
"""

import re
from dataclasses import dataclass

CLOSED_TAG = "CLOSED"
OPENED_PREFIX = "OPENED"

_TAG_PATTERN = re.compile(r"CLOSED|OPENED:([0-9]+):([0-9]+):([0-9]+)")
_ID_PATTERN = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class SessionRefs:
    """一场实况引用的三条消息 ID。"""
    trigger_id: str
    mirror_id: str
    notice_id: str


def encode(refs: SessionRefs | None) -> str:
    """
    编码状态标签。

    参数:
        refs: 实况引用；None 表示空闲

    返回:
        "CLOSED" 或 "OPENED:<t>:<m>:<n>"

    异常:
        ValueError: 引用不是十进制 ID（这样的标签无法再被解码回来）
    """
    if refs is None:
        return CLOSED_TAG
    ids = (refs.trigger_id, refs.mirror_id, refs.notice_id)
    for value in ids:
        if not _ID_PATTERN.fullmatch(str(value)):
            raise ValueError(f"Invalid message id in session refs: {value!r}")
    return ":".join((OPENED_PREFIX, *map(str, ids)))


def decode(tag: str | None) -> SessionRefs | None:
    """解码状态标签；CLOSED 或任何无法识别的字符串都返回 None。"""
    if not isinstance(tag, str):
        return None
    match = _TAG_PATTERN.fullmatch(tag)
    if not match or match.group(1) is None:
        return None
    return SessionRefs(*match.groups())


def is_tag(name: str | None) -> bool:
    """Webhook 名称是否是一个合法的状态标签。"""
    return isinstance(name, str) and bool(_TAG_PATTERN.fullmatch(name))
