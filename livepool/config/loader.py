"""
配置加载工具模块 (config/loader.py)
=================================
本模块负责 livepool 配置文件的加载、保存和格式转换：
- 配置文件默认路径: ~/.livepool/config.json
- 配置文件使用 camelCase（驼峰命名），Python 内部使用 snake_case（下划线命名）
- 加载时自动将 camelCase → snake_case，保存时自动将 snake_case → camelCase

服务器级配置（guilds/<id>.json）也复用这里的 read_json_model / write_json_model。
"""

import json
import re
from pathlib import Path
from typing import Any, Callable, TypeVar

from loguru import logger
from pydantic import BaseModel, ValidationError

from livepool.config.schema import Config
from livepool.utils.helpers import ensure_dir

ModelT = TypeVar("ModelT", bound=BaseModel)


def get_config_path() -> Path:
    """获取默认配置文件路径: ~/.livepool/config.json"""
    return Path.home() / ".livepool" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    从 JSON 文件加载配置，若文件不存在则返回默认配置。

    参数:
        config_path: 可选的配置文件路径。为 None 时使用默认路径。

    返回:
        Config 配置对象实例
    """
    path = config_path or get_config_path()
    config = read_json_model(path, Config)
    return config if config is not None else Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """将配置对象保存为 JSON 文件（camelCase 键名）。"""
    write_json_model(config_path or get_config_path(), config)


def read_json_model(path: Path, model: type[ModelT]) -> ModelT | None:
    """
    读取 camelCase JSON 文件并验证为指定模型。

    文件不存在返回 None；文件损坏时记录警告并返回 None（调用方使用默认值），
    而不是让整个进程启动失败。
    """
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return model.model_validate(convert_keys(data))
    except (json.JSONDecodeError, ValidationError, ValueError) as e:
        logger.warning(f"Failed to load {path}: {e}")
        return None


def write_json_model(path: Path, value: BaseModel) -> None:
    """将模型序列化为 camelCase JSON 并写入文件（自动创建父目录）。"""
    ensure_dir(path.parent)
    data = convert_to_camel(value.model_dump())
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def convert_keys(data: Any) -> Any:
    """递归地把 camelCase 键名转换为 snake_case，例: {"minSize": 2} → {"min_size": 2}"""
    return _map_keys(data, camel_to_snake)


def convert_to_camel(data: Any) -> Any:
    """递归地把 snake_case 键名转换为 camelCase，例: {"min_size": 2} → {"minSize": 2}"""
    return _map_keys(data, snake_to_camel)


def _map_keys(data: Any, rename: Callable[[str], str]) -> Any:
    if isinstance(data, dict):
        return {rename(k): _map_keys(v, rename) for k, v in data.items()}
    if isinstance(data, list):
        return [_map_keys(item, rename) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)
