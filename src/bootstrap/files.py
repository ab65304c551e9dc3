"""
文件读写辅助：YAML 读写、目录重建与空值裁剪。
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any

import yaml
from loguru import logger


def load_yaml(path: Path) -> Any:
    """读取 YAML 文件，文件不存在时抛出 FileNotFoundError。"""
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def write_yaml(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
    logger.debug(f"已写入 YAML 文件: {path}")


def write_text_file(path: Path, content: str) -> None:
    path.write_text(content, encoding="utf-8")


def recreate_folder(path: Path) -> None:
    """删除目录后重新创建，确保不残留旧文件。"""
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


def delete_folder(path: Path) -> None:
    if path.exists():
        logger.info(f"删除目录: {path}")
        shutil.rmtree(path)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value == "":
        return True
    if isinstance(value, (dict, list)) and len(value) == 0:
        return True
    return False


def prune_empty(value: Any) -> Any:
    """递归移除 None、空字符串、空字典与空列表，返回新对象。

    布尔值 False 与数字 0 会被保留。
    """
    if isinstance(value, dict):
        pruned = {}
        for key, item in value.items():
            item = prune_empty(item)
            if not _is_empty(item):
                pruned[key] = item
        return pruned
    if isinstance(value, list):
        items = (prune_empty(item) for item in value)
        return [item for item in items if not _is_empty(item)]
    return value
