"""
core/config.py — 全局配置

• 从 YAML 文件加载（默认 config.yaml，可用环境变量 CONFIG_FILE 指定）
• 支持 ${ENV_NAME} / ${ENV_NAME:-default} 形式的环境变量替换
• cfg.get("gateway.api_key", "") 点号路径读取
"""

import os
import re
from typing import Any

import yaml


VERSION = "1.0.0"
API_BASE = "/api/v1"

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _expand_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.getenv(m.group(1), m.group(2) or ""), value)
    return value


class Config:
    def __init__(self, config_path: str = None):
        self.config_path = config_path or os.getenv("CONFIG_FILE", "config.yaml")
        self.config = {}
        self.reload()

    def reload(self) -> dict:
        data = {}
        if os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        self.config = _expand_env(data) if isinstance(data, dict) else {}
        return self.config

    def get(self, key: str, default: Any = None) -> Any:
        cursor = self.config
        for part in [x for x in str(key or "").split(".") if x]:
            if not isinstance(cursor, dict) or part not in cursor:
                return default
            cursor = cursor[part]
        if cursor is None or cursor == "":
            return default
        return cursor


cfg = Config()
DEBUG = str(os.getenv("DEBUG", cfg.get("debug", "false"))).lower() in ("1", "true", "yes")
