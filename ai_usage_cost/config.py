import json
import logging
import os
from importlib.resources import files
from pathlib import Path
from typing import Dict, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"
USER_CONFIG_DIR = Path.home() / ".ai-usage-cost"
DEFAULT_USD_TO_CNY = 7.0


def get_default_config() -> Dict:
    """获取默认配置"""
    return {
        "currency": {
            "usd_to_cny": DEFAULT_USD_TO_CNY,
            "display_unit": "USD",
        },
        "pricing": {
            "url": "https://raw.githubusercontent.com/BerriAI/litellm/main/model_prices_and_context_window.json",
            "cache_ttl_seconds": 3600,
            "fetch_timeout_seconds": 15,
            "provider_prefixes": ["anthropic/", "openai/", "google/", "bedrock/"],
            # 本地覆盖定价，单位：美元/百万Token
            "overrides": {},
        },
        "sources": {
            "claude": None,
            "codex": None,
            "gemini": None,
            "opencode": None,
            "cursor": None,
            "amp": None,
            "droid": None,
        },
        "cursor": {
            "session_token": None,
            "fetch_timeout_seconds": 30,
        },
        "workers": 4,
        "engine": {
            "mode": "local",
            "max_payload_bytes": 64 * 1024 * 1024,
            "timeout_seconds": 300,
        },
    }


def deep_merge(base_dict: Dict, update_dict: Dict) -> Dict:
    """深度合并两个字典"""
    result = base_dict.copy()
    for key, value in update_dict.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _parse_config_text(text: str, config_file: str) -> Optional[Dict]:
    if config_file.endswith(".yaml") or config_file.endswith(".yml"):
        return yaml.safe_load(text)
    return json.loads(text)


def load_full_config(config_file: str = CONFIG_FILE, user_config_dir: Optional[Path] = None) -> Dict:
    """加载完整配置：默认值 -> 包内配置文件 -> 用户配置文件"""
    config = get_default_config()

    try:
        try:
            config_data = (files("ai_usage_cost") / config_file).read_text(encoding="utf-8")
            packaged = _parse_config_text(config_data, config_file)
            if packaged:
                config = deep_merge(config, packaged)
        except (FileNotFoundError, ModuleNotFoundError):
            logger.debug(f"未找到包内配置文件 {config_file}，使用默认配置")

        user_config_path = (user_config_dir or USER_CONFIG_DIR) / config_file
        if user_config_path.exists():
            try:
                user_config = _parse_config_text(user_config_path.read_text(encoding="utf-8"), config_file)
                if user_config:
                    config = deep_merge(config, user_config)
                    logger.info(f"已加载用户配置文件: {user_config_path}")
            except (OSError, ValueError, yaml.YAMLError):
                logger.warning(f"无法加载用户配置文件 {user_config_path}", exc_info=True)

    except (OSError, ValueError, yaml.YAMLError):
        logger.warning("配置文件加载过程中出现错误，使用默认配置", exc_info=True)

    return config


def load_pricing_config(config: Optional[Dict] = None) -> Dict:
    full_config = config or load_full_config()
    return full_config.get("pricing", get_default_config()["pricing"])


def load_currency_config(config: Optional[Dict] = None) -> Dict:
    """加载货币配置"""
    full_config = config or load_full_config()
    return full_config.get("currency", {"usd_to_cny": DEFAULT_USD_TO_CNY, "display_unit": "USD"})


def get_cache_dir() -> Path:
    cache_home = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return Path(cache_home) / "ai-usage-cost"


def resolve_source_root(source: str, config: Optional[Dict] = None) -> Path:
    """
    计算某个来源的数据根目录

    配置里显式给出的路径优先；否则按各工具自身的环境变量约定推导。
    """
    configured = ((config or {}).get("sources") or {}).get(source)
    if configured:
        return Path(os.path.expanduser(str(configured)))

    home = Path.home()
    if source == "claude":
        return home / ".claude" / "projects"
    if source == "codex":
        codex_home = os.environ.get("CODEX_HOME") or str(home / ".codex")
        return Path(codex_home) / "sessions"
    if source == "gemini":
        return home / ".gemini" / "tmp"
    if source == "opencode":
        data_home = os.environ.get("XDG_DATA_HOME") or str(home / ".local" / "share")
        return Path(data_home) / "opencode" / "storage" / "message"
    if source == "cursor":
        return get_cache_dir() / "cursor-cache"
    if source == "amp":
        return home / ".local" / "share" / "amp" / "threads"
    if source == "droid":
        return home / ".factory" / "sessions"
    raise ValueError(f"unknown source: {source}")
