"""
模型定价解析

远程定价目录（LiteLLM 格式：模型ID -> 每Token单价）经本地磁盘缓存后，
按以下顺序把任意厂商上报的模型名匹配到目录条目，先命中者胜出：

1. 精确匹配
2. 加上固定的厂商前缀后精确匹配
3. 规范化模型名（系列 + 主次版本折叠）后匹配，裸名与加前缀都尝试
4. 模糊匹配：按字典序遍历目录键，目录键以词边界出现在查询中
5. 反向模糊匹配：查询以词边界出现在目录键中
6. 全部失败则视为未解析，调用方按成本0处理
"""

import json
import logging
import math
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import requests

from .config import get_cache_dir, load_pricing_config
from .errors import UpstreamFailure

logger = logging.getLogger(__name__)

CACHE_FILENAME = "pricing.json"
DEFAULT_PRICING_URL = "https://raw.githubusercontent.com/BerriAI/litellm/main/model_prices_and_context_window.json"
DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_FETCH_TIMEOUT_SECONDS = 15
DEFAULT_PROVIDER_PREFIXES = ("anthropic/", "openai/", "google/", "bedrock/")

MIN_FUZZY_MATCH_LEN = 5
FUZZY_BLOCKLIST = frozenset({"auto", "mini", "chat", "base"})

# 路由档位后缀，不影响基础模型定价
TIER_SUFFIXES = ("-low", "-high", "-medium", "-free", ":low", ":high", ":medium", ":free")

MODEL_ALIASES = {
    "big-pickle": "glm-4.7",
    "big pickle": "glm-4.7",
    "bigpickle": "glm-4.7",
}

_RATE_FIELDS = (
    "input_cost_per_token",
    "output_cost_per_token",
    "cache_read_input_token_cost",
    "cache_creation_input_token_cost",
)


def _safe_rate(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(rate) or rate < 0:
        return 0.0
    return rate


@dataclass(frozen=True)
class PricedEntry:
    """单个模型的每Token单价（美元），缺失字段按0处理"""

    input_cost_per_token: float = 0.0
    output_cost_per_token: float = 0.0
    cache_read_input_token_cost: float = 0.0
    cache_creation_input_token_cost: float = 0.0

    @classmethod
    def from_catalog(cls, data: Dict[str, Any]) -> "PricedEntry":
        return cls(**{name: _safe_rate(data.get(name)) for name in _RATE_FIELDS})

    @classmethod
    def from_per_million(cls, data: Dict[str, Any]) -> "PricedEntry":
        """本地覆盖配置使用 美元/百万Token"""
        return cls(
            input_cost_per_token=_safe_rate(data.get("input_per_million")) / 1_000_000,
            output_cost_per_token=_safe_rate(data.get("output_per_million")) / 1_000_000,
            cache_read_input_token_cost=_safe_rate(data.get("cache_read_per_million")) / 1_000_000,
            cache_creation_input_token_cost=_safe_rate(data.get("cache_write_per_million")) / 1_000_000,
        )

    def to_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in _RATE_FIELDS}


class MatchStrategy(str, Enum):
    EXACT = "exact"
    PROVIDER_PREFIX = "provider_prefix"
    NORMALIZED = "normalized"
    FUZZY = "fuzzy"
    REVERSE_FUZZY = "reverse_fuzzy"


@dataclass(frozen=True)
class Resolution:
    model_id: str
    matched_key: str
    strategy: MatchStrategy
    entry: PricedEntry


def normalize_model_name(model_id: str) -> Optional[str]:
    """把同一发布版本的多种写法折叠为统一别名，无法识别时返回 None"""
    lower = model_id.lower()
    # 3.x 版本的日期后缀里也可能有 4
    claude_3 = "3." in lower or "3-" in lower

    if "opus" in lower:
        if "4.5" in lower or "4-5" in lower:
            return "opus-4-5"
        if "4" in lower and not claude_3:
            return "opus-4"
    if "sonnet" in lower:
        if "4.5" in lower or "4-5" in lower:
            return "sonnet-4-5"
        if "4" in lower and not claude_3:
            return "sonnet-4"
        if "3.7" in lower or "3-7" in lower:
            return "sonnet-3-7"
        if "3.5" in lower or "3-5" in lower:
            return "sonnet-3-5"
    if "haiku" in lower:
        if "4.5" in lower or "4-5" in lower:
            return "haiku-4-5"
        if "3.5" in lower or "3-5" in lower:
            return "haiku-3-5"

    if lower == "o3":
        return "o3"
    if lower.startswith("gpt-4o"):
        return "gpt-4o"
    if "gpt-4.1" in lower:
        return "gpt-4.1"

    if "gemini-2.5-pro" in lower:
        return "gemini-2.5-pro"
    if "gemini-2.5-flash" in lower:
        return "gemini-2.5-flash"

    return None


def is_word_boundary_match(haystack: str, needle: str) -> bool:
    """needle 在 haystack 中出现，且两侧紧邻的字符都不是字母数字"""
    if not needle:
        return False
    start = haystack.find(needle)
    while start != -1:
        end = start + len(needle)
        before_ok = start == 0 or not haystack[start - 1].isalnum()
        after_ok = end == len(haystack) or not haystack[end].isalnum()
        if before_ok and after_ok:
            return True
        start = haystack.find(needle, start + 1)
    return False


def strip_tier_suffix(model_id: str) -> Optional[str]:
    for suffix in TIER_SUFFIXES:
        if model_id.endswith(suffix) and len(model_id) > len(suffix):
            return model_id[: -len(suffix)]
    return None


def is_fuzzy_eligible(model_id: str) -> bool:
    if len(model_id) < MIN_FUZZY_MATCH_LEN:
        return False
    return model_id not in FUZZY_BLOCKLIST


class PricingResolver:
    """按分层策略把模型ID解析到定价目录条目，结果按模型ID缓存"""

    def __init__(self, catalog: Dict[str, PricedEntry], provider_prefixes: Iterable[str] = DEFAULT_PROVIDER_PREFIXES):
        self.catalog: Dict[str, PricedEntry] = dict(catalog)
        self.provider_prefixes = tuple(provider_prefixes)
        self._sorted_keys: List[str] = sorted(self.catalog)
        self._lower_index: Dict[str, str] = {}
        for key in self._sorted_keys:
            self._lower_index.setdefault(key.lower(), key)
        self._cache: Dict[str, Optional[Resolution]] = {}
        self._lock = threading.Lock()
        self.misses: Set[str] = set()

    def __len__(self) -> int:
        return len(self.catalog)

    def resolve(self, model_id: str) -> Optional[Resolution]:
        with self._lock:
            if model_id in self._cache:
                return self._cache[model_id]

        query = MODEL_ALIASES.get(model_id.lower(), model_id)
        result = self._lookup(query)
        if result is None:
            stripped = strip_tier_suffix(query.lower())
            if stripped:
                result = self._lookup(stripped)

        if result is not None:
            result = Resolution(model_id=model_id, matched_key=result[0], strategy=result[1], entry=self.catalog[result[0]])

        with self._lock:
            self._cache[model_id] = result
            if result is None and model_id not in self.misses:
                self.misses.add(model_id)
                logger.warning(f"未找到模型 {model_id} 的定价配置，成本设为0")
        return result

    def _exact(self, candidate: str) -> Optional[str]:
        if candidate in self.catalog:
            return candidate
        return self._lower_index.get(candidate.lower())

    def _lookup(self, model_id: str):
        key = self._exact(model_id)
        if key:
            return key, MatchStrategy.EXACT

        for prefix in self.provider_prefixes:
            key = self._exact(prefix + model_id)
            if key:
                return key, MatchStrategy.PROVIDER_PREFIX

        normalized = normalize_model_name(model_id)
        if normalized:
            key = self._exact(normalized)
            if key:
                return key, MatchStrategy.NORMALIZED
            for prefix in self.provider_prefixes:
                key = self._exact(prefix + normalized)
                if key:
                    return key, MatchStrategy.NORMALIZED

        lower = model_id.lower()
        if not is_fuzzy_eligible(lower):
            return None

        queries = [lower] + ([normalized] if normalized else [])
        for key in self._sorted_keys:
            lower_key = key.lower()
            if any(is_word_boundary_match(q, lower_key) for q in queries):
                return key, MatchStrategy.FUZZY

        for key in self._sorted_keys:
            lower_key = key.lower()
            if any(is_word_boundary_match(lower_key, q) for q in queries):
                return key, MatchStrategy.REVERSE_FUZZY

        return None


def parse_catalog(raw: Dict[str, Any]) -> Dict[str, PricedEntry]:
    """把远程JSON转换为定价目录；没有任何单价字段的条目被忽略"""
    catalog: Dict[str, PricedEntry] = {}
    for model_id, data in raw.items():
        if not isinstance(data, dict):
            continue
        if not any(isinstance(data.get(name), (int, float)) for name in _RATE_FIELDS):
            continue
        catalog[model_id] = PricedEntry.from_catalog(data)
    return catalog


class PricingCatalogLoader:
    """
    定价目录加载器

    未过期的磁盘缓存优先于网络拉取；拉取失败时若存在（即使过期的）缓存则使用缓存，
    否则抛出 UpstreamFailure。缓存写入失败只记录日志。
    """

    def __init__(
        self,
        url: str = DEFAULT_PRICING_URL,
        cache_dir: Optional[Path] = None,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url
        self.cache_dir = Path(cache_dir) if cache_dir else get_cache_dir()
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self.clock = clock

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / CACHE_FILENAME

    def load_cached(self, allow_stale: bool = False) -> Optional[Dict[str, Any]]:
        try:
            envelope = json.loads(self.cache_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            logger.debug(f"定价缓存损坏，忽略: {self.cache_path}", exc_info=True)
            return None

        if not isinstance(envelope, dict) or not isinstance(envelope.get("data"), dict):
            logger.debug(f"定价缓存格式不正确，忽略: {self.cache_path}")
            return None

        timestamp = envelope.get("timestamp")
        if not isinstance(timestamp, (int, float)):
            return None

        now = self.clock()
        if timestamp > now:
            return None
        if not allow_stale and now - timestamp > self.ttl_seconds:
            logger.debug("定价缓存已过期")
            return None
        return envelope["data"]

    def save_cache(self, data: Dict[str, Any]) -> None:
        tmp_name = None
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{CACHE_FILENAME}.", suffix=".tmp", dir=self.cache_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"timestamp": self.clock(), "data": data}, f)
            os.replace(tmp_name, self.cache_path)
            tmp_name = None
        except (OSError, TypeError, ValueError):
            logger.warning(f"写入定价缓存失败: {self.cache_path}", exc_info=True)
        finally:
            if tmp_name:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def fetch(self) -> Dict[str, Any]:
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise UpstreamFailure(f"拉取定价目录失败: {e}", key=self.url) from e

        if not isinstance(data, dict):
            raise UpstreamFailure("定价目录格式不正确，期望JSON对象", key=self.url)
        return data

    def load(self) -> Dict[str, PricedEntry]:
        cached = self.load_cached()
        if cached is not None:
            logger.debug(f"使用定价缓存: {self.cache_path}")
            return parse_catalog(cached)

        try:
            raw = self.fetch()
        except UpstreamFailure:
            stale = self.load_cached(allow_stale=True)
            if stale is None:
                raise
            logger.warning("拉取定价目录失败，使用过期缓存", exc_info=True)
            return parse_catalog(stale)

        self.save_cache(raw)
        logger.info(f"已拉取定价目录，共 {len(raw)} 个条目")
        return parse_catalog(raw)

    def clear_cache(self) -> None:
        try:
            self.cache_path.unlink()
        except FileNotFoundError:
            pass


def build_resolver(pricing_config: Optional[Dict] = None, loader: Optional[PricingCatalogLoader] = None) -> PricingResolver:
    """按配置加载定价目录并叠加本地覆盖"""
    pricing_config = pricing_config or load_pricing_config()
    if loader is None:
        loader = PricingCatalogLoader(
            url=pricing_config.get("url") or DEFAULT_PRICING_URL,
            ttl_seconds=int(pricing_config.get("cache_ttl_seconds", DEFAULT_CACHE_TTL_SECONDS)),
            timeout=float(pricing_config.get("fetch_timeout_seconds", DEFAULT_FETCH_TIMEOUT_SECONDS)),
        )

    catalog = loader.load()
    for model_id, override in (pricing_config.get("overrides") or {}).items():
        if isinstance(override, dict):
            catalog[model_id] = PricedEntry.from_per_million(override)

    prefixes = pricing_config.get("provider_prefixes") or DEFAULT_PROVIDER_PREFIXES
    return PricingResolver(catalog, prefixes)


_resolver: Optional[PricingResolver] = None
_resolver_lock = threading.Lock()


def get_resolver(pricing_config: Optional[Dict] = None, refresh: bool = False) -> PricingResolver:
    """进程内只加载一次定价目录"""
    global _resolver
    with _resolver_lock:
        if _resolver is None or refresh:
            _resolver = build_resolver(pricing_config)
        return _resolver
