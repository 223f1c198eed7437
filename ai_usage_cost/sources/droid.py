"""
Droid (Factory.ai) 会话解析

每个会话在 ~/.factory/sessions/ 下有一个 <会话ID>.settings.json，tokenUsage 记录整个会话的累计用量，
因此一个文件只产生一条消息。settings 中没有 model 时，从同名 .jsonl 的系统提示里提取。
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

from ..models import Source, TokenBreakdown, UnifiedMessage
from .base import SourceParser, find_files, infer_provider, parse_timestamp, read_json, require_dict, to_int

logger = logging.getLogger(__name__)

SETTINGS_SUFFIX = ".settings.json"

# 只在会话记录开头查找模型名
_MODEL_SCAN_LINES = 500

_BRACKETS = re.compile(r"\[.*?\]")
_HYPHENS = re.compile(r"-+")
_MODEL_LINE = re.compile(r"Model:([^\[\\\"]*)")


def normalize_droid_model(model: str) -> str:
    """
    规范化 Droid 的模型写法

    custom:Claude-Opus-4.5-Thinking-[Anthropic]-0 -> claude-opus-4-5-thinking-0
    """
    if model.startswith("custom:"):
        model = model[len("custom:"):]
    model = _BRACKETS.sub("", model).rstrip("-").lower().replace(".", "-")
    return _HYPHENS.sub("-", model)


def default_model_for_provider(provider: str) -> str:
    lower = provider.lower()
    return {
        "anthropic": "claude-unknown",
        "openai": "gpt-unknown",
        "google": "gemini-unknown",
        "xai": "grok-unknown",
    }.get(lower, f"{provider}-unknown")


def model_from_transcript(path: Path) -> Optional[str]:
    """从会话记录的 "Model: Claude Opus 4.5 Thinking [Anthropic]" 提示中提取模型名"""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for line_number, line in enumerate(f):
                if line_number >= _MODEL_SCAN_LINES:
                    break
                match = _MODEL_LINE.search(line)
                if match and match.group(1).strip():
                    return normalize_droid_model(match.group(1).strip())
    except OSError:
        logger.debug(f"无法读取会话记录 {path}", exc_info=True)
    return None


@dataclass(frozen=True)
class DroidSettings:
    """settings.json 中与用量有关的字段"""

    model: Optional[str]
    provider_lock: Optional[str]
    timestamp: Optional[int]
    tokens: TokenBreakdown

    @classmethod
    def from_dict(cls, data: Any) -> "DroidSettings":
        data = require_dict(data, "Droid settings")
        usage = data.get("tokenUsage")
        if not isinstance(usage, dict):
            usage = {}
        model = data.get("model")
        provider_lock = data.get("providerLock")
        return cls(
            model=model.strip() if isinstance(model, str) and model.strip() else None,
            provider_lock=provider_lock if isinstance(provider_lock, str) and provider_lock else None,
            timestamp=parse_timestamp(data.get("providerLockTimestamp")),
            tokens=TokenBreakdown(
                input=to_int(usage.get("inputTokens")),
                output=to_int(usage.get("outputTokens")),
                cache_read=to_int(usage.get("cacheReadTokens")),
                cache_write=to_int(usage.get("cacheCreationTokens")),
                reasoning=to_int(usage.get("thinkingTokens")),
            ),
        )


class DroidParser(SourceParser):
    source = Source.DROID.value

    def discover_files(self) -> List[Path]:
        return find_files(self.root, f"*{SETTINGS_SUFFIX}")

    def parse_file(self, path: Path) -> List[UnifiedMessage]:
        settings = DroidSettings.from_dict(read_json(path))
        if settings.tokens.is_empty():
            return []

        session_id = path.name[: -len(SETTINGS_SUFFIX)] or "unknown"
        provider = settings.provider_lock or infer_provider(settings.model or "")
        if settings.model:
            model = normalize_droid_model(settings.model)
        else:
            transcript = path.with_name(f"{session_id}.jsonl")
            model = model_from_transcript(transcript) or default_model_for_provider(provider)

        # 没有锁定时间时用文件修改时间
        timestamp = settings.timestamp or int(path.stat().st_mtime * 1000)

        message = self.build_message(
            model_id=model,
            provider_id=provider,
            session_id=session_id,
            timestamp=timestamp,
            tokens=settings.tokens,
        )
        return [message] if message is not None else []
