"""
Codex CLI 会话解析，读取 $CODEX_HOME/sessions/**/*.jsonl

token_count 事件优先使用 last_token_usage；缺失时用 total_token_usage 与上一次
累计快照求差。会话重置导致的负差值按0处理，全0的差值不产生消息。
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import Source, TokenBreakdown, UnifiedMessage
from .base import SourceParser, find_files, iter_json_lines, parse_timestamp, to_int

logger = logging.getLogger(__name__)


def extract_model(payload: Dict[str, Any]) -> Optional[str]:
    info = payload.get("info") if isinstance(payload.get("info"), dict) else {}
    for value in (payload.get("model"), payload.get("model_name"), info.get("model"), info.get("model_name")):
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@dataclass(frozen=True)
class CodexUsage:
    """一次用量快照；input 包含缓存命中的部分"""

    input: int = 0
    cached: int = 0
    output: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> Optional["CodexUsage"]:
        if not isinstance(data, dict):
            return None
        cached = data.get("cached_input_tokens")
        if cached is None:
            cached = data.get("cache_read_input_tokens")
        return cls(
            input=to_int(data.get("input_tokens")),
            cached=to_int(cached),
            output=to_int(data.get("output_tokens")),
        )

    def delta_from(self, previous: "CodexUsage") -> "CodexUsage":
        return CodexUsage(
            input=max(self.input - previous.input, 0),
            cached=max(self.cached - previous.cached, 0),
            output=max(self.output - previous.output, 0),
        )

    def to_tokens(self) -> TokenBreakdown:
        return TokenBreakdown(
            input=max(self.input - self.cached, 0),
            output=self.output,
            cache_read=self.cached,
        )


@dataclass(frozen=True)
class CodexEntry:
    entry_type: str
    payload: Dict[str, Any]
    timestamp: Optional[int]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["CodexEntry"]:
        payload = data.get("payload")
        if not isinstance(payload, dict):
            return None
        timestamp = parse_timestamp(data.get("timestamp"))
        if timestamp is None:
            timestamp = parse_timestamp(payload.get("timestamp"))
        return cls(entry_type=str(data.get("type", "")), payload=payload, timestamp=timestamp)

    @property
    def is_turn_context(self) -> bool:
        return self.entry_type == "turn_context"

    @property
    def is_token_count(self) -> bool:
        return self.entry_type == "event_msg" and self.payload.get("type") == "token_count"


class CodexParser(SourceParser):
    source = Source.CODEX.value

    def discover_files(self) -> List[Path]:
        return find_files(self.root, "*.jsonl")

    def parse_file(self, path: Path) -> List[UnifiedMessage]:
        session_id = path.stem
        current_model: Optional[str] = None
        previous_totals = CodexUsage()
        messages: List[UnifiedMessage] = []

        for _, data in iter_json_lines(path):
            entry = CodexEntry.from_dict(data)
            if entry is None:
                continue

            if entry.is_turn_context:
                current_model = extract_model(entry.payload) or current_model
                continue
            if not entry.is_token_count:
                continue

            current_model = extract_model(entry.payload) or current_model
            info = entry.payload.get("info")
            if not isinstance(info, dict):
                continue

            last_usage = CodexUsage.from_dict(info.get("last_token_usage"))
            total_usage = CodexUsage.from_dict(info.get("total_token_usage"))

            if last_usage is not None:
                delta = last_usage
            elif total_usage is not None:
                delta = total_usage.delta_from(previous_totals)
            else:
                continue

            if total_usage is not None:
                previous_totals = total_usage

            tokens = delta.to_tokens()
            if tokens.is_empty() or entry.timestamp is None or current_model is None:
                continue

            message = self.build_message(
                model_id=current_model,
                provider_id="openai",
                session_id=session_id,
                timestamp=entry.timestamp,
                tokens=tokens,
            )
            if message is not None:
                messages.append(message)

        return messages
