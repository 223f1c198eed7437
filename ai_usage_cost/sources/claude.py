"""Claude Code 会话解析，读取 ~/.claude/projects/**/*.jsonl"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..models import Source, TokenBreakdown, UnifiedMessage
from .base import SourceParser, find_files, iter_json_lines, parse_timestamp, to_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaudeEntry:
    model: str
    timestamp: int
    tokens: TokenBreakdown
    message_id: Optional[str] = None
    request_id: Optional[str] = None

    @property
    def dedup_key(self) -> Optional[str]:
        if self.message_id and self.request_id:
            return f"{self.message_id}:{self.request_id}"
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["ClaudeEntry"]:
        """只处理带 usage、model 和时间戳的 assistant 消息"""
        if data.get("type") != "assistant":
            return None
        message = data.get("message")
        if not isinstance(message, dict):
            return None
        usage = message.get("usage")
        model = message.get("model")
        if not isinstance(usage, dict) or not isinstance(model, str) or not model.strip():
            return None
        timestamp = parse_timestamp(data.get("timestamp"))
        if timestamp is None:
            return None

        return cls(
            model=model.strip(),
            timestamp=timestamp,
            tokens=TokenBreakdown(
                input=to_int(usage.get("input_tokens")),
                output=to_int(usage.get("output_tokens")),
                cache_read=to_int(usage.get("cache_read_input_tokens")),
                cache_write=to_int(usage.get("cache_creation_input_tokens")),
            ),
            message_id=message.get("id") or None,
            request_id=data.get("requestId") or None,
        )


class ClaudeParser(SourceParser):
    source = Source.CLAUDE.value

    def discover_files(self) -> List[Path]:
        return find_files(self.root, "*.jsonl")

    def parse_file(self, path: Path) -> List[UnifiedMessage]:
        session_id = path.stem
        seen: Set[str] = set()
        messages: List[UnifiedMessage] = []

        for _, data in iter_json_lines(path):
            entry = ClaudeEntry.from_dict(data)
            if entry is None:
                continue
            # 流式响应会把同一条消息写多次
            if entry.dedup_key:
                if entry.dedup_key in seen:
                    continue
                seen.add(entry.dedup_key)

            message = self.build_message(
                model_id=entry.model,
                provider_id="anthropic",
                session_id=session_id,
                timestamp=entry.timestamp,
                tokens=entry.tokens,
                dedup_key=entry.dedup_key,
            )
            if message is not None:
                messages.append(message)

        return messages
