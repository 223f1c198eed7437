"""Gemini CLI 会话解析，读取 ~/.gemini/tmp/<项目哈希>/chats/session-*.json"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import Source, TokenBreakdown, UnifiedMessage
from .base import SourceParser, parse_timestamp, read_json, require_dict, to_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeminiMessage:
    model: str
    timestamp: int
    tokens: TokenBreakdown

    @classmethod
    def from_dict(cls, data: Any) -> Optional["GeminiMessage"]:
        if not isinstance(data, dict) or data.get("type") != "gemini":
            return None
        tokens = data.get("tokens")
        model = data.get("model")
        if not isinstance(tokens, dict) or not isinstance(model, str) or not model.strip():
            return None
        timestamp = parse_timestamp(data.get("timestamp"))
        if timestamp is None:
            return None
        return cls(
            model=model.strip(),
            timestamp=timestamp,
            tokens=TokenBreakdown(
                input=to_int(tokens.get("input")),
                output=to_int(tokens.get("output")),
                cache_read=to_int(tokens.get("cached")),
                reasoning=to_int(tokens.get("thoughts")),
            ),
        )


@dataclass(frozen=True)
class GeminiSession:
    session_id: str
    messages: List[Dict[str, Any]]

    @classmethod
    def from_dict(cls, data: Any, fallback_id: str) -> "GeminiSession":
        data = require_dict(data, "Gemini 会话")
        raw_messages = data.get("messages")
        session_id = data.get("sessionId")
        return cls(
            session_id=session_id if isinstance(session_id, str) and session_id else fallback_id,
            messages=raw_messages if isinstance(raw_messages, list) else [],
        )


class GeminiParser(SourceParser):
    source = Source.GEMINI.value

    def discover_files(self) -> List[Path]:
        try:
            return sorted(p for p in self.root.glob("*/chats/session-*.json") if p.is_file())
        except OSError:
            logger.warning(f"无法遍历目录 {self.root}", exc_info=True)
            return []

    def parse_file(self, path: Path) -> List[UnifiedMessage]:
        session = GeminiSession.from_dict(read_json(path), fallback_id=path.stem)
        messages: List[UnifiedMessage] = []
        for raw in session.messages:
            entry = GeminiMessage.from_dict(raw)
            if entry is None:
                continue
            message = self.build_message(
                model_id=entry.model,
                provider_id="google",
                session_id=session.session_id,
                timestamp=entry.timestamp,
                tokens=entry.tokens,
            )
            if message is not None:
                messages.append(message)
        return messages
