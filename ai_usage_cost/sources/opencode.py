"""OpenCode 消息解析，读取 $XDG_DATA_HOME/opencode/storage/message/<会话>/*.json"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

from ..models import Source, TokenBreakdown, UnifiedMessage
from .base import SourceParser, normalize_agent_name, parse_timestamp, read_json, require_dict, to_float, to_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpenCodeMessage:
    model_id: str
    provider_id: Optional[str]
    created: int
    tokens: TokenBreakdown
    cost: float = 0.0
    agent: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["OpenCodeMessage"]:
        data = require_dict(data, "OpenCode 消息")
        if data.get("role") != "assistant":
            return None
        tokens = data.get("tokens")
        model_id = data.get("modelID")
        if not isinstance(tokens, dict) or not isinstance(model_id, str) or not model_id.strip():
            return None

        time_info = data.get("time") if isinstance(data.get("time"), dict) else {}
        created = parse_timestamp(time_info.get("created"))
        if created is None:
            return None

        cache = tokens.get("cache") if isinstance(tokens.get("cache"), dict) else {}
        agent = data.get("mode") or data.get("agent")
        return cls(
            model_id=model_id.strip(),
            provider_id=data.get("providerID") or None,
            created=created,
            tokens=TokenBreakdown(
                input=to_int(tokens.get("input")),
                output=to_int(tokens.get("output")),
                cache_read=to_int(cache.get("read")),
                cache_write=to_int(cache.get("write")),
                reasoning=to_int(tokens.get("reasoning")),
            ),
            cost=to_float(data.get("cost")),
            agent=normalize_agent_name(agent) if isinstance(agent, str) and agent else None,
        )


class OpenCodeParser(SourceParser):
    source = Source.OPENCODE.value

    def discover_files(self) -> List[Path]:
        try:
            return sorted(p for p in self.root.glob("*/*.json") if p.is_file())
        except OSError:
            logger.warning(f"无法遍历目录 {self.root}", exc_info=True)
            return []

    def parse_file(self, path: Path) -> List[UnifiedMessage]:
        entry = OpenCodeMessage.from_dict(read_json(path))
        if entry is None:
            return []
        message = self.build_message(
            model_id=entry.model_id,
            provider_id=entry.provider_id,
            session_id=path.parent.name,
            timestamp=entry.created,
            tokens=entry.tokens,
            cost=entry.cost,
            agent=entry.agent,
        )
        return [message] if message is not None else []
