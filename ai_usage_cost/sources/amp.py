"""
Amp 线程解析，读取 ~/.local/share/amp/threads/T-*.json

优先使用 usageLedger 中的计费事件；没有账本时退回到 assistant 消息上的 usage，
此时时间戳取线程创建时间加消息序号秒数。
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

from ..models import Source, TokenBreakdown, UnifiedMessage
from .base import SourceParser, infer_provider, parse_timestamp, read_json, require_dict, to_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AmpUsage:
    model: str
    timestamp: int
    tokens: TokenBreakdown

    @classmethod
    def from_ledger_event(cls, event: Any) -> Optional["AmpUsage"]:
        if not isinstance(event, dict):
            return None
        model = event.get("model")
        timestamp = parse_timestamp(event.get("timestamp"))
        if not isinstance(model, str) or not model.strip() or timestamp is None:
            return None
        tokens = event.get("tokens") if isinstance(event.get("tokens"), dict) else {}
        return cls(
            model=model.strip(),
            timestamp=timestamp,
            tokens=TokenBreakdown(input=to_int(tokens.get("input")), output=to_int(tokens.get("output"))),
        )

    @classmethod
    def from_message(cls, message: Any, created: Optional[int]) -> Optional["AmpUsage"]:
        if not isinstance(message, dict) or message.get("role") != "assistant" or created is None:
            return None
        usage = message.get("usage")
        if not isinstance(usage, dict):
            return None
        model = usage.get("model")
        if not isinstance(model, str) or not model.strip():
            return None
        return cls(
            model=model.strip(),
            timestamp=created + to_int(message.get("messageId")) * 1000,
            tokens=TokenBreakdown(
                input=to_int(usage.get("inputTokens")),
                output=to_int(usage.get("outputTokens")),
                cache_read=to_int(usage.get("cacheReadInputTokens")),
                cache_write=to_int(usage.get("cacheCreationInputTokens")),
            ),
        )


@dataclass(frozen=True)
class AmpThread:
    thread_id: str
    created: Optional[int]
    messages: List[Any]
    ledger_events: Optional[List[Any]]

    @classmethod
    def from_dict(cls, data: Any, fallback_id: str) -> "AmpThread":
        data = require_dict(data, "Amp 线程")
        ledger = data.get("usageLedger")
        events = ledger.get("events") if isinstance(ledger, dict) else None
        messages = data.get("messages")
        return cls(
            thread_id=str(data.get("id") or fallback_id),
            created=parse_timestamp(data.get("created")),
            messages=messages if isinstance(messages, list) else [],
            ledger_events=events if isinstance(events, list) else None,
        )

    def usages(self) -> List[AmpUsage]:
        if self.ledger_events is not None:
            items = [AmpUsage.from_ledger_event(e) for e in self.ledger_events]
        else:
            items = [AmpUsage.from_message(m, self.created) for m in self.messages]
        return [item for item in items if item is not None]


class AmpParser(SourceParser):
    source = Source.AMP.value

    def discover_files(self) -> List[Path]:
        try:
            return sorted(p for p in self.root.glob("T-*.json") if p.is_file())
        except OSError:
            logger.warning(f"无法遍历目录 {self.root}", exc_info=True)
            return []

    def parse_file(self, path: Path) -> List[UnifiedMessage]:
        thread = AmpThread.from_dict(read_json(path), fallback_id=path.stem)
        messages: List[UnifiedMessage] = []
        for usage in thread.usages():
            message = self.build_message(
                model_id=usage.model,
                provider_id=infer_provider(usage.model, default="anthropic"),
                session_id=thread.thread_id,
                timestamp=usage.timestamp,
                tokens=usage.tokens,
            )
            if message is not None:
                messages.append(message)
        return messages
