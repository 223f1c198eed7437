"""
来源解析器注册表

各来源解析器之间没有共享状态，在线程池中并发执行，线程数受配置的 workers 限制。
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Type

from ..config import load_full_config, resolve_source_root
from ..errors import SourceUnavailableError
from ..models import SOURCE_NAMES, UnifiedMessage
from .amp import AmpParser
from .base import SourceParser
from .claude import ClaudeParser
from .codex import CodexParser
from .cursor import CursorParser, fetch_usage_csv, parse_usage_csv, save_usage_csv
from .droid import DroidParser
from .gemini import GeminiParser
from .opencode import OpenCodeParser

logger = logging.getLogger(__name__)

PARSERS: Dict[str, Type[SourceParser]] = {
    "opencode": OpenCodeParser,
    "claude": ClaudeParser,
    "codex": CodexParser,
    "gemini": GeminiParser,
    "cursor": CursorParser,
    "amp": AmpParser,
    "droid": DroidParser,
}

DEFAULT_WORKERS = 4


@dataclass
class ParsedMessages:
    messages: List[UnifiedMessage] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    elapsed_ms: float = 0.0


def create_parser(source: str, config: Optional[Dict] = None) -> SourceParser:
    if source not in PARSERS:
        raise SourceUnavailableError("不支持的数据来源", key=source)
    return PARSERS[source](resolve_source_root(source, config))


def filter_messages(
    messages: Iterable[UnifiedMessage],
    since: Optional[str] = None,
    until: Optional[str] = None,
    year: Optional[str] = None,
) -> List[UnifiedMessage]:
    """按UTC日期过滤，since/until 均为闭区间"""
    result = []
    for message in messages:
        if year and not message.date.startswith(f"{year}-"):
            continue
        if since and message.date < since:
            continue
        if until and message.date > until:
            continue
        result.append(message)
    return result


def _run_parser(source: str, config: Optional[Dict]) -> List[UnifiedMessage]:
    try:
        return create_parser(source, config).parse()
    except SourceUnavailableError:
        logger.info(f"数据来源不可用: {source}", exc_info=True)
        return []


def parse_local_sources(
    sources: Optional[Iterable[str]] = None,
    since: Optional[str] = None,
    until: Optional[str] = None,
    year: Optional[str] = None,
    config: Optional[Dict] = None,
) -> ParsedMessages:
    """并发解析本地各来源的用量记录"""
    config = config if config is not None else load_full_config()
    selected = [s for s in (sources or SOURCE_NAMES) if s in PARSERS]
    unknown = set(sources or []) - set(PARSERS)
    if unknown:
        logger.warning(f"忽略未知的数据来源: {', '.join(sorted(unknown))}")

    started = time.perf_counter()
    result = ParsedMessages()
    if not selected:
        return result

    workers = max(1, min(int(config.get("workers") or DEFAULT_WORKERS), len(selected)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="source-parser") as executor:
        futures = {source: executor.submit(_run_parser, source, config) for source in selected}
        for source in selected:
            messages = filter_messages(futures[source].result(), since, until, year)
            result.counts[source] = len(messages)
            result.messages.extend(messages)

    result.elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(f"解析完成：{len(result.messages)} 条消息，耗时 {result.elapsed_ms:.0f}ms")
    return result


__all__ = [
    "PARSERS",
    "ParsedMessages",
    "SourceParser",
    "create_parser",
    "fetch_usage_csv",
    "filter_messages",
    "parse_local_sources",
    "parse_usage_csv",
    "save_usage_csv",
]
