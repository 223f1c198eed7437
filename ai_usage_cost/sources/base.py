"""
来源解析器公共部分

文件发现、时间戳解析、容错的数值读取，以及逐文件容错的解析器基类。
"""

import json
import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..errors import RecoverableInputError
from ..models import MAX_TIMESTAMP_MS, TokenBreakdown, UnifiedMessage

logger = logging.getLogger(__name__)

# 小于该值的数字时间戳按秒处理，否则按毫秒
_SECONDS_THRESHOLD = 100_000_000_000


def find_files(root: Path, pattern: str) -> List[Path]:
    """递归查找匹配的文件，按路径排序保证结果稳定"""
    try:
        return sorted(p for p in root.rglob(pattern) if p.is_file())
    except OSError:
        logger.warning(f"无法遍历目录 {root}", exc_info=True)
        return []


def to_int(value: Any) -> int:
    """读取非负整数，缺失或无法识别时为0"""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return max(int(number), 0)


def to_float(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def parse_timestamp(value: Any) -> Optional[int]:
    """
    解析时间戳为UTC毫秒

    支持 RFC 3339 字符串（无时区时按UTC）以及数字形式的秒或毫秒。
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value <= 0:
            return None
        timestamp = int(value * 1000) if value < _SECONDS_THRESHOLD else int(value)
        return timestamp if timestamp <= MAX_TIMESTAMP_MS else None

    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    timestamp = int(dt.timestamp() * 1000)
    return timestamp if timestamp > 0 else None


def infer_provider(model: str, default: str = "unknown") -> str:
    """根据模型名推断上游厂商"""
    lower = model.lower()
    if any(name in lower for name in ("claude", "sonnet", "opus", "haiku")):
        return "anthropic"
    if "gpt" in lower or "o1" in lower or "o3" in lower:
        return "openai"
    if "gemini" in lower:
        return "google"
    if "grok" in lower:
        return "xai"
    if "deepseek" in lower:
        return "deepseek"
    if "llama" in lower or "mixtral" in lower:
        return "meta"
    return default


def normalize_agent_name(agent: str) -> str:
    lower = agent.lower()
    if "plan" in lower:
        if "omo" in lower or "sisyphus" in lower:
            return "Planner-Sisyphus"
        return agent
    if lower in ("omo", "sisyphus"):
        return "Sisyphus"
    return agent


def read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def iter_json_lines(path: Path) -> Iterator[Tuple[int, Dict[str, Any]]]:
    """逐行读取JSONL，跳过空行与格式错误的行"""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line_number, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except ValueError:
                logger.debug(f"跳过格式错误的行 {path}:{line_number}")
                continue
            if isinstance(data, dict):
                yield line_number, data


def require_dict(value: Any, name: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise RecoverableInputError(f"{name} 不是JSON对象")
    return value


class SourceParser:
    """
    解析器基类

    子类实现 discover_files() 与 parse_file()。根目录不存在时返回空列表；
    单个文件出错只记录日志并跳过。
    """

    source = ""

    def __init__(self, root: Path):
        self.root = Path(root)

    def discover_files(self) -> List[Path]:
        raise NotImplementedError

    def parse_file(self, path: Path) -> List[UnifiedMessage]:
        raise NotImplementedError

    def build_message(self, **kwargs) -> Optional[UnifiedMessage]:
        """构造统一消息，必填字段校验失败或Token全为0时返回 None"""
        tokens: TokenBreakdown = kwargs["tokens"]
        if tokens.is_empty():
            return None
        try:
            return UnifiedMessage.create(source=self.source, **kwargs)
        except (ValueError, OverflowError, OSError) as e:
            logger.debug(f"丢弃无效的{self.source}记录: {e}")
            return None

    def parse(self) -> List[UnifiedMessage]:
        if not self.root.exists():
            logger.info(f"{self.source} 数据目录不存在，跳过: {self.root}")
            return []

        messages: List[UnifiedMessage] = []
        files = self.discover_files()
        for path in files:
            try:
                messages.extend(self.parse_file(path))
            except (OSError, ValueError, RecoverableInputError):
                logger.warning(f"处理文件失败，已跳过: {path}", exc_info=True)
                continue

        logger.debug(f"{self.source}: 处理 {len(files)} 个文件，得到 {len(messages)} 条消息")
        return messages
