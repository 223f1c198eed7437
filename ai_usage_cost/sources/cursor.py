"""
Cursor 用量解析

数据来自 Cursor 后台导出的 CSV，拉取后缓存在 cursor-cache/ 目录：
usage.csv 对应当前账号，usage.<账号>.csv 对应其他账号。

两种表头格式：
- 新: Date,Kind,Model,Max Mode,Input (w/ Cache Write),Input (w/o Cache Write),Cache Read,Output Tokens,Total Tokens,Cost
- 旧: Date,Model,Input (w/ Cache Write),Input (w/o Cache Write),Cache Read,Output Tokens,Total Tokens,Cost,Cost to you
"""

import csv
import io
import logging
import math
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import requests

from ..errors import CursorCsvError, UpstreamFailure
from ..models import Source, TokenBreakdown, UnifiedMessage
from .base import SourceParser, infer_provider, parse_timestamp, to_int

logger = logging.getLogger(__name__)

USAGE_CSV_URL = "https://cursor.com/api/dashboard/export-usage-events-csv?strategy=tokens"
SESSION_COOKIE = "WorkosCursorSessionToken"
DEFAULT_ACCOUNT = "active"
DEFAULT_FETCH_TIMEOUT_SECONDS = 30

_ACCOUNT_SAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def parse_cost(value: Optional[str]) -> float:
    """解析 "$1,234.56" 形式的金额，空值或 NaN 为0"""
    if not value:
        return 0.0
    text = value.strip().replace("$", "").replace(",", "")
    if not text:
        return 0.0
    try:
        cost = float(text)
    except ValueError:
        return 0.0
    if not math.isfinite(cost) or cost < 0:
        return 0.0
    return cost


def parse_date(value: str) -> Optional[int]:
    """只有日期时按当天UTC正午处理"""
    value = value.strip()
    try:
        day = datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return parse_timestamp(value)
    return int(day.replace(hour=12, tzinfo=timezone.utc).timestamp() * 1000)


def account_id_from_path(path: Path) -> str:
    name = path.name
    if name == "usage.csv":
        return DEFAULT_ACCOUNT
    if name.startswith("usage.") and name.endswith(".csv"):
        cleaned = _ACCOUNT_SAFE_CHARS.sub("-", name[len("usage."):-len(".csv")])
        return cleaned or "unknown"
    return "unknown"


def _column(row: Dict[str, Optional[str]], name: str) -> str:
    return (row.get(name) or "").strip()


@dataclass(frozen=True)
class CursorRow:
    date: str
    timestamp: int
    model: str
    tokens: TokenBreakdown
    cost: float

    @classmethod
    def from_row(cls, row: Dict[str, Optional[str]]) -> Optional["CursorRow"]:
        date_text = _column(row, "Date")
        model = _column(row, "Model")
        if not date_text or not model:
            return None
        timestamp = parse_date(date_text)
        if timestamp is None:
            return None

        input_with_cache_write = to_int(_column(row, "Input (w/ Cache Write)"))
        input_without_cache_write = to_int(_column(row, "Input (w/o Cache Write)"))
        return cls(
            date=date_text,
            timestamp=timestamp,
            model=model,
            tokens=TokenBreakdown(
                input=input_without_cache_write,
                output=to_int(_column(row, "Output Tokens")),
                cache_read=to_int(_column(row, "Cache Read")),
                cache_write=max(input_with_cache_write - input_without_cache_write, 0),
            ),
            cost=parse_cost(row.get("Cost")),
        )


def parse_usage_csv(text: str, account_id: str = DEFAULT_ACCOUNT) -> List[UnifiedMessage]:
    """
    解析 Cursor 导出的 CSV 文本

    表头第一列不是 Date 时说明响应不是用量数据（通常是登录失效返回的页面），
    整份文档作废并抛出 CursorCsvError。
    """
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    fieldnames = reader.fieldnames or []
    if not fieldnames or fieldnames[0].strip() != "Date":
        raise CursorCsvError("CSV 表头不是 Cursor 用量格式", key=account_id)

    messages: List[UnifiedMessage] = []
    for row in reader:
        entry = CursorRow.from_row(row)
        if entry is None or entry.tokens.is_empty():
            continue
        try:
            messages.append(
                UnifiedMessage.create(
                    source=Source.CURSOR.value,
                    model_id=entry.model,
                    provider_id=infer_provider(entry.model, default="cursor"),
                    session_id=f"cursor-{account_id}-{entry.date}",
                    timestamp=entry.timestamp,
                    tokens=entry.tokens,
                    cost=entry.cost,
                )
            )
        except (ValueError, OverflowError, OSError) as e:
            logger.debug(f"丢弃无效的Cursor记录: {e}")
    return messages


def fetch_usage_csv(session_token: str, timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS) -> str:
    """从 Cursor 后台拉取用量CSV"""
    try:
        response = requests.get(
            USAGE_CSV_URL,
            headers={"Cookie": f"{SESSION_COOKIE}={session_token}", "Accept": "text/csv"},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise UpstreamFailure(f"请求 Cursor 用量失败: {e}", key="cursor", stage="parse") from e

    if response.status_code in (401, 403):
        raise UpstreamFailure("Cursor 会话令牌无效或已过期", key="cursor", stage="parse")
    if response.status_code >= 400:
        raise UpstreamFailure(f"Cursor 接口返回 HTTP {response.status_code}", key="cursor", stage="parse")

    text = response.text
    if not text.lstrip("\ufeff").startswith("Date,"):
        raise UpstreamFailure("Cursor 接口返回的不是CSV", key="cursor", stage="parse")
    return text


def save_usage_csv(text: str, cache_dir: Path, account_id: str = DEFAULT_ACCOUNT) -> Path:
    """原子写入缓存文件，返回写入路径"""
    cache_dir.mkdir(parents=True, exist_ok=True)
    if account_id == DEFAULT_ACCOUNT:
        target = cache_dir / "usage.csv"
    else:
        target = cache_dir / f"usage.{_ACCOUNT_SAFE_CHARS.sub('-', account_id)}.csv"

    fd, tmp_name = tempfile.mkstemp(prefix=".usage.", suffix=".tmp", dir=cache_dir)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        os.replace(tmp_name, target)
    except OSError:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
    logger.info(f"已缓存 Cursor 用量: {target}")
    return target


class CursorParser(SourceParser):
    source = Source.CURSOR.value

    def discover_files(self) -> List[Path]:
        try:
            return sorted(p for p in self.root.glob("usage*.csv") if p.is_file())
        except OSError:
            logger.warning(f"无法遍历目录 {self.root}", exc_info=True)
            return []

    def parse_file(self, path: Path) -> List[UnifiedMessage]:
        text = path.read_text(encoding="utf-8", errors="replace")
        return parse_usage_csv(text, account_id_from_path(path))
