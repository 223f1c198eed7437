"""
数据模型

统一消息、Token明细以及按 日期/来源/设备/模型 汇总的计数结构。
所有汇总类型都是不可变值，合并时总是构造新对象，不在原对象上修改。
"""

import math
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .errors import MergeConsistencyViolation


class Source(str, Enum):
    """支持的数据来源"""

    OPENCODE = "opencode"
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    CURSOR = "cursor"
    AMP = "amp"
    DROID = "droid"


SOURCE_NAMES = tuple(s.value for s in Source)

LEGACY_DEVICE_ID = "__legacy__"


def _non_negative_int(value: Any) -> int:
    try:
        number = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(number, 0)


def _non_negative_float(value: Any) -> float:
    try:
        number = float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


# datetime 能表示的最大时间 9999-12-31T23:59:59.999Z
MAX_TIMESTAMP_MS = 253402300799999

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def timestamp_to_date(timestamp_ms: int) -> str:
    """将毫秒时间戳按UTC截断为 YYYY-MM-DD，与本地时区无关"""
    if not 0 < timestamp_ms <= MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp out of range: {timestamp_ms!r}")
    return (_EPOCH + timedelta(milliseconds=timestamp_ms)).strftime("%Y-%m-%d")


@dataclass(frozen=True)
class TokenBreakdown:
    """Token明细，字段均为非负整数，可按字段相加"""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    reasoning: int = 0

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{f.name} must be an integer, got {value!r}")
            if value < 0:
                raise ValueError(f"{f.name} must be >= 0, got {value}")

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_read + self.cache_write + self.reasoning

    def is_empty(self) -> bool:
        return self.total == 0

    def __add__(self, other: "TokenBreakdown") -> "TokenBreakdown":
        if not isinstance(other, TokenBreakdown):
            return NotImplemented
        return TokenBreakdown(
            input=self.input + other.input,
            output=self.output + other.output,
            cache_read=self.cache_read + other.cache_read,
            cache_write=self.cache_write + other.cache_write,
            reasoning=self.reasoning + other.reasoning,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "cacheRead": self.cache_read,
            "cacheWrite": self.cache_write,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TokenBreakdown":
        data = data or {}
        return cls(
            input=_non_negative_int(data.get("input")),
            output=_non_negative_int(data.get("output")),
            cache_read=_non_negative_int(data.get("cacheRead")),
            cache_write=_non_negative_int(data.get("cacheWrite")),
            reasoning=_non_negative_int(data.get("reasoning")),
        )


@dataclass(frozen=True)
class UnifiedMessage:
    """
    统一后的单条用量事件

    只能通过 create() 构造：必填字段全部校验通过后才会生成对象，
    date 由 timestamp 派生，不接受外部传入。
    """

    source: str
    model_id: str
    provider_id: Optional[str]
    session_id: str
    timestamp: int
    date: str
    tokens: TokenBreakdown
    cost: float = 0.0
    agent: Optional[str] = None
    dedup_key: Optional[str] = None

    @classmethod
    def create(
        cls,
        source: str,
        model_id: str,
        provider_id: Optional[str],
        session_id: str,
        timestamp: int,
        tokens: TokenBreakdown,
        cost: float = 0.0,
        agent: Optional[str] = None,
        dedup_key: Optional[str] = None,
    ) -> "UnifiedMessage":
        if source not in SOURCE_NAMES:
            raise ValueError(f"unknown source: {source!r}")
        if not isinstance(model_id, str) or not model_id.strip():
            raise ValueError("model_id is required")
        if not isinstance(session_id, str) or not session_id:
            raise ValueError("session_id is required")
        if isinstance(timestamp, bool) or not isinstance(timestamp, int) or timestamp <= 0:
            raise ValueError(f"invalid timestamp: {timestamp!r}")
        if not isinstance(tokens, TokenBreakdown):
            raise ValueError("tokens must be a TokenBreakdown")
        cost = float(cost or 0.0)
        if not math.isfinite(cost) or cost < 0:
            raise ValueError(f"invalid cost: {cost!r}")

        return cls(
            source=source,
            model_id=model_id.strip(),
            provider_id=provider_id or None,
            session_id=session_id,
            timestamp=timestamp,
            date=timestamp_to_date(timestamp),
            tokens=tokens,
            cost=cost,
            agent=agent or None,
            dedup_key=dedup_key,
        )

    def with_cost(self, cost: float) -> "UnifiedMessage":
        return replace(self, cost=cost)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "source": self.source,
            "modelId": self.model_id,
            "providerId": self.provider_id,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
            "date": self.date,
            "tokens": self.tokens.to_dict(),
            "cost": self.cost,
        }
        if self.agent:
            data["agent"] = self.agent
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnifiedMessage":
        """经 create() 重新校验；date 总是由 timestamp 重新计算"""
        return cls.create(
            source=data.get("source"),
            model_id=data.get("modelId"),
            provider_id=data.get("providerId"),
            session_id=data.get("sessionId"),
            timestamp=data.get("timestamp"),
            tokens=TokenBreakdown.from_dict(data.get("tokens")),
            cost=data.get("cost") or 0.0,
            agent=data.get("agent"),
        )


@dataclass(frozen=True)
class UsageCounters:
    """汇总计数；tokens 永远由五类Token字段求和得出"""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    reasoning: int = 0
    cost: float = 0.0
    messages: int = 0

    @property
    def tokens(self) -> int:
        return self.input + self.output + self.cache_read + self.cache_write + self.reasoning

    def counters(self) -> Dict[str, Any]:
        return {
            "tokens": self.tokens,
            "cost": self.cost,
            "input": self.input,
            "output": self.output,
            "cacheRead": self.cache_read,
            "cacheWrite": self.cache_write,
            "reasoning": self.reasoning,
            "messages": self.messages,
        }

    def same_counters(self, other: "UsageCounters", tolerance: float = 1e-9) -> bool:
        return (
            self.input == other.input
            and self.output == other.output
            and self.cache_read == other.cache_read
            and self.cache_write == other.cache_write
            and self.reasoning == other.reasoning
            and self.messages == other.messages
            and abs(self.cost - other.cost) <= tolerance * max(1.0, abs(self.cost), abs(other.cost))
        )

    @staticmethod
    def counter_kwargs(data: Dict[str, Any], key: str = "") -> Dict[str, Any]:
        """读取计数字段；存储的 tokens 必须等于五类Token之和，不一致时拒绝而不是截断"""
        kwargs = {
            "input": _non_negative_int(data.get("input")),
            "output": _non_negative_int(data.get("output")),
            "cache_read": _non_negative_int(data.get("cacheRead")),
            "cache_write": _non_negative_int(data.get("cacheWrite")),
            "reasoning": _non_negative_int(data.get("reasoning")),
            "cost": _non_negative_float(data.get("cost")),
            "messages": _non_negative_int(data.get("messages")),
        }
        stored = data.get("tokens")
        if stored is not None:
            expected = sum(kwargs[name] for name in ("input", "output", "cache_read", "cache_write", "reasoning"))
            if _non_negative_int(stored) != expected:
                raise MergeConsistencyViolation(f"tokens={stored!r} 与Token明细之和 {expected} 不一致", key=key or None)
        return kwargs


def sum_counters(items) -> Dict[str, Any]:
    """逐字段累加计数，返回可直接用于构造计数对象的关键字参数"""
    totals = {"input": 0, "output": 0, "cache_read": 0, "cache_write": 0, "reasoning": 0, "cost": 0.0, "messages": 0}
    for item in items:
        totals["input"] += item.input
        totals["output"] += item.output
        totals["cache_read"] += item.cache_read
        totals["cache_write"] += item.cache_write
        totals["reasoning"] += item.reasoning
        totals["cost"] += item.cost
        totals["messages"] += item.messages
    return totals


@dataclass(frozen=True)
class ModelBreakdownData(UsageCounters):
    """单个模型在某来源/某天/某设备下的计数"""

    @classmethod
    def from_tokens(cls, tokens: TokenBreakdown, cost: float = 0.0, messages: int = 1) -> "ModelBreakdownData":
        return cls(
            input=tokens.input,
            output=tokens.output,
            cache_read=tokens.cache_read,
            cache_write=tokens.cache_write,
            reasoning=tokens.reasoning,
            cost=cost,
            messages=messages,
        )

    def __add__(self, other: "ModelBreakdownData") -> "ModelBreakdownData":
        if not isinstance(other, UsageCounters):
            return NotImplemented
        return ModelBreakdownData(**sum_counters((self, other)))

    def to_dict(self) -> Dict[str, Any]:
        return self.counters()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], key: str = "") -> "ModelBreakdownData":
        return cls(**cls.counter_kwargs(data or {}, key))


def sum_model_maps(model_maps) -> Dict[str, ModelBreakdownData]:
    """按模型ID逐字段相加多个模型映射，结果按模型ID排序"""
    result: Dict[str, ModelBreakdownData] = {}
    for models in model_maps:
        for model_id, data in models.items():
            result[model_id] = result[model_id] + data if model_id in result else data
    return dict(sorted(result.items()))


@dataclass(frozen=True)
class DeviceSourceData(UsageCounters):
    """单个设备对某来源某天的贡献，重新提交时整体替换"""

    models: Dict[str, ModelBreakdownData] = field(default_factory=dict)

    @classmethod
    def from_models(cls, models: Dict[str, ModelBreakdownData]) -> "DeviceSourceData":
        return cls(models=dict(sorted(models.items())), **sum_counters(models.values()))

    def to_dict(self) -> Dict[str, Any]:
        data = self.counters()
        data["models"] = {model_id: m.to_dict() for model_id, m in self.models.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], key: str = "") -> "DeviceSourceData":
        data = data or {}
        models = {k: ModelBreakdownData.from_dict(v, f"{key}/{k}") for k, v in (data.get("models") or {}).items()}
        return cls(models=models, **cls.counter_kwargs(data, key))


@dataclass(frozen=True)
class SourceBreakdownData(UsageCounters):
    """
    某来源某天在所有设备上的汇总

    devices 是唯一可信状态；计数与 models 都由 devices 重新计算得到。
    devices 为 None 表示设备级跟踪出现之前保存的旧数据。
    """

    models: Dict[str, ModelBreakdownData] = field(default_factory=dict)
    devices: Optional[Dict[str, DeviceSourceData]] = None

    @property
    def is_legacy(self) -> bool:
        return self.devices is None

    def to_dict(self) -> Dict[str, Any]:
        data = self.counters()
        data["models"] = {model_id: m.to_dict() for model_id, m in self.models.items()}
        if self.devices is not None:
            data["devices"] = {device_id: d.to_dict() for device_id, d in self.devices.items()}
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], key: str = "") -> "SourceBreakdownData":
        data = data or {}
        models = {k: ModelBreakdownData.from_dict(v, f"{key}/{k}") for k, v in (data.get("models") or {}).items()}
        counters = cls.counter_kwargs(data, key)
        # 旧格式只记录单个 modelId
        if not models and data.get("modelId"):
            models = {data["modelId"]: ModelBreakdownData(**counters)}
        devices = None
        if isinstance(data.get("devices"), dict):
            devices = {k: DeviceSourceData.from_dict(v, f"{key}/{k}") for k, v in data["devices"].items()}
        return cls(models=models, devices=devices, **counters)


@dataclass(frozen=True)
class DayTotals:
    tokens: int = 0
    cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    reasoning_tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens": self.tokens,
            "cost": self.cost,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "cacheWriteTokens": self.cache_write_tokens,
            "reasoningTokens": self.reasoning_tokens,
        }


@dataclass(frozen=True)
class SourceContribution:
    """某天某来源某模型的贡献"""

    source: str
    model_id: str
    tokens: TokenBreakdown
    cost: float = 0.0
    messages: int = 0
    provider_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "source": self.source,
            "modelId": self.model_id,
            "tokens": self.tokens.to_dict(),
            "cost": self.cost,
            "messages": self.messages,
        }
        if self.provider_id:
            data["providerId"] = self.provider_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceContribution":
        model_id = data.get("modelId")
        if not isinstance(model_id, str) or not model_id.strip():
            model_id = "unknown"
        return cls(
            source=str(data.get("source", "")),
            model_id=model_id.strip(),
            tokens=TokenBreakdown.from_dict(data.get("tokens")),
            cost=_non_negative_float(data.get("cost")),
            messages=_non_negative_int(data.get("messages")),
            provider_id=data.get("providerId"),
        )


@dataclass(frozen=True)
class DailyContribution:
    """对外可见的每日数据单元"""

    date: str
    tokens: int = 0
    cost: float = 0.0
    messages: int = 0
    intensity: int = 0
    token_breakdown: TokenBreakdown = field(default_factory=TokenBreakdown)
    sources: List[SourceContribution] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "totals": {"tokens": self.tokens, "cost": self.cost, "messages": self.messages},
            "intensity": self.intensity,
            "tokenBreakdown": self.token_breakdown.to_dict(),
            "sources": [s.to_dict() for s in self.sources],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyContribution":
        totals = data.get("totals") or {}
        return cls(
            date=str(data["date"]),
            tokens=_non_negative_int(totals.get("tokens")),
            cost=_non_negative_float(totals.get("cost")),
            messages=_non_negative_int(totals.get("messages")),
            intensity=min(max(_non_negative_int(data.get("intensity")), 0), 4),
            token_breakdown=TokenBreakdown.from_dict(data.get("tokenBreakdown")),
            sources=[SourceContribution.from_dict(s) for s in data.get("sources") or []],
        )


@dataclass(frozen=True)
class YearSummary:
    year: str
    total_tokens: int
    total_cost: float
    range_start: str
    range_end: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "year": self.year,
            "totalTokens": self.total_tokens,
            "totalCost": self.total_cost,
            "range": {"start": self.range_start, "end": self.range_end},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "YearSummary":
        date_range = data.get("range") or {}
        return cls(
            year=str(data.get("year", "")),
            total_tokens=_non_negative_int(data.get("totalTokens")),
            total_cost=_non_negative_float(data.get("totalCost")),
            range_start=str(date_range.get("start", "")),
            range_end=str(date_range.get("end", "")),
        )


@dataclass(frozen=True)
class DataSummary:
    total_tokens: int = 0
    total_cost: float = 0.0
    total_days: int = 0
    active_days: int = 0
    average_per_day: float = 0.0
    max_cost_in_single_day: float = 0.0
    sources: List[str] = field(default_factory=list)
    models: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTokens": self.total_tokens,
            "totalCost": self.total_cost,
            "totalDays": self.total_days,
            "activeDays": self.active_days,
            "averagePerDay": self.average_per_day,
            "maxCostInSingleDay": self.max_cost_in_single_day,
            "sources": list(self.sources),
            "models": list(self.models),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataSummary":
        return cls(
            total_tokens=_non_negative_int(data.get("totalTokens")),
            total_cost=_non_negative_float(data.get("totalCost")),
            total_days=_non_negative_int(data.get("totalDays")),
            active_days=_non_negative_int(data.get("activeDays")),
            average_per_day=_non_negative_float(data.get("averagePerDay")),
            max_cost_in_single_day=_non_negative_float(data.get("maxCostInSingleDay")),
            sources=[str(s) for s in data.get("sources") or []],
            models=[str(m) for m in data.get("models") or []],
        )


@dataclass(frozen=True)
class ExportMeta:
    generated_at: str
    version: str
    date_start: str = ""
    date_end: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generatedAt": self.generated_at,
            "version": self.version,
            "dateRange": {"start": self.date_start, "end": self.date_end},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportMeta":
        date_range = data.get("dateRange") or {}
        return cls(
            generated_at=str(data.get("generatedAt", "")),
            version=str(data.get("version", "")),
            date_start=str(date_range.get("start", "")),
            date_end=str(date_range.get("end", "")),
        )


@dataclass(frozen=True)
class TokenContributionData:
    """导出文档：meta / summary / years / contributions"""

    meta: ExportMeta
    summary: DataSummary
    years: List[YearSummary]
    contributions: List[DailyContribution]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meta": self.meta.to_dict(),
            "summary": self.summary.to_dict(),
            "years": [y.to_dict() for y in self.years],
            "contributions": [c.to_dict() for c in self.contributions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenContributionData":
        return cls(
            meta=ExportMeta.from_dict(data.get("meta") or {}),
            summary=DataSummary.from_dict(data.get("summary") or {}),
            years=[YearSummary.from_dict(y) for y in data.get("years") or []],
            contributions=[DailyContribution.from_dict(c) for c in data.get("contributions") or []],
        )


@dataclass(frozen=True)
class DeviceSubmission:
    """
    设备提交载荷

    days: 日期 -> 来源名 -> 该设备的贡献
    sources: 本次提交覆盖的来源集合；集合内但当天缺席的来源视为该设备已删除
    """

    device_id: str
    days: Dict[str, Dict[str, DeviceSourceData]]
    sources: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "sources": sorted(self.sources),
            "days": {
                date: {name: data.to_dict() for name, data in breakdown.items()}
                for date, breakdown in sorted(self.days.items())
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceSubmission":
        device_id = str(data["deviceId"])
        days = {
            str(date): {
                name: DeviceSourceData.from_dict(v, f"{date}/{name}/{device_id}") for name, v in (breakdown or {}).items()
            }
            for date, breakdown in (data.get("days") or {}).items()
        }
        sources = set(data.get("sources") or [])
        for breakdown in days.values():
            sources.update(breakdown.keys())
        return cls(device_id=device_id, days=days, sources=sources)
