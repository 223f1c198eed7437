"""
用量分析器

把统一消息按 日期 -> 来源 -> 模型 累加，生成每日贡献、年度汇总和导出文档，
以及提交给合并引擎的单设备快照。
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from . import __version__
from .errors import AggregationError
from .intensity import grade_contributions
from .models import (
    DailyContribution,
    DataSummary,
    DeviceSourceData,
    DeviceSubmission,
    ExportMeta,
    ModelBreakdownData,
    SourceContribution,
    TokenBreakdown,
    TokenContributionData,
    UnifiedMessage,
    YearSummary,
)

# 配置日志
logger = logging.getLogger(__name__)

# 日期 -> 来源 -> 模型 -> 计数
DayBreakdown = Dict[str, Dict[str, ModelBreakdownData]]


def build_daily_contribution(
    date: str, breakdown: DayBreakdown, providers: Optional[Dict[Tuple[str, str], str]] = None
) -> DailyContribution:
    """由某天的 来源 -> 模型 计数构造每日贡献（强度稍后统一计算）"""
    providers = providers or {}
    sources: List[SourceContribution] = []
    token_breakdown = TokenBreakdown()
    cost = 0.0
    messages = 0

    for source in sorted(breakdown):
        for model_id, data in sorted(breakdown[source].items()):
            tokens = TokenBreakdown(
                input=data.input,
                output=data.output,
                cache_read=data.cache_read,
                cache_write=data.cache_write,
                reasoning=data.reasoning,
            )
            sources.append(
                SourceContribution(
                    source=source,
                    model_id=model_id,
                    tokens=tokens,
                    cost=data.cost,
                    messages=data.messages,
                    provider_id=providers.get((source, model_id)),
                )
            )
            token_breakdown = token_breakdown + tokens
            cost += data.cost
            messages += data.messages

    return DailyContribution(
        date=date,
        tokens=token_breakdown.total,
        cost=cost,
        messages=messages,
        token_breakdown=token_breakdown,
        sources=sources,
    )


def calculate_summary(contributions: List[DailyContribution]) -> DataSummary:
    total_cost = sum(c.cost for c in contributions)
    active_days = sum(1 for c in contributions if c.cost > 0)
    sources = sorted({s.source for c in contributions for s in c.sources})
    models = sorted({s.model_id for c in contributions for s in c.sources})

    return DataSummary(
        total_tokens=sum(c.tokens for c in contributions),
        total_cost=total_cost,
        total_days=len(contributions),
        active_days=active_days,
        average_per_day=total_cost / active_days if active_days else 0.0,
        max_cost_in_single_day=max((c.cost for c in contributions), default=0.0),
        sources=sources,
        models=models,
    )


def calculate_years(contributions: List[DailyContribution]) -> List[YearSummary]:
    """按年份汇总，结果按年份升序"""
    years: Dict[str, Dict] = {}
    for c in contributions:
        year = c.date[:4]
        entry = years.setdefault(year, {"tokens": 0, "cost": 0.0, "start": c.date, "end": c.date})
        entry["tokens"] += c.tokens
        entry["cost"] += c.cost
        entry["start"] = min(entry["start"], c.date)
        entry["end"] = max(entry["end"], c.date)

    return [
        YearSummary(
            year=year,
            total_tokens=entry["tokens"],
            total_cost=entry["cost"],
            range_start=entry["start"],
            range_end=entry["end"],
        )
        for year, entry in sorted(years.items())
    ]


def filter_by_date(
    contributions: Iterable[DailyContribution],
    since: Optional[str] = None,
    until: Optional[str] = None,
    year: Optional[str] = None,
) -> List[DailyContribution]:
    result = []
    for c in contributions:
        if year and c.date[:4] != str(year):
            continue
        if since and c.date < since:
            continue
        if until and c.date > until:
            continue
        result.append(c)
    return result


def build_export_document(
    contributions: Iterable[DailyContribution], version: str = __version__, generated_at: Optional[str] = None
) -> TokenContributionData:
    """按日期排序、重新分级并生成导出文档"""
    graded = grade_contributions(sorted(contributions, key=lambda c: c.date))
    meta = ExportMeta(
        generated_at=generated_at or datetime.now(timezone.utc).isoformat(),
        version=version,
        date_start=graded[0].date if graded else "",
        date_end=graded[-1].date if graded else "",
    )
    return TokenContributionData(
        meta=meta,
        summary=calculate_summary(graded),
        years=calculate_years(graded),
        contributions=graded,
    )


class UsageAnalyzer:
    """用量分析器"""

    def __init__(self):
        self.days: Dict[str, DayBreakdown] = {}
        self.providers: Dict[Tuple[str, str], str] = {}
        self.total_messages = 0

    def add_message(self, message: UnifiedMessage) -> None:
        # 同一 日期/来源/模型 的多条消息相加，而不是覆盖
        models = self.days.setdefault(message.date, {}).setdefault(message.source, {})
        data = ModelBreakdownData.from_tokens(message.tokens, message.cost)
        models[message.model_id] = models[message.model_id] + data if message.model_id in models else data

        if message.provider_id:
            self.providers.setdefault((message.source, message.model_id), message.provider_id)
        self.total_messages += 1

    def fold(self, messages: Iterable[UnifiedMessage]) -> "UsageAnalyzer":
        for message in messages:
            self.add_message(message)
        logger.info(f"累计 {self.total_messages} 条消息，覆盖 {len(self.days)} 天")
        return self

    @property
    def sources(self) -> List[str]:
        return sorted({source for day in self.days.values() for source in day})

    def daily_contributions(self) -> List[DailyContribution]:
        contributions = [build_daily_contribution(date, self.days[date], self.providers) for date in sorted(self.days)]
        for c in contributions:
            if c.tokens != c.token_breakdown.total:
                raise AggregationError("Token合计与明细不一致", key=c.date)
        return grade_contributions(contributions)

    def build_device_snapshot(self, device_id: str, sources: Optional[Iterable[str]] = None) -> DeviceSubmission:
        """
        生成单设备提交载荷

        sources 为本次解析覆盖的来源；在其中但没有数据的来源会被合并引擎视为删除。
        """
        if not device_id:
            raise AggregationError("设备ID不能为空")
        days = {
            date: {source: DeviceSourceData.from_models(models) for source, models in sorted(breakdown.items())}
            for date, breakdown in sorted(self.days.items())
        }
        submitted = set(sources or []) | set(self.sources)
        return DeviceSubmission(device_id=device_id, days=days, sources=submitted)

    def build_export(self, version: str = __version__, generated_at: Optional[str] = None) -> TokenContributionData:
        return build_export_document(self.daily_contributions(), version=version, generated_at=generated_at)
