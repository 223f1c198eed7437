"""
多设备合并

持久化的账本按 (日期, 来源, 设备ID) 保存每个设备的贡献。设备重新提交时整体替换
自己的那一份，然后由设备映射重新计算来源汇总，因此重复提交是幂等的。

设备级跟踪出现之前保存的来源数据没有设备映射，第一次合并时先把原有汇总
收进 __legacy__ 设备，再写入新设备的数据。
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, Optional, Set

from .analyzer import build_daily_contribution, build_export_document
from .errors import MergeConsistencyViolation
from .models import (
    LEGACY_DEVICE_ID,
    DayTotals,
    DeviceSourceData,
    DeviceSubmission,
    ModelBreakdownData,
    SourceBreakdownData,
    TokenContributionData,
    sum_counters,
    sum_model_maps,
)

logger = logging.getLogger(__name__)

SourceBreakdown = Dict[str, SourceBreakdownData]

LEDGER_FORMAT_VERSION = 1


def recompute_source(entry: SourceBreakdownData) -> SourceBreakdownData:
    """由设备映射重新计算来源计数与模型映射；旧格式数据原样返回"""
    if not entry.devices:
        return entry
    devices = dict(sorted(entry.devices.items()))
    return SourceBreakdownData(
        models=sum_model_maps(d.models for d in devices.values()),
        devices=devices,
        **sum_counters(devices.values()),
    )


def _models_match(left: Dict[str, ModelBreakdownData], right: Dict[str, ModelBreakdownData]) -> bool:
    if set(left) != set(right):
        return False
    return all(left[k].same_counters(right[k]) for k in left)


def verify_device(device_id: str, data: DeviceSourceData, source: str = "") -> None:
    """带模型明细的设备贡献，计数必须等于模型明细之和"""
    if not data.models:
        return
    expected = ModelBreakdownData(**sum_counters(data.models.values()))
    if not expected.same_counters(data):
        raise MergeConsistencyViolation("设备计数与模型明细不一致", key=f"{source}/{device_id}")


def verify_source(entry: SourceBreakdownData, key: str = "") -> None:
    """来源计数与模型映射必须等于设备映射之和"""
    if entry.devices is None:
        return
    if not entry.devices:
        raise MergeConsistencyViolation("来源没有任何设备数据", key=key)
    expected = recompute_source(entry)
    if not entry.same_counters(expected) or not _models_match(entry.models, expected.models):
        raise MergeConsistencyViolation("来源汇总与设备映射不一致", key=key)


def _legacy_device(entry: SourceBreakdownData) -> DeviceSourceData:
    return DeviceSourceData(
        input=entry.input,
        output=entry.output,
        cache_read=entry.cache_read,
        cache_write=entry.cache_write,
        reasoning=entry.reasoning,
        cost=entry.cost,
        messages=entry.messages,
        models=dict(entry.models),
    )


def merge_source_breakdowns(
    existing: Optional[SourceBreakdown],
    incoming: Dict[str, DeviceSourceData],
    submitted_sources: Iterable[str],
    device_id: str,
) -> SourceBreakdown:
    """
    合并某一天的来源数据，返回新的映射，不修改 existing

    只处理 submitted_sources 中的来源：incoming 中有数据的替换该设备的条目；
    没有数据的删除该设备的条目，来源没有设备时整个来源被删除。
    """
    if device_id == LEGACY_DEVICE_ID:
        raise MergeConsistencyViolation("设备ID保留给旧数据使用", key=device_id)

    merged: SourceBreakdown = dict(existing or {})

    for source in sorted(set(submitted_sources)):
        current = merged.get(source)

        if source in incoming:
            verify_device(device_id, incoming[source], source)
            if current is None:
                devices: Dict[str, DeviceSourceData] = {}
            elif current.is_legacy:
                devices = {LEGACY_DEVICE_ID: _legacy_device(current)}
                logger.info(f"来源 {source} 的旧数据已保存为 {LEGACY_DEVICE_ID}")
            else:
                devices = dict(current.devices)
            devices[device_id] = incoming[source]
            updated = recompute_source(SourceBreakdownData(devices=devices))
            verify_source(updated, key=source)
            merged[source] = updated

        elif current is not None and current.devices and device_id in current.devices:
            devices = {k: v for k, v in current.devices.items() if k != device_id}
            if devices:
                merged[source] = recompute_source(SourceBreakdownData(devices=devices))
            else:
                del merged[source]
                logger.debug(f"来源 {source} 已无设备数据，删除")

    return dict(sorted(merged.items()))


def recalculate_day_totals(breakdown: SourceBreakdown) -> DayTotals:
    entries = list(breakdown.values())
    return DayTotals(
        tokens=sum(e.tokens for e in entries),
        cost=sum(e.cost for e in entries),
        input_tokens=sum(e.input for e in entries),
        output_tokens=sum(e.output for e in entries),
        cache_read_tokens=sum(e.cache_read for e in entries),
        cache_write_tokens=sum(e.cache_write for e in entries),
        reasoning_tokens=sum(e.reasoning for e in entries),
    )


def build_model_breakdown(breakdown: SourceBreakdown) -> Dict[str, int]:
    """模型ID -> 当天所有来源上的Token总数"""
    result: Dict[str, int] = {}
    for entry in breakdown.values():
        for model_id, data in entry.models.items():
            result[model_id] = result.get(model_id, 0) + data.tokens
    return dict(sorted(result.items()))


@dataclass(frozen=True)
class Ledger:
    """持久化的多设备账本：日期 -> 来源 -> 汇总"""

    days: Dict[str, SourceBreakdown] = field(default_factory=dict)

    def day_totals(self, date: str) -> DayTotals:
        return recalculate_day_totals(self.days.get(date, {}))

    @property
    def devices(self) -> Set[str]:
        return {
            device_id
            for breakdown in self.days.values()
            for entry in breakdown.values()
            for device_id in (entry.devices or {})
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": LEDGER_FORMAT_VERSION,
            "days": {
                date: {source: entry.to_dict() for source, entry in breakdown.items()}
                for date, breakdown in sorted(self.days.items())
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ledger":
        days = {
            str(date): {
                source: SourceBreakdownData.from_dict(entry, f"{date}/{source}") for source, entry in (breakdown or {}).items()
            }
            for date, breakdown in (data.get("days") or {}).items()
        }
        return cls(days=days)


def merge_submission(ledger: Ledger, submission: DeviceSubmission) -> Ledger:
    """
    把一次设备提交合并进账本，返回新账本

    只处理提交中出现的日期；新日期插入时直接带上设备映射，
    避免下次重新提交时被当作旧数据收进 __legacy__。
    """
    days = dict(ledger.days)

    for date in sorted(submission.days):
        incoming = submission.days[date]
        merged = merge_source_breakdowns(ledger.days.get(date), incoming, submission.sources, submission.device_id)
        if merged:
            days[date] = merged
        else:
            days.pop(date, None)

    logger.info(f"设备 {submission.device_id} 合并了 {len(submission.days)} 天的数据")
    return Ledger(days=dict(sorted(days.items())))


def submission_from_export(export: TokenContributionData, device_id: str) -> DeviceSubmission:
    """把导出文档转换为设备提交载荷"""
    days: Dict[str, Dict[str, DeviceSourceData]] = {}
    sources: Set[str] = set(export.summary.sources)

    for contribution in export.contributions:
        per_source: Dict[str, Dict[str, ModelBreakdownData]] = {}
        for item in contribution.sources:
            models = per_source.setdefault(item.source, {})
            data = ModelBreakdownData.from_tokens(item.tokens, item.cost, item.messages)
            models[item.model_id] = models[item.model_id] + data if item.model_id in models else data
            sources.add(item.source)
        days[contribution.date] = {
            source: DeviceSourceData.from_models(models) for source, models in sorted(per_source.items())
        }

    return DeviceSubmission(device_id=device_id, days=days, sources=sources)


def ledger_to_export(ledger: Ledger, version: Optional[str] = None, generated_at: Optional[str] = None) -> TokenContributionData:
    """由账本重新生成带强度分级的导出文档"""
    contributions = [
        build_daily_contribution(date, {source: entry.models for source, entry in breakdown.items()})
        for date, breakdown in sorted(ledger.days.items())
        if breakdown
    ]
    kwargs = {"generated_at": generated_at}
    if version:
        kwargs["version"] = version
    return build_export_document(contributions, **kwargs)


class MergeCoordinator:
    """
    按目标串行化合并

    同一目标上已有合并在进行时，新的合并直接失败而不是排队等待。
    只记录正在合并的目标，合并结束即移除。
    """

    def __init__(self):
        self._active: Set[str] = set()
        self._guard = threading.Lock()

    @contextmanager
    def acquire(self, target: str) -> Iterator[None]:
        with self._guard:
            if target in self._active:
                raise MergeConsistencyViolation("同一目标上已有合并正在进行", key=target)
            self._active.add(target)
        try:
            yield
        finally:
            with self._guard:
                self._active.discard(target)

    @property
    def active_targets(self) -> Set[str]:
        with self._guard:
            return set(self._active)

    def merge(self, target: str, ledger: Ledger, submission: DeviceSubmission) -> Ledger:
        with self.acquire(target):
            return merge_submission(ledger, submission)
