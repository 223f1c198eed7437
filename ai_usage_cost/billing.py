"""
计费相关功能模块

根据解析出的定价条目计算单条消息成本，并为整批消息补全成本。
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import ResolutionMiss
from .models import Source, TokenBreakdown, UnifiedMessage
from .pricing import PricedEntry, PricingResolver, Resolution

# 配置日志
logger = logging.getLogger(__name__)

# 这些来源在原始记录中自带厂商结算成本，无法定价时保留原值
VENDOR_COST_SOURCES = frozenset({Source.CURSOR.value})


def calculate_cost(tokens: TokenBreakdown, entry: PricedEntry) -> float:
    """
    计算单条消息成本（美元）

    推理Token按输出单价计费；缓存写入与缓存读取分别使用各自单价。
    """
    return (
        tokens.input * entry.input_cost_per_token
        + (tokens.output + tokens.reasoning) * entry.output_cost_per_token
        + tokens.cache_write * entry.cache_creation_input_token_cost
        + tokens.cache_read * entry.cache_read_input_token_cost
    )


@dataclass
class PricingReport:
    """一次定价过程的结果统计"""

    resolved: Dict[str, Resolution] = field(default_factory=dict)
    misses: Dict[str, ResolutionMiss] = field(default_factory=dict)
    priced_messages: int = 0
    unpriced_messages: int = 0

    @property
    def warnings(self) -> List[ResolutionMiss]:
        return list(self.misses.values())


def price_message(message: UnifiedMessage, resolution: Optional[Resolution]) -> UnifiedMessage:
    if resolution is not None:
        return message.with_cost(calculate_cost(message.tokens, resolution.entry))
    if message.source in VENDOR_COST_SOURCES:
        return message
    return message.with_cost(0.0)


def price_messages(
    messages: Iterable[UnifiedMessage], resolver: PricingResolver
) -> Tuple[List[UnifiedMessage], PricingReport]:
    """为消息计算成本；无法解析的模型成本为0但Token照常保留"""
    report = PricingReport()
    priced: List[UnifiedMessage] = []

    for message in messages:
        resolution = resolver.resolve(message.model_id)
        if resolution is not None:
            report.resolved.setdefault(message.model_id, resolution)
            report.priced_messages += 1
        else:
            if message.model_id not in report.misses:
                report.misses[message.model_id] = ResolutionMiss("未找到定价", key=message.model_id)
            report.unpriced_messages += 1
        priced.append(price_message(message, resolution))

    if report.misses:
        logger.info(f"{len(report.misses)} 个模型未能定价，涉及 {report.unpriced_messages} 条消息")
    return priced, report
