"""
活跃强度分级

按当天成本相对整个数据集最高单日成本的比例分为 0-4 五级。
0 级只留给成本恰好为0的日期；(0, max] 按等宽分为四段，右端闭合。
"""

import math
from dataclasses import replace
from typing import Iterable, List

from .models import DailyContribution

MAX_INTENSITY = 4

# 抵消浮点误差，避免 30/40*4 之类的结果被向上取整到下一档
_EPSILON = 1e-9


def calculate_intensity(cost: float, max_cost: float) -> int:
    if cost <= 0 or max_cost <= 0:
        return 0
    grade = math.ceil(cost * MAX_INTENSITY / max_cost - _EPSILON)
    return min(max(grade, 1), MAX_INTENSITY)


def grade_contributions(contributions: Iterable[DailyContribution]) -> List[DailyContribution]:
    """以数据集内最高单日成本为基准，为每一天重新计算强度"""
    contributions = list(contributions)
    max_cost = max((c.cost for c in contributions), default=0.0)
    return [replace(c, intensity=calculate_intensity(c.cost, max_cost)) for c in contributions]
