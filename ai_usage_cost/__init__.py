"""AI Usage Cost - 汇总各AI编程助手的 Token 用量与成本，生成每日贡献图数据"""

__version__ = "1.0.0"
__author__ = "keakon"

from .analyzer import UsageAnalyzer
from .config import load_currency_config, load_full_config, load_pricing_config
from .models import DailyContribution, TokenBreakdown, TokenContributionData, UnifiedMessage
from .pricing import PricingResolver

__all__ = [
    "UsageAnalyzer",
    "PricingResolver",
    "UnifiedMessage",
    "TokenBreakdown",
    "DailyContribution",
    "TokenContributionData",
    "load_full_config",
    "load_pricing_config",
    "load_currency_config",
]
