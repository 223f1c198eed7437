"""
终端报告

用 Rich 表格展示导出文档：总体统计、每日消耗、来源统计和模型统计。
"""

import logging
from typing import Dict, List, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from .config import DEFAULT_USD_TO_CNY, load_currency_config
from .models import TokenBreakdown, TokenContributionData
from .pricing import Resolution

# 配置日志
logger = logging.getLogger(__name__)


class UsageReport:
    """Rich 格式的用量报告"""

    def __init__(self, currency_config: Optional[Dict] = None, console: Optional[Console] = None):
        self.currency_config = currency_config or load_currency_config()
        self.console = console or Console()

    def _convert_currency(self, amount: float) -> float:
        """根据配置转换货币"""
        if self.currency_config.get("display_unit", "USD") == "CNY":
            return amount * self.currency_config.get("usd_to_cny", DEFAULT_USD_TO_CNY)
        return amount

    def format_cost(self, cost: float) -> str:
        """格式化成本显示"""
        converted_cost = self._convert_currency(cost)
        currency_symbol = "¥" if self.currency_config.get("display_unit", "USD") == "CNY" else "$"
        return f"{currency_symbol}{converted_cost:.2f}"

    @staticmethod
    def format_number(num: int) -> str:
        """格式化数字显示"""
        if num >= 1_000_000:
            return f"{num/1_000_000:.1f}M"
        elif num >= 1_000:
            return f"{num/1_000:.1f}K"
        else:
            return str(num)

    @staticmethod
    def _token_table(title: str, first_column: str) -> Table:
        table = Table(title=title, box=box.ROUNDED, show_header=True, header_style="bold cyan")
        table.add_column(first_column, style="cyan", no_wrap=False, max_width=40)
        table.add_column("输入", style="bright_blue", justify="right", min_width=8)
        table.add_column("输出", style="yellow", justify="right", min_width=8)
        table.add_column("缓存读", style="magenta", justify="right", min_width=8)
        table.add_column("缓存写", style="bright_magenta", justify="right", min_width=8)
        table.add_column("推理", style="orange3", justify="right", min_width=8)
        table.add_column("消息数", style="red", justify="right", min_width=6)
        table.add_column("成本", style="green", justify="right", min_width=8)
        return table

    def _token_row(self, label: str, tokens: TokenBreakdown, messages: int, cost: float) -> List[str]:
        return [
            label,
            self.format_number(tokens.input),
            self.format_number(tokens.output),
            self.format_number(tokens.cache_read),
            self.format_number(tokens.cache_write),
            self.format_number(tokens.reasoning),
            self.format_number(messages),
            self.format_cost(cost),
        ]

    def render(self, export: TokenContributionData, max_days: int = 10, max_models: int = 10) -> None:
        """
        Args:
            max_days: 每日统计显示的最大天数，0表示全部
            max_models: 模型统计显示的最大模型数，0表示全部
        """
        summary = export.summary
        if not export.contributions:
            self.console.print("[red]没有找到任何用量数据[/red]")
            return

        # 1. 总体统计
        total_tokens = TokenBreakdown()
        total_messages = 0
        for c in export.contributions:
            total_tokens = total_tokens + c.token_breakdown
            total_messages += c.messages

        summary_table = Table(title="总体统计", box=box.ROUNDED, show_header=True, header_style="bold cyan")
        summary_table.add_column("指标", style="cyan", no_wrap=True, width=20)
        summary_table.add_column("数值", style="yellow", justify="right", width=24)
        summary_table.add_row("日期范围", f"{export.meta.date_start} ~ {export.meta.date_end}")
        summary_table.add_row("活跃天数", f"{summary.active_days}/{summary.total_days}")
        summary_table.add_row("总Token", f"{summary.total_tokens/1_000_000:.1f}M")
        summary_table.add_row("输入", f"{total_tokens.input/1_000_000:.1f}M")
        summary_table.add_row("输出", f"{total_tokens.output/1_000_000:.1f}M")
        summary_table.add_row("缓存读", f"{total_tokens.cache_read/1_000_000:.1f}M")
        summary_table.add_row("缓存写", f"{total_tokens.cache_write/1_000_000:.1f}M")
        summary_table.add_row("总成本", self.format_cost(summary.total_cost))
        summary_table.add_row("日均成本", self.format_cost(summary.average_per_day))
        summary_table.add_row("单日最高", self.format_cost(summary.max_cost_in_single_day))
        summary_table.add_row("消息数", f"{total_messages:,}")

        self.console.print("\n")
        self.console.print(summary_table)

        # 2. 每日消耗（最近的日期在前）
        days = sorted(export.contributions, key=lambda c: c.date, reverse=True)
        if max_days > 0:
            days = days[:max_days]
        title_suffix = f"(最近{max_days}天)" if max_days > 0 else "(全部)"
        daily_table = self._token_table(f"每日统计 {title_suffix}", "日期")
        daily_table.add_column("强度", style="bright_green", justify="center", min_width=4)
        for c in days:
            daily_table.add_row(*self._token_row(c.date, c.token_breakdown, c.messages, c.cost), "■" * c.intensity)

        self.console.print("\n")
        self.console.print(daily_table)

        # 3. 来源与模型统计
        per_source: Dict[str, Dict] = {}
        per_model: Dict[str, Dict] = {}
        for c in export.contributions:
            for s in c.sources:
                for key, bucket in ((s.source, per_source), (s.model_id, per_model)):
                    entry = bucket.setdefault(key, {"tokens": TokenBreakdown(), "messages": 0, "cost": 0.0})
                    entry["tokens"] = entry["tokens"] + s.tokens
                    entry["messages"] += s.messages
                    entry["cost"] += s.cost

        if len(per_source) >= 2:
            sources_table = self._token_table("来源统计", "来源")
            for name, entry in sorted(per_source.items(), key=lambda x: x[1]["cost"], reverse=True):
                sources_table.add_row(*self._token_row(name, entry["tokens"], entry["messages"], entry["cost"]))
            self.console.print("\n")
            self.console.print(sources_table)

        # 只在有2种或以上模型时显示
        if len(per_model) >= 2:
            title_suffix = f"(前{max_models})" if max_models > 0 else "(全部)"
            models_table = self._token_table(f"模型统计 {title_suffix}", "模型")
            sorted_models = sorted(per_model.items(), key=lambda x: x[1]["cost"], reverse=True)
            if max_models > 0:
                sorted_models = sorted_models[:max_models]
            for name, entry in sorted_models:
                models_table.add_row(*self._token_row(name, entry["tokens"], entry["messages"], entry["cost"]))
            self.console.print("\n")
            self.console.print(models_table)

    def render_resolution(self, model_id: str, resolution: Optional[Resolution]) -> None:
        if resolution is None:
            self.console.print(f"[red]未找到模型 {model_id} 的定价[/red]")
            return

        table = Table(title=f"定价解析: {model_id}", box=box.ROUNDED, show_header=True, header_style="bold cyan")
        table.add_column("项目", style="cyan", no_wrap=True)
        table.add_column("值", style="yellow", justify="right")
        entry = resolution.entry
        table.add_row("匹配条目", resolution.matched_key)
        table.add_row("匹配策略", resolution.strategy.value)
        table.add_row("输入 / 百万Token", self.format_cost(entry.input_cost_per_token * 1_000_000))
        table.add_row("输出 / 百万Token", self.format_cost(entry.output_cost_per_token * 1_000_000))
        table.add_row("缓存读 / 百万Token", self.format_cost(entry.cache_read_input_token_cost * 1_000_000))
        table.add_row("缓存写 / 百万Token", self.format_cost(entry.cache_creation_input_token_cost * 1_000_000))
        self.console.print(table)
