#!/usr/bin/env python3

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from rich.console import Console

from .config import get_cache_dir, load_currency_config, load_full_config, load_pricing_config, resolve_source_root
from .engine import generate_graph, select_engine
from .errors import UsageCostError
from .merge import ledger_to_export, submission_from_export
from .models import SOURCE_NAMES, TokenContributionData
from .pricing import PricingCatalogLoader, get_resolver
from .report import UsageReport
from .sources import fetch_usage_csv, save_usage_csv
from .store import LedgerStore

logger = logging.getLogger(__name__)
console = Console(stderr=True)


def _add_filter_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--source", dest="sources", action="append", choices=SOURCE_NAMES, help="只统计指定来源，可重复")
    parser.add_argument("--since", help="起始日期 YYYY-MM-DD（含）")
    parser.add_argument("--until", help="结束日期 YYYY-MM-DD（含）")
    parser.add_argument("--year", help="只统计指定年份")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ai-usage-cost", description="统计各AI编程助手的Token用量与成本")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="WARNING", help="日志级别"
    )
    parser.add_argument("--currency", choices=["USD", "CNY"], default=None, help="显示货币")
    parser.add_argument("--usd-to-cny", type=float, default=None, help="美元兑人民币汇率")
    subparsers = parser.add_subparsers(dest="command", required=True)

    graph = subparsers.add_parser("graph", help="生成贡献图数据（JSON）")
    _add_filter_args(graph)
    graph.add_argument("--output", type=Path, help="输出文件，缺省时写到标准输出")

    report = subparsers.add_parser("report", help="在终端显示用量报告")
    _add_filter_args(report)
    report.add_argument("--max-days", type=int, default=10, help="每日统计显示的最大天数，0表示全部")
    report.add_argument("--max-models", type=int, default=10, help="模型统计显示的最大数量，0表示全部")

    merge = subparsers.add_parser("merge", help="把本设备的数据合并进多设备账本")
    _add_filter_args(merge)
    merge.add_argument("--ledger", type=Path, required=True, help="账本文件")
    merge.add_argument("--device-id", required=True, help="本设备的稳定标识")
    merge.add_argument("--input", type=Path, help="使用已有的导出文件，而不是重新解析本地数据")
    merge.add_argument("--output", type=Path, help="合并后重新生成的导出文件")

    pricing = subparsers.add_parser("pricing", help="查看模型的定价解析结果")
    pricing.add_argument("model", help="模型ID")
    pricing.add_argument("--refresh", action="store_true", help="忽略缓存，重新拉取定价目录")

    cursor = subparsers.add_parser("cursor", help="拉取 Cursor 用量CSV到本地缓存")
    cursor.add_argument("--token", help="WorkosCursorSessionToken，缺省读取配置")
    cursor.add_argument("--account", default="active", help="账号名，用于区分缓存文件")

    return parser


def _graph_options(args: argparse.Namespace) -> Dict:
    return {"sources": args.sources, "since": args.since, "until": args.until, "year": args.year}


def _build_export(args: argparse.Namespace, config: Dict) -> TokenContributionData:
    resolver = get_resolver(load_pricing_config(config))
    result = generate_graph(select_engine(config), _graph_options(args), resolver)
    unpriced = result.get("unpricedModels") or []
    if unpriced:
        console.print(f"[yellow]以下模型未找到定价，成本按0计算: {', '.join(unpriced)}[/yellow]")
    return TokenContributionData.from_dict(result["graph"])


def _write_json(data: Dict, output: Optional[Path]) -> None:
    text = json.dumps(data, ensure_ascii=False, indent=2)
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text, encoding="utf-8")
        logger.info(f"已写入 {output}")
    else:
        sys.stdout.write(text + "\n")


def cmd_graph(args: argparse.Namespace, config: Dict, report: UsageReport) -> int:
    export = _build_export(args, config)
    _write_json(export.to_dict(), args.output)
    return 0


def cmd_report(args: argparse.Namespace, config: Dict, report: UsageReport) -> int:
    export = _build_export(args, config)
    report.render(export, max_days=args.max_days, max_models=args.max_models)
    return 0


def cmd_merge(args: argparse.Namespace, config: Dict, report: UsageReport) -> int:
    if args.input:
        export = TokenContributionData.from_dict(json.loads(args.input.read_text(encoding="utf-8")))
    else:
        export = _build_export(args, config)

    submission = submission_from_export(export, args.device_id)
    # 本次解析覆盖的来源都算提交过，没有数据的会从账本中删除本设备的条目
    if not args.input:
        submission = replace(submission, sources=submission.sources | set(args.sources or SOURCE_NAMES))

    ledger = LedgerStore(args.ledger).merge(submission)
    merged_export = ledger_to_export(ledger)
    console.print(
        f"[green]已合并设备 {args.device_id}：账本共 {len(ledger.days)} 天，"
        f"{len(ledger.devices)} 个设备，总成本 {report.format_cost(merged_export.summary.total_cost)}[/green]"
    )
    if args.output:
        _write_json(merged_export.to_dict(), args.output)
    return 0


def cmd_pricing(args: argparse.Namespace, config: Dict, report: UsageReport) -> int:
    pricing_config = load_pricing_config(config)
    if args.refresh:
        PricingCatalogLoader().clear_cache()
    resolver = get_resolver(pricing_config, refresh=args.refresh)
    resolution = resolver.resolve(args.model)
    report.render_resolution(args.model, resolution)
    return 0 if resolution else 1


def cmd_cursor(args: argparse.Namespace, config: Dict, report: UsageReport) -> int:
    cursor_config = config.get("cursor") or {}
    token = args.token or cursor_config.get("session_token")
    if not token:
        console.print("[red]缺少 Cursor 会话令牌，请使用 --token 或在配置中设置 cursor.session_token[/red]")
        return 2
    text = fetch_usage_csv(token, timeout=float(cursor_config.get("fetch_timeout_seconds", 30)))
    path = save_usage_csv(text, resolve_source_root("cursor", config), args.account)
    console.print(f"[green]已保存到 {path}[/green]")
    return 0


COMMANDS = {
    "graph": cmd_graph,
    "report": cmd_report,
    "merge": cmd_merge,
    "pricing": cmd_pricing,
    "cursor": cmd_cursor,
}


def main(argv: Optional[List[str]] = None) -> int:
    """主函数"""
    args = build_parser().parse_args(argv)

    # 设置日志级别
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    config = load_full_config()
    logger.debug(f"缓存目录: {get_cache_dir()}")

    # 如果命令行参数指定了货币单位或汇率，则覆盖配置文件中的设置
    currency_config = load_currency_config(config)
    if args.currency is not None:
        currency_config["display_unit"] = args.currency
    if args.usd_to_cny is not None:
        currency_config["usd_to_cny"] = args.usd_to_cny

    report = UsageReport(currency_config)
    try:
        return COMMANDS[args.command](args, config, report)
    except UsageCostError as e:
        console.print(f"[red]错误: {e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
