"""
计算引擎

重计算部分（解析与生成图表数据）通过统一接口调用，有两种实现：
- LocalEngine: 在当前进程内直接计算
- SubprocessEngine: 启动 ``python -m ai_usage_cost.runner`` 子进程，一次请求一次响应，
  限制载荷大小与等待时间

两种实现的输入输出都是可JSON序列化的字典，调用方不需要知道实际使用哪一种。
"""

import json
import logging
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .analyzer import UsageAnalyzer
from .billing import price_messages
from .config import load_full_config, load_pricing_config
from .errors import ProtocolViolation
from .models import UnifiedMessage
from .pricing import DEFAULT_PROVIDER_PREFIXES, PricingResolver, get_resolver, parse_catalog
from .sources import parse_local_sources

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAYLOAD_BYTES = 64 * 1024 * 1024
DEFAULT_TIMEOUT_SECONDS = 300


def _parse_local_sources(args: Dict[str, Any], config: Dict) -> Dict[str, Any]:
    parsed = parse_local_sources(
        sources=args.get("sources"),
        since=args.get("since"),
        until=args.get("until"),
        year=args.get("year"),
        config=config,
    )
    return {
        "messages": [m.to_dict() for m in parsed.messages],
        "counts": parsed.counts,
        "elapsedMs": parsed.elapsed_ms,
    }


def _finalize_graph(args: Dict[str, Any], config: Dict) -> Dict[str, Any]:
    try:
        messages = [UnifiedMessage.from_dict(m) for m in args.get("messages") or []]
    except (AttributeError, TypeError, ValueError) as e:
        raise ProtocolViolation(f"消息格式不正确: {e}", key="finalizeGraph") from e

    catalog = args.get("catalog")
    if catalog is not None and not isinstance(catalog, dict):
        raise ProtocolViolation("catalog 必须是JSON对象", key="finalizeGraph")
    if catalog is not None:
        pricing_config = load_pricing_config(config)
        resolver = PricingResolver(
            parse_catalog(catalog),
            pricing_config.get("provider_prefixes") or DEFAULT_PROVIDER_PREFIXES,
        )
    else:
        resolver = get_resolver(load_pricing_config(config))

    priced, report = price_messages(messages, resolver)
    analyzer = UsageAnalyzer().fold(priced)
    kwargs = {"generated_at": args.get("generatedAt")}
    if args.get("version"):
        kwargs["version"] = args["version"]
    return {
        "graph": analyzer.build_export(**kwargs).to_dict(),
        "unpricedModels": sorted(report.misses),
    }


METHODS: Dict[str, Callable[[Dict[str, Any], Dict], Dict[str, Any]]] = {
    "parseLocalSources": _parse_local_sources,
    "finalizeGraph": _finalize_graph,
}


def run_method(method: str, args: Dict[str, Any], config: Optional[Dict] = None) -> Dict[str, Any]:
    if method not in METHODS:
        raise ProtocolViolation("未知的方法", key=method)
    if not isinstance(args, dict):
        raise ProtocolViolation("args 必须是JSON对象", key=method)
    return METHODS[method](args, config if config is not None else load_full_config())


class UsageEngine:
    """计算引擎接口"""

    name = ""

    def parse_local_sources(self, options: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def finalize_graph(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class LocalEngine(UsageEngine):
    name = "local"

    def __init__(self, config: Optional[Dict] = None):
        self.config = config

    def parse_local_sources(self, options: Dict[str, Any]) -> Dict[str, Any]:
        return run_method("parseLocalSources", options, self.config)

    def finalize_graph(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return run_method("finalizeGraph", payload, self.config)


class SubprocessEngine(UsageEngine):
    """通过子进程调用 runner，请求写入临时文件，结果从标准输出读取"""

    name = "subprocess"

    def __init__(
        self,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        python: Optional[str] = None,
    ):
        self.max_payload_bytes = max_payload_bytes
        self.timeout = timeout
        self.python = python or sys.executable

    def _call(self, method: str, args: Dict[str, Any]) -> Dict[str, Any]:
        request = json.dumps({"method": method, "args": args}, ensure_ascii=False).encode("utf-8")
        if len(request) > self.max_payload_bytes:
            raise ProtocolViolation(f"请求大小 {len(request)} 超出限制 {self.max_payload_bytes}", key=method)

        with tempfile.TemporaryDirectory(prefix="ai-usage-cost-") as tmp_dir:
            request_path = Path(tmp_dir) / "request.json"
            request_path.write_bytes(request)
            try:
                completed = subprocess.run(
                    [self.python, "-m", "ai_usage_cost.runner", str(request_path)],
                    capture_output=True,
                    timeout=self.timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as e:
                raise ProtocolViolation(f"子进程超过 {self.timeout}s 未返回", key=method) from e
            except OSError as e:
                raise ProtocolViolation(f"无法启动子进程: {e}", key=method) from e

        if len(completed.stdout) > self.max_payload_bytes:
            raise ProtocolViolation(f"响应大小 {len(completed.stdout)} 超出限制 {self.max_payload_bytes}", key=method)

        if completed.returncode != 0:
            raise ProtocolViolation(self._describe_failure(completed), key=method)

        try:
            result = json.loads(completed.stdout)
        except ValueError as e:
            raise ProtocolViolation("子进程输出不是合法JSON", key=method) from e
        if not isinstance(result, dict):
            raise ProtocolViolation("子进程输出不是JSON对象", key=method)
        if "error" in result:
            raise ProtocolViolation(f"{result['error']}: {result.get('detail', '')}", key=method)
        return result

    @staticmethod
    def _describe_failure(completed: subprocess.CompletedProcess) -> str:
        stderr = completed.stderr.decode("utf-8", errors="replace").strip()
        # 日志也写在标准错误上，结构化错误总在最后一行
        last_line = stderr.splitlines()[-1] if stderr else ""
        try:
            error = json.loads(last_line)
        except ValueError:
            return f"子进程退出码 {completed.returncode}: {stderr[-500:]}"
        if isinstance(error, dict) and "error" in error:
            return f"{error['error']}: {error.get('detail', '')}"
        return f"子进程退出码 {completed.returncode}"

    def parse_local_sources(self, options: Dict[str, Any]) -> Dict[str, Any]:
        return self._call("parseLocalSources", options)

    def finalize_graph(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._call("finalizeGraph", payload)


def select_engine(config: Optional[Dict] = None) -> UsageEngine:
    """启动时根据配置选择引擎"""
    config = config if config is not None else load_full_config()
    engine_config = config.get("engine") or {}
    mode = engine_config.get("mode", "local")

    if mode == "subprocess":
        return SubprocessEngine(
            max_payload_bytes=int(engine_config.get("max_payload_bytes", DEFAULT_MAX_PAYLOAD_BYTES)),
            timeout=float(engine_config.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
        )
    if mode != "local":
        logger.warning(f"未知的引擎模式 {mode}，使用本地引擎")
    return LocalEngine(config)


def generate_graph(engine: UsageEngine, options: Dict[str, Any], resolver: Optional[PricingResolver] = None) -> Dict[str, Any]:
    """解析、定价、汇总一条龙；定价目录在调用方进程内加载后随请求传给引擎"""
    parsed = engine.parse_local_sources(options)
    payload: Dict[str, Any] = {"messages": parsed.get("messages") or []}
    if resolver is not None:
        payload["catalog"] = {model_id: entry.to_dict() for model_id, entry in resolver.catalog.items()}
    result = engine.finalize_graph(payload)
    result["counts"] = parsed.get("counts") or {}
    return result
