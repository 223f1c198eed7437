"""
子进程入口: python -m ai_usage_cost.runner <请求文件>

请求文件内容为 {"method": ..., "args": {...}}。成功时把结果JSON写到标准输出，
失败时把 {"error", "detail"} 写到标准错误并以非0退出。
"""

import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .engine import run_method
from .errors import UsageCostError

logger = logging.getLogger(__name__)


def _fail(error: str, detail: str, **extra) -> int:
    payload = {"error": error, "detail": detail}
    payload.update(extra)
    sys.stderr.write(json.dumps(payload, ensure_ascii=False) + "\n")
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        return _fail("usage", "python -m ai_usage_cost.runner <request.json>")

    try:
        request = json.loads(Path(argv[0]).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        return _fail("invalid_request", str(e))
    if not isinstance(request, dict) or not isinstance(request.get("method"), str):
        return _fail("invalid_request", "请求必须包含 method")

    try:
        result = run_method(request["method"], request.get("args") or {})
    except UsageCostError as e:
        return _fail(type(e).__name__, e.message, stage=e.stage, key=e.key)
    except Exception as e:
        logger.exception(f"执行 {request['method']} 失败")
        return _fail("internal", repr(e), stage="engine", key=request["method"])

    sys.stdout.write(json.dumps(result, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    sys.exit(main())
