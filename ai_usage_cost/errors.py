"""
错误类型

按处理阶段（parse / resolve / aggregate / merge / engine）划分的异常体系。
RecoverableInputError、SourceUnavailableError、ResolutionMiss 属于阶段内错误，
只记录日志不向上抛出；UpstreamFailure、MergeConsistencyViolation、
ProtocolViolation 必须交给直接调用方处理。
"""

from typing import Optional


class UsageCostError(Exception):
    """所有错误的基类，携带失败阶段与输入键"""

    stage = "unknown"

    def __init__(self, message: str, key: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.key = key
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        if self.key:
            return f"[{self.stage}] {self.key}: {self.message}"
        return f"[{self.stage}] {self.message}"


class RecoverableInputError(UsageCostError):
    """单个文件或记录格式错误，跳过即可"""

    stage = "parse"


class CursorCsvError(RecoverableInputError):
    """Cursor CSV 表头不符合约定，整份文档作废"""


class SourceUnavailableError(UsageCostError):
    """数据目录或接口不存在，视为空贡献"""

    stage = "parse"


class ResolutionMiss(UsageCostError):
    """找不到模型定价，成本按0计算"""

    stage = "resolve"


class UpstreamFailure(UsageCostError):
    """定价目录拉取失败且没有可用缓存"""

    stage = "resolve"


class AggregationError(UsageCostError):
    stage = "aggregate"


class MergeConsistencyViolation(UsageCostError):
    """并发合并同一目标，或设备映射无法与汇总计数对齐"""

    stage = "merge"


class ProtocolViolation(UsageCostError):
    """跨进程调用请求/响应非法、超出大小限制或超时"""

    stage = "engine"
