"""
发音评测引擎 - 异常定义

所有对外可见的错误都继承自 ScoringError。
Provider 级错误只在 orchestrator 内部被记录，不会单独抛给调用方。
"""
from typing import Any


class ScoringError(Exception):
    """评测引擎基础异常"""


class InvalidInput(ScoringError):
    """输入不合法（空音频 / 空目标句子），在调用任何 provider 之前抛出"""


class ProviderError(ScoringError):
    """单个 provider 的失败，retryable 决定是否值得在退避后重试"""

    retryable = True

    def __init__(self, provider: str, message: str, retryable: bool | None = None) -> None:
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class ProviderUnavailable(ProviderError):
    """未配置凭证、SDK 缺失或服务不可达，从不重试"""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(provider, message, retryable=False)


class ProviderTimeout(ProviderError):
    """超出该 provider 自己的超时时间"""


class ProviderInvalidResponse(ProviderError):
    """返回内容无法解析或缺少必需字段"""


class AllProvidersFailed(ScoringError):
    """
    所有 provider（包括 Local 兜底）都失败

    outcomes 记录每个尝试过的 provider 及其结果，调用方据此决定是否重试。
    """

    def __init__(self, outcomes: list[Any]) -> None:
        names = ", ".join(
            f"{o.provider}={type(o.error).__name__ if o.error else 'ok'}" for o in outcomes
        )
        super().__init__(f"所有 provider 均失败: {names}")
        self.outcomes = outcomes


class InvalidFusedResult(ScoringError):
    """融合结果违反不变量，属于内部缺陷，不做静默修正"""
