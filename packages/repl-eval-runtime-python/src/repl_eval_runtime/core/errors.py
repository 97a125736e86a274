"""
运行时内部错误分类（异常类型）。

说明：
- 异步求值路径（dispatch/completion/reconcile）上的异常一律在本地吸收并记录日志，不向调用方抛出；
- 下列异常只用于同步入口（提交参数校验、配置加载、会话启动）与测试断言。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


class EvalRuntimeError(Exception):
    """运行时内部错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（CLI 输出 issues 时使用）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(EvalRuntimeError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class UserError(FrameworkError):
    """用户输入/配置导致的错误。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`。

        参数：
        - `message`：可读错误信息
        - `code`：错误码（默认 `USER_ERROR`）
        - `details`：结构化补充信息
        """

        super().__init__(code=code, message=message, details=details or {})


class SessionChannelError(EvalRuntimeError):
    """解释器会话不可用（进程已退出、PTY 已关闭、启动失败等）。"""
