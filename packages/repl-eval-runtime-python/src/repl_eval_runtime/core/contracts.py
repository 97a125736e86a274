"""
核心契约：求值请求数据模型与外部协作方协议。

说明：
- 文档模型、解释器会话、文件监听均为外部协作方，本模块只定义最小方法集；
- 位置一律使用文档提供的 live position 句柄，核心逻辑不自行计算 offset。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Optional, Protocol, runtime_checkable


class ResultMode(str, Enum):
    """结果捕获模式：最终表达式的值，或全部 stdout 文本。"""

    VALUE = "value"
    OUTPUT = "output"

    @classmethod
    def parse(cls, raw: Any) -> "ResultMode":
        """
        把字符串/枚举解析为 `ResultMode`。

        异常：
        - ValueError：未知取值
        """

        if isinstance(raw, ResultMode):
            return raw
        value = str(raw or "").strip().lower()
        for mode in cls:
            if mode.value == value:
                return mode
        raise ValueError(f"result mode must be one of: value|output; got: {raw!r}")


@runtime_checkable
class LivePosition(Protocol):
    """文档内可随编辑自动调整的位置句柄。"""

    @property
    def position(self) -> int:
        """当前位置（由文档维护；核心只做相等比较）。"""

        ...


@runtime_checkable
class Document(Protocol):
    """
    文档协作方（编辑器 buffer 的最小抽象）。

    约束：
    - `replace_result` 必须采用“覆盖已有结果”语义，而不是追加；
    - 只允许修改锚点处的结果区域。
    """

    @property
    def document_id(self) -> Hashable:
        """文档标识（用于按文档分配队列上下文）。"""

        ...

    def is_source_block_at(self, start: LivePosition) -> bool:
        """判断 start 处是否仍然是一个源码块。"""

        ...

    def replace_result(self, start: LivePosition, end: LivePosition, text: str) -> None:
        """在锚点对应的源码块之后写入结果（已存在则覆盖）。"""

        ...

    def refresh_inline_artifacts(self, start: LivePosition, end: LivePosition) -> None:
        """刷新文档内联渲染的产物（例如图片）。"""

        ...


@runtime_checkable
class SessionChannel(Protocol):
    """单向文本注入通道：无返回值、无确认。"""

    def send(self, text: str) -> None:
        """把 text 粘贴到交互式会话。"""

        ...


@runtime_checkable
class WatchHandle(Protocol):
    """文件监听句柄（由 `FileWatcher.watch` 返回）。"""

    @property
    def path(self) -> Path:
        """被监听的文件路径。"""

        ...


OutputReadyCallback = Callable[[Path], None]


@runtime_checkable
class FileWatcher(Protocol):
    """文件变更监听协作方。"""

    def watch(self, path: Path, on_change: OutputReadyCallback) -> WatchHandle:
        """注册监听：每次写入事件回调一次。"""

        ...

    def unwatch(self, handle: WatchHandle) -> None:
        """取消监听（重复取消为 no-op）。"""

        ...


@dataclass
class EvaluationRequest:
    """
    一次求值请求（跨异步边界以 id 关联）。

    字段：
    - id：UUID 字符串
    - session_key：目标会话；None 表示不使用会话（隔离作用域）
    - result_mode：结果捕获模式
    - source_text：待求值源码（变量替换已完成）
    - source_path/output_path：包装后源码文件与结果哨兵文件
    - loader_text：经会话通道发送的加载片段
    - document/anchor_start/anchor_to：所属文档与 live 锚点（同步求值时为 None）
    - result_is_file：结果为文件型产物时只刷新内联渲染，不插入文本
    - params：调试通道回显用的参数
    """

    id: str
    session_key: Optional[str]
    result_mode: ResultMode
    source_text: str
    source_path: Path
    output_path: Path
    loader_text: str
    document: Optional[Document] = None
    anchor_start: Optional[LivePosition] = None
    anchor_to: Optional[LivePosition] = None
    result_is_file: bool = False
    params: Dict[str, Any] = field(default_factory=dict)
