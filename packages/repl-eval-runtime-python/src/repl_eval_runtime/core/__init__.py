"""求值协调核心（队列 + 完成信号 + 结果回写 + 请求构建）。"""

from __future__ import annotations

from repl_eval_runtime.core.completion import PollingFileWatcher, wait_for_file_change
from repl_eval_runtime.core.contracts import (
    Document,
    EvaluationRequest,
    FileWatcher,
    LivePosition,
    ResultMode,
    SessionChannel,
)
from repl_eval_runtime.core.coordinator import EvaluationCoordinator
from repl_eval_runtime.core.eval_queue import EvaluationContext, EvaluationQueue
from repl_eval_runtime.core.reconciler import SUPPRESSED_PLACEHOLDER, ResultReconciler, apply_size_policy
from repl_eval_runtime.core.request_builder import RequestBuilder, get_profile

__all__ = [
    "Document",
    "EvaluationContext",
    "EvaluationCoordinator",
    "EvaluationQueue",
    "EvaluationRequest",
    "FileWatcher",
    "LivePosition",
    "PollingFileWatcher",
    "RequestBuilder",
    "ResultMode",
    "ResultReconciler",
    "SUPPRESSED_PLACEHOLDER",
    "SessionChannel",
    "apply_size_policy",
    "get_profile",
    "wait_for_file_change",
]
