"""
repl-eval-runtime：在常驻交互式解释器会话中异步求值文档代码块，并把结果回写到文档。
"""

from __future__ import annotations

from repl_eval_runtime.config.loader import EvalRuntimeConfig, load_config
from repl_eval_runtime.core.contracts import EvaluationRequest, ResultMode
from repl_eval_runtime.core.coordinator import EvaluationCoordinator

__version__ = "0.1.0"

__all__ = [
    "EvalRuntimeConfig",
    "EvaluationCoordinator",
    "EvaluationRequest",
    "ResultMode",
    "__version__",
    "load_config",
]
