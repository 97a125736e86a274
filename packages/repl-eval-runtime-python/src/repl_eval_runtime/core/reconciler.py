"""
结果回写：把已完成求值的输出应用回原文档锚点。

流程（针对当前队首）：
1) 读取哨兵文件全文；
2) 锚点退化（start == to）或该处已不再是源码块 → 跳过插入，但仍推进队列；
3) 任一行超过阈值 → 整体替换为占位文本；
4) 以“覆盖已有结果”的语义写入；
5) 文件型结果只刷新内联渲染，不插入文本；
6) 调用 `complete_head()`。

约束：
- 位置完全由文档的 live position 维护，本模块不计算 offset；
- 所有可检测的异常都在本地吸收（记录日志后继续），不得让队列卡在过期目标上。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from repl_eval_runtime.core.contracts import EvaluationRequest

if TYPE_CHECKING:
    from repl_eval_runtime.core.eval_queue import EvaluationQueue

logger = logging.getLogger(__name__)

MAX_LINE_CHARS = 12000
SUPPRESSED_PLACEHOLDER = "Output suppressed (line too long)"


def apply_size_policy(text: str, *, max_line_chars: int = MAX_LINE_CHARS, placeholder: str = SUPPRESSED_PLACEHOLDER) -> str:
    """任一行长度超过 max_line_chars 时返回占位文本，否则原样返回。"""

    if any(len(line) > max_line_chars for line in text.splitlines()):
        return placeholder
    return text


class ResultReconciler:
    """结果回写器。"""

    def __init__(
        self,
        *,
        max_line_chars: int = MAX_LINE_CHARS,
        placeholder: str = SUPPRESSED_PLACEHOLDER,
        cleanup_temp_files: bool = False,
    ) -> None:
        """
        参数：
        - max_line_chars：单行长度阈值
        - placeholder：超长时的替换文本
        - cleanup_temp_files：回写后删除该请求的临时源码文件与哨兵文件
        """

        self.max_line_chars = int(max_line_chars)
        self.placeholder = placeholder
        self.cleanup_temp_files = bool(cleanup_temp_files)

    def read_output(self, path: Path) -> str:
        """读取哨兵文件全文，并去掉末尾换行（`"2\\n"` → `"2"`）。"""

        text = Path(path).read_text(encoding="utf-8", errors="replace")
        return text.rstrip("\r\n")

    def render(self, text: str) -> str:
        """应用行长策略。"""

        return apply_size_policy(text, max_line_chars=self.max_line_chars, placeholder=self.placeholder)

    def anchor_is_valid(self, request: EvaluationRequest) -> bool:
        """锚点未退化且仍指向源码块。"""

        doc, start, end = request.document, request.anchor_start, request.anchor_to
        if doc is None or start is None or end is None:
            return False
        if start.position == end.position:
            return False
        return bool(doc.is_source_block_at(start))

    def reconcile(self, request: EvaluationRequest, queue: "EvaluationQueue") -> None:
        """处理队首请求的完成信号；无论成败都会推进队列。"""

        try:
            self._apply(request)
        except Exception:
            logger.warning("failed to apply result of %s; skipping", request.id, exc_info=True)
        finally:
            if self.cleanup_temp_files:
                self._cleanup(request)
            queue.complete_head(request.id)

    def _apply(self, request: EvaluationRequest) -> None:
        """读取输出并写入文档（步骤 1~5）。"""

        try:
            raw = self.read_output(request.output_path)
        except OSError:
            logger.warning("cannot read output of %s at %s", request.id, request.output_path, exc_info=True)
            return

        if not self.anchor_is_valid(request):
            logger.info("target of %s is stale; dropping result", request.id)
            return

        doc, start, end = request.document, request.anchor_start, request.anchor_to
        assert doc is not None and start is not None and end is not None
        if request.result_is_file:
            doc.refresh_inline_artifacts(start, end)
            return
        doc.replace_result(start, end, self.render(raw))
        logger.debug("applied result of %s", request.id)

    def _cleanup(self, request: EvaluationRequest) -> None:
        """best-effort 删除该请求的临时文件。"""

        remove_temp_files(request.source_path, request.output_path)


def remove_temp_files(*paths: Path) -> None:
    """best-effort 删除临时文件：失败只记录日志。"""

    for path in paths:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError:
            logger.debug("cannot remove %s", path, exc_info=True)
