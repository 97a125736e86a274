"""
求值协调器：文档级队列上下文的持有者与对外入口。

说明：
- 上下文按 `(document_id, session_key)` 分配；不同文档/不同会话的队列互相独立，可同时在途；
- 派发是“乐观”的：不检查解释器是否空闲就直接粘贴（解释器自身按输入顺序执行）；
- `evaluate_sync` 是阻塞式辅助入口，绕过队列直接发送并轮询哨兵文件。
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from repl_eval_runtime.config.loader import EvalRuntimeConfig
from repl_eval_runtime.core.completion import PollingFileWatcher, running_loop, wait_for_file_change
from repl_eval_runtime.core.contracts import (
    Document,
    EvaluationRequest,
    FileWatcher,
    LivePosition,
    ResultMode,
    SessionChannel,
)
from repl_eval_runtime.core.eval_queue import ContextKey, EvaluationContext, EvaluationQueue
from repl_eval_runtime.core.reconciler import ResultReconciler, remove_temp_files
from repl_eval_runtime.core.request_builder import RequestBuilder, TempFileAllocator, get_profile

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[Optional[str]], SessionChannel]


class EvaluationCoordinator:
    """
    异步求值协调器。

    约束：
    - `submit()` 不阻塞，立即返回占位文本 `"<prefix> <uuid>"`；
    - 没有取消 API：已派发的请求要么完成，要么永远停滞。
    """

    def __init__(
        self,
        *,
        channel_factory: ChannelFactory,
        config: Optional[EvalRuntimeConfig] = None,
        watcher: Optional[FileWatcher] = None,
        builder: Optional[RequestBuilder] = None,
        reconciler: Optional[ResultReconciler] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        """
        参数：
        - channel_factory：按 session_key 创建会话通道（None 表示隔离求值使用的默认会话）
        - config：运行时配置（None 使用默认值）
        - watcher/builder/reconciler：可注入的协作方（None 时按 config 构建）
        - loop：默认监听器使用的事件循环；None 时取构造时正在运行的 loop。
          绑定 loop 后，`submit()` 可在其它线程或 loop 启动前调用
        """

        self.config = config or EvalRuntimeConfig()
        self._channel_factory = channel_factory
        self._channels: Dict[Optional[str], SessionChannel] = {}
        self.watcher: FileWatcher = watcher or PollingFileWatcher(
            interval_sec=self.config.watch.poll_interval_sec, loop=loop or running_loop()
        )
        tmp_dir = self.config.evaluation.tmp_dir
        self.builder = builder or RequestBuilder(
            profile=get_profile(self.config.interpreter.language),
            allocator=TempFileAllocator(tmp_dir=Path(tmp_dir) if tmp_dir else None),
        )
        self.reconciler = reconciler or ResultReconciler(
            max_line_chars=self.config.result.max_line_chars,
            placeholder=self.config.result.suppressed_placeholder,
            cleanup_temp_files=self.config.evaluation.cleanup_temp_files,
        )
        self._queues: Dict[ContextKey, EvaluationQueue] = {}

    def channel_for(self, session_key: Optional[str]) -> SessionChannel:
        """返回（必要时创建）session_key 对应的会话通道。"""

        channel = self._channels.get(session_key)
        if channel is None:
            channel = self._channel_factory(session_key)
            self._channels[session_key] = channel
        return channel

    def queue_for(self, document: Document, session_key: Optional[str]) -> EvaluationQueue:
        """返回（必要时创建）文档 + 会话对应的队列。"""

        key: ContextKey = (document.document_id, session_key)
        queue = self._queues.get(key)
        if queue is None:
            context = EvaluationContext(key=key, channel=self.channel_for(session_key))
            queue = EvaluationQueue(
                context=context,
                watcher=self.watcher,
                reconcile=self.reconciler.reconcile,
                debug_block=self._debug_block if self.config.evaluation.debug else None,
            )
            self._queues[key] = queue
        return queue

    def submit(
        self,
        *,
        document: Document,
        anchor_start: LivePosition,
        anchor_to: LivePosition,
        source_text: str,
        result_mode: ResultMode | str = ResultMode.VALUE,
        session_key: Optional[str] = None,
        result_is_file: bool = False,
        params: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        提交一次异步求值。

        返回：
        - str：占位文本（例如 `"Executing... 1b9d…"`），供调用方先行显示

        异常：
        - UserError：源码为空等同步可检测的误用
        - RuntimeError：没有绑定也没有正在运行的事件循环（请求不会留在队列中）
        """

        mode = ResultMode.parse(result_mode)
        unit = self.builder.build(source_text=source_text, result_mode=mode, session_key=session_key)
        request = EvaluationRequest(
            id=str(uuid.uuid4()),
            session_key=session_key,
            result_mode=mode,
            source_text=source_text,
            source_path=unit.source_path,
            output_path=unit.output_path,
            loader_text=unit.loader_text,
            document=document,
            anchor_start=anchor_start,
            anchor_to=anchor_to,
            result_is_file=bool(result_is_file),
            params={"result_mode": mode.value, "session": session_key, **dict(params or {})},
        )
        try:
            self.queue_for(document, session_key).submit(request)
        except Exception:
            remove_temp_files(unit.source_path, unit.output_path)
            raise
        return self.placeholder(request.id)

    def placeholder(self, request_id: str) -> str:
        """生成提交后的占位文本。"""

        return f"{self.config.evaluation.placeholder_prefix} {request_id}"

    def evaluate_sync(
        self,
        *,
        source_text: str,
        result_mode: ResultMode | str = ResultMode.VALUE,
        session_key: Optional[str] = None,
        timeout_sec: Optional[float] = None,
    ) -> Optional[str]:
        """
        阻塞式求值：直接发送并轮询哨兵文件（不经过队列）。

        返回：
        - str：已应用行长策略的结果文本
        - None：超时前未观测到写入
        """

        mode = ResultMode.parse(result_mode)
        unit = self.builder.build(source_text=source_text, result_mode=mode, session_key=session_key)
        channel = self.channel_for(session_key)
        if self.config.evaluation.debug:
            channel.send(
                self.builder.debug_block(
                    request_id="sync",
                    params={"result_mode": mode.value, "session": session_key},
                    wrapped_text=unit.wrapped_text,
                )
            )
        channel.send(unit.loader_text)

        wait = self.config.sync_wait
        ok = wait_for_file_change(
            unit.output_path,
            timeout_sec=wait.timeout_sec if timeout_sec is None else timeout_sec,
            interval_sec=wait.poll_interval_sec,
        )
        if not ok:
            logger.warning("synchronous evaluation timed out waiting for %s", unit.output_path)
            return None
        text = self.reconciler.render(self.reconciler.read_output(unit.output_path))
        if self.config.evaluation.cleanup_temp_files:
            remove_temp_files(unit.source_path, unit.output_path)
        return text

    def pending_ids(self, document: Document, session_key: Optional[str] = None) -> list[str]:
        """返回文档 + 会话队列中的请求 id（队首在前）。"""

        queue = self._queues.get((document.document_id, session_key))
        return [] if queue is None else queue.pending_ids()

    def is_idle(self) -> bool:
        """所有队列均为空时返回 True。"""

        return all(not q.pending_ids() for q in self._queues.values())

    async def wait_until_idle(self, *, timeout_sec: Optional[float] = None) -> bool:
        """
        在事件循环中等待所有队列排空（不阻塞线程）。

        返回：
        - bool：排空返回 True；超时返回 False（停滞的队列不会被清理）
        """

        deadline = None if timeout_sec is None else time.monotonic() + float(timeout_sec)
        while not self.is_idle():
            if deadline is not None and time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self.config.watch.poll_interval_sec)
        return True

    def shutdown(self) -> None:
        """取消全部监听（不会中止解释器中的求值）。"""

        for queue in self._queues.values():
            queue.shutdown()

    def _debug_block(self, request: EvaluationRequest) -> str:
        """调试通道：参数 + 生成源码（注释块）。"""

        wrapped = request.source_path.read_text(encoding="utf-8") if request.source_path.exists() else ""
        return self.builder.debug_block(request_id=request.id, params=request.params, wrapped_text=wrapped)
