"""
求值队列：按 (文档, 会话) 串行化求值请求。

约束：
- 严格 FIFO；同一上下文任意时刻至多一个“已派发未完成”的请求（队首）；
- watch 注册表条目存在 ⇔ 该请求已派发且未完成，用于保证派发幂等；
- 完成回调以“队首 id 是否匹配”作为守卫，重复/伪触发一律 no-op；
- 慢请求/失败请求会阻塞其后的全部请求（单解释器进程模型的代价）；没有取消与超时。
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Hashable, Optional, Tuple

from repl_eval_runtime.core.contracts import EvaluationRequest, FileWatcher, SessionChannel, WatchHandle

logger = logging.getLogger(__name__)

ContextKey = Tuple[Hashable, Optional[str]]


@dataclass
class EvaluationContext:
    """
    单个 (文档, 会话) 的队列上下文。

    字段：
    - key：(document_id, session_key)
    - channel：该上下文使用的会话通道
    - pending：待处理请求（队首即唯一可派发请求）
    - watches：request_id -> watch 句柄
    - lock：保护 (pending, watches) 这一对状态
    """

    key: ContextKey
    channel: SessionChannel
    pending: Deque[EvaluationRequest] = field(default_factory=deque)
    watches: Dict[str, WatchHandle] = field(default_factory=dict)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def head(self) -> Optional[EvaluationRequest]:
        """当前队首（空队列返回 None）。"""

        return self.pending[0] if self.pending else None


Reconcile = Callable[[EvaluationRequest, "EvaluationQueue"], None]
DebugBlock = Callable[[EvaluationRequest], str]


class EvaluationQueue:
    """
    队列操作（submit / try_dispatch_head / complete_head）。

    说明：
    - 完成信号到达后交给 reconcile 回调处理；由 reconcile 负责在结束时调用 `complete_head()`。
    """

    def __init__(
        self,
        *,
        context: EvaluationContext,
        watcher: FileWatcher,
        reconcile: Reconcile,
        debug_block: Optional[DebugBlock] = None,
    ) -> None:
        """
        参数：
        - context：队列上下文（队列 + watch 注册表）
        - watcher：文件监听协作方
        - reconcile：结果回写入口（签名 `(request, queue) -> None`）
        - debug_block：非 None 时，每次派发前先经通道发送其返回的注释块
        """

        self.context = context
        self._watcher = watcher
        self._reconcile = reconcile
        self._debug_block = debug_block
        self._closed = False

    def submit(self, request: EvaluationRequest) -> str:
        """
        追加到队尾并尝试派发队首；立即返回 request id。

        异常：
        - 注册监听失败（例如没有可用的事件循环）时，请求被移出队列后原样抛出
        """

        ctx = self.context
        with ctx.lock:
            ctx.pending.append(request)
            logger.debug("queued %s on %s (depth=%d)", request.id, ctx.key, len(ctx.pending))
            try:
                self.try_dispatch_head()
            except Exception:
                ctx.pending.remove(request)
                raise
        return request.id

    def try_dispatch_head(self) -> bool:
        """
        幂等派发队首。

        返回：
        - bool：本次确实发送了队首返回 True；队列为空或队首已在途返回 False（shutdown 之后恒为 False）
        """

        ctx = self.context
        with ctx.lock:
            head = ctx.head
            if self._closed or head is None or head.id in ctx.watches:
                return False

            # 先注册监听再发送，避免解释器写得太快而错过写入事件
            ctx.watches[head.id] = self._watcher.watch(
                head.output_path,
                lambda _path, request_id=head.id: self._on_output_ready(request_id),
            )
            try:
                if self._debug_block is not None:
                    ctx.channel.send(self._debug_block(head))
                ctx.channel.send(head.loader_text)
            except Exception:
                # 与“会话已死”等价：请求保持在途，队列停滞，不重试
                logger.error("failed to send %s on %s; queue stalls", head.id, ctx.key, exc_info=True)
                return False
            logger.info("dispatched %s on %s", head.id, ctx.key)
            return True

    def complete_head(self, expected_id: Optional[str] = None) -> Optional[EvaluationRequest]:
        """
        移除队首及其 watch 条目，然后派发新的队首（链式排空）。

        参数：
        - expected_id：若给出且与队首不一致则不做任何事

        返回：
        - 被移除的请求；未移除返回 None
        """

        ctx = self.context
        with ctx.lock:
            head = ctx.head
            if head is None or (expected_id is not None and head.id != expected_id):
                return None
            ctx.pending.popleft()
            handle = ctx.watches.pop(head.id, None)
            if handle is not None:
                self._watcher.unwatch(handle)
            logger.debug("completed %s on %s (remaining=%d)", head.id, ctx.key, len(ctx.pending))
            self.try_dispatch_head()
            return head

    def _on_output_ready(self, request_id: str) -> None:
        """完成信号回调：只处理“仍是队首且已登记在途”的请求。"""

        ctx = self.context
        with ctx.lock:
            head = ctx.head
            if head is None or head.id != request_id or request_id not in ctx.watches:
                logger.debug("ignoring stale completion signal for %s on %s", request_id, ctx.key)
                return
            self._reconcile(head, self)

    def shutdown(self) -> None:
        """取消本上下文全部监听（不会中止解释器中的求值）。"""

        ctx = self.context
        with ctx.lock:
            self._closed = True
            for handle in ctx.watches.values():
                self._watcher.unwatch(handle)
            ctx.watches.clear()

    def pending_ids(self) -> list[str]:
        """返回队列中全部请求 id（队首在前）。"""

        with self.context.lock:
            return [r.id for r in self.context.pending]

    def in_flight_id(self) -> Optional[str]:
        """返回在途请求 id（无则 None）。"""

        ctx = self.context
        with ctx.lock:
            head = ctx.head
            return head.id if head is not None and head.id in ctx.watches else None

