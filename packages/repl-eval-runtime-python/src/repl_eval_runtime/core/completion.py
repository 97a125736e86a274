"""
完成信号：基于文件变更的求值完成检测。

说明：
- 解释器没有结构化的回执通道，求值完成只能通过“结果哨兵文件被写入”来观测；
- `PollingFileWatcher` 在 asyncio 事件循环上轮询 stat 快照（inode+size+mtime_ns），
  快照相对上次触发基线发生变化、且连续两次轮询一致（写入已结束）时回调一次；
- 回调总在事件循环线程执行，与编辑器侧的直接调用天然串行；
- 解释器挂死时永远不会回调（队列停滞），本模块不做超时。
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from repl_eval_runtime.core.contracts import OutputReadyCallback

logger = logging.getLogger(__name__)

Snapshot = Optional[Tuple[int, int, int]]


def stat_snapshot(path: Path) -> Snapshot:
    """返回文件快照 `(st_ino, st_size, st_mtime_ns)`；不存在时返回 None。"""

    try:
        st = os.stat(path)
    except OSError:
        return None
    return (int(st.st_ino), int(st.st_size), int(st.st_mtime_ns))


def running_loop() -> Optional[asyncio.AbstractEventLoop]:
    """返回当前线程正在运行的事件循环；没有时返回 None。"""

    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


@dataclass
class PollingWatch:
    """轮询监听句柄（内存态）。"""

    path: Path
    on_change: OutputReadyCallback
    baseline: Snapshot
    last_seen: Snapshot
    fired: int = 0
    active: bool = True
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class PollingFileWatcher:
    """
    asyncio 轮询式文件监听器（`FileWatcher` 实现）。

    约束：
    - 构造时未传 loop 时，`watch()` 必须在事件循环线程调用；
    - 传入 loop 后可在任意线程（或 loop 启动前）调用，轮询经 `call_soon_threadsafe` 交回 loop；
    - 回调异常只记录日志，不影响其它监听。
    """

    def __init__(self, *, interval_sec: float = 0.1, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """
        参数：
        - interval_sec：轮询间隔（秒，必须 > 0）
        - loop：事件循环；None 表示在 `watch()` 时取当前运行中的 loop
        """

        if interval_sec <= 0:
            raise ValueError("interval_sec must be > 0")
        self.interval_sec = float(interval_sec)
        self._loop = loop
        self._watches: list[PollingWatch] = []

    def watch(self, path: Path, on_change: OutputReadyCallback) -> PollingWatch:
        """注册监听并返回句柄；基线为注册时刻的快照。"""

        loop = self._loop or asyncio.get_running_loop()
        snap = stat_snapshot(Path(path))
        handle = PollingWatch(path=Path(path), on_change=on_change, baseline=snap, last_seen=snap)
        if running_loop() is loop:
            self._schedule(loop, handle)
        else:
            loop.call_soon_threadsafe(self._schedule, loop, handle)
        self._watches.append(handle)
        logger.debug("watching %s", handle.path)
        return handle

    def unwatch(self, handle: PollingWatch) -> None:
        """取消监听（重复调用为 no-op）。"""

        if not handle.active:
            return
        handle.active = False
        if handle.timer is not None:
            handle.timer.cancel()
            handle.timer = None
        try:
            self._watches.remove(handle)
        except ValueError:
            pass
        logger.debug("unwatched %s", handle.path)

    def unwatch_all(self) -> None:
        """取消全部监听（关闭时清理）。"""

        for handle in list(self._watches):
            self.unwatch(handle)

    @property
    def active_count(self) -> int:
        """当前活跃监听数量。"""

        return len(self._watches)

    def _schedule(self, loop: asyncio.AbstractEventLoop, handle: PollingWatch) -> None:
        """预约首次轮询（在 loop 线程执行）；句柄已取消时不做任何事。"""

        if handle.active:
            handle.timer = loop.call_later(self.interval_sec, self._poll, loop, handle)

    def _poll(self, loop: asyncio.AbstractEventLoop, handle: PollingWatch) -> None:
        """单次轮询：必要时触发回调，并在仍活跃时预约下一次轮询。"""

        if not handle.active:
            return
        current = stat_snapshot(handle.path)
        stable = current == handle.last_seen
        handle.last_seen = current
        handle.timer = loop.call_later(self.interval_sec, self._poll, loop, handle)

        if current is None or current == handle.baseline or not stable:
            return
        handle.baseline = current
        handle.fired += 1
        try:
            handle.on_change(handle.path)
        except Exception:
            logger.warning("output-ready callback failed for %s", handle.path, exc_info=True)


def wait_for_file_change(
    path: Path,
    *,
    timeout_sec: float = 10.0,
    interval_sec: float = 0.1,
    baseline: Snapshot = None,
) -> bool:
    """
    同步等待文件被写入（阻塞式轮询，仅供需要阻塞语义的调用方）。

    参数：
    - path：哨兵文件
    - timeout_sec：总超时（秒）
    - interval_sec：轮询间隔（秒）
    - baseline：起始快照；None 表示“文件尚不存在”

    返回：
    - bool：在超时前观测到写入且已稳定返回 True，否则 False
    """

    if interval_sec <= 0:
        raise ValueError("interval_sec must be > 0")
    deadline = time.monotonic() + max(0.0, float(timeout_sec))
    last_seen = stat_snapshot(Path(path))
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        time.sleep(min(interval_sec, remaining))
        current = stat_snapshot(Path(path))
        if current is not None and current != baseline and current == last_seen:
            return True
        last_seen = current
