from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest


@dataclass
class ManualHandle:
    """手动触发的监听句柄。"""

    path: Path
    on_change: Callable[[Path], None]
    active: bool = True


class ManualWatcher:
    """测试用 FileWatcher：只在 `fire()` 时回调。"""

    def __init__(self) -> None:
        self.handles: List[ManualHandle] = []
        self.watch_calls = 0

    def watch(self, path: Path, on_change: Callable[[Path], None]) -> ManualHandle:
        self.watch_calls += 1
        handle = ManualHandle(path=Path(path), on_change=on_change)
        self.handles.append(handle)
        return handle

    def unwatch(self, handle: ManualHandle) -> None:
        handle.active = False
        if handle in self.handles:
            self.handles.remove(handle)

    def fire(self, path: Optional[Path] = None) -> int:
        """触发匹配 path 的全部活跃监听；返回触发次数。"""

        fired = 0
        for handle in list(self.handles):
            if path is None or handle.path == Path(path):
                fired += 1
                handle.on_change(handle.path)
        return fired

    def drain(self, limit: int = 100) -> None:
        """反复触发直到没有活跃监听（链式派发的请求会依次完成）。"""

        for _ in range(limit):
            if not self.handles:
                return
            self.fire()
        raise AssertionError("watcher did not drain")


class RecordingChannel:
    """只记录发送内容的会话通道（可模拟发送失败）。"""

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: List[str] = []
        self.fail = fail

    def send(self, text: str) -> None:
        if self.fail:
            raise OSError("pty closed")
        self.sent.append(text)


class PythonExecChannel:
    """进程内 Python “解释器”：在独立命名空间中直接 exec 粘贴的文本。"""

    def __init__(self) -> None:
        self.namespace: Dict[str, Any] = {"__name__": "__main__"}
        self.sent: List[str] = []

    def send(self, text: str) -> None:
        self.sent.append(text)
        exec(text, self.namespace)  # noqa: S102


class PythonExecChannels:
    """按 session_key 缓存 `PythonExecChannel`（coordinator 的 channel_factory）。"""

    def __init__(self) -> None:
        self.by_key: Dict[Optional[str], PythonExecChannel] = {}

    def __call__(self, session_key: Optional[str]) -> PythonExecChannel:
        return self.by_key.setdefault(session_key, PythonExecChannel())


@pytest.fixture
def manual_watcher() -> ManualWatcher:
    return ManualWatcher()


@pytest.fixture
def python_channels() -> PythonExecChannels:
    return PythonExecChannels()


@pytest.fixture
def make_recording_channel() -> Callable[..., RecordingChannel]:
    return RecordingChannel
