"""
解释器会话（PTY-backed）。

设计目标：
- 每个 session 名对应一个常驻交互式解释器进程（Julia/Python REPL），通过 PTY 注入文本；
- 通道是单向的：写入后不等待确认，回显只用于日志与排障；
- 可选挂接到 asyncio 事件循环，持续排空 PTY 输出到有界 transcript，避免解释器因输出缓冲写满而阻塞。

说明：
- 本实现面向 macOS/Linux（不考虑 Windows）。
- PTY 输出为 stdout/stderr 合流。
"""

from __future__ import annotations

import asyncio
import logging
import os
import pty
import select
import signal
import subprocess
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Mapping, Optional, Sequence

from repl_eval_runtime.core.errors import SessionChannelError

logger = logging.getLogger(__name__)

TRANSCRIPT_MAX_CHUNKS = 256


@dataclass
class InterpreterSession:
    """解释器进程会话（PTY 模式）。"""

    name: str
    proc: subprocess.Popen[bytes]
    master_fd: int
    created_at_ms: int
    transcript: Deque[str] = field(default_factory=lambda: deque(maxlen=TRANSCRIPT_MAX_CHUNKS))


@dataclass
class SessionWriteResult:
    """write 结果（结构化）。"""

    echo: str
    exit_code: Optional[int]
    running: bool


class InterpreterSessionManager:
    """
    解释器会话管理器。

    说明：
    - session 以名字寻址（与文档中的 session key 一一对应）；
    - 仅保存在内存中（不落盘）。
    """

    def __init__(self, *, argv: Sequence[str], cwd: Path, env: Optional[Mapping[str, str]] = None) -> None:
        """
        参数：
        - argv：启动解释器的 argv（每个 session 相同）
        - cwd：解释器工作目录
        - env：环境变量（覆盖父进程同名项）
        """

        if not argv:
            raise ValueError("argv must not be empty")
        self._argv = [str(a) for a in argv]
        self._cwd = Path(cwd)
        self._env = dict(env) if env else None
        self._sessions: dict[str, InterpreterSession] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def attach_to_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """挂接事件循环：已有与后续 session 的 PTY 输出都由 loop reader 持续排空。"""

        self._loop = loop
        for session in self._sessions.values():
            loop.add_reader(session.master_fd, self._drain, session.name)

    def spawn(self, name: str) -> InterpreterSession:
        """
        启动一个新的解释器 session。

        异常：
        - ValueError：名字已被占用或 cwd 不存在
        - SessionChannelError：进程启动失败
        """

        if name in self._sessions:
            raise ValueError(f"session already exists: {name}")
        if not self._cwd.exists() or not self._cwd.is_dir():
            raise ValueError("cwd must be an existing directory")

        master_fd, slave_fd = pty.openpty()
        merged_env = dict(os.environ)
        if self._env:
            merged_env.update({str(k): str(v) for k, v in self._env.items()})

        try:
            proc = subprocess.Popen(  # noqa: S603
                self._argv,
                cwd=str(self._cwd),
                env=merged_env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                close_fds=True,
                start_new_session=True,
            )
        except Exception as exc:
            os.close(master_fd)
            os.close(slave_fd)
            raise SessionChannelError(f"failed to start interpreter {self._argv[0]!r}: {exc}") from exc
        os.close(slave_fd)

        session = InterpreterSession(name=name, proc=proc, master_fd=master_fd, created_at_ms=int(time.time() * 1000))
        self._sessions[name] = session
        if self._loop is not None:
            self._loop.add_reader(master_fd, self._drain, name)
        logger.info("started interpreter session %r (pid=%s)", name, proc.pid)
        return session

    def get_or_spawn(self, name: str) -> InterpreterSession:
        """返回已有 session；不存在（或进程已退出）时重新启动。"""

        session = self._sessions.get(name)
        if session is not None and session.proc.poll() is None:
            return session
        if session is not None:
            self._cleanup_session(name)
        return self.spawn(name)

    def has(self, name: str) -> bool:
        """判断 session 是否存在（仍由本 manager 持有）。"""

        return name in self._sessions

    def transcript(self, name: str) -> str:
        """返回 session 最近的回显文本（有界）。"""

        session = self._sessions.get(name)
        return "" if session is None else "".join(session.transcript)

    def write(self, name: str, *, chars: str, yield_time_ms: int = 50) -> SessionWriteResult:
        """
        向 session 写入 chars，并在 yield_time_ms 内读取可用回显。

        异常：
        - KeyError：session 不存在
        - SessionChannelError：写入失败（PTY 已关闭）
        """

        if name not in self._sessions:
            raise KeyError("session not found")
        if yield_time_ms < 0:
            raise ValueError("yield_time_ms must be >= 0")

        session = self._sessions[name]
        data = chars.encode("utf-8", errors="replace")
        try:
            while data:
                written = os.write(session.master_fd, data)
                data = data[written:]
        except OSError as exc:
            self._cleanup_session(name)
            raise SessionChannelError(f"write to session {name!r} failed: {exc}") from exc

        echo = ""
        if self._loop is None:
            echo = self._read_available(session, deadline=time.monotonic() + yield_time_ms / 1000.0)

        running = session.proc.poll() is None
        exit_code: Optional[int] = None
        if not running:
            exit_code = session.proc.returncode
            self._cleanup_session(name)
        return SessionWriteResult(echo=echo, exit_code=exit_code, running=running)

    def close(self, name: str) -> None:
        """关闭 session（best-effort：按进程组 terminate 并清理资源）。"""

        session = self._sessions.get(name)
        if session is None:
            return
        pid = int(getattr(session.proc, "pid", 0) or 0)
        try:
            if pid > 0:
                os.killpg(pid, signal.SIGTERM)
            else:
                session.proc.terminate()
        except OSError:
            logger.debug("terminate session %r failed", name, exc_info=True)
        self._cleanup_session(name)

    def close_all(self) -> None:
        """关闭所有 session。"""

        for name in list(self._sessions.keys()):
            self.close(name)

    def _read_available(self, session: InterpreterSession, *, deadline: float) -> str:
        """轮询读取直到超时或无数据可读。"""

        chunks: list[bytes] = []
        while True:
            timeout = max(0.0, deadline - time.monotonic())
            if timeout <= 0:
                break
            rlist, _, _ = select.select([session.master_fd], [], [], timeout)
            if not rlist:
                break
            try:
                b = os.read(session.master_fd, 4096)
            except OSError:
                break
            if not b:
                break
            chunks.append(b)
        text = b"".join(chunks).decode("utf-8", errors="replace")
        if text:
            session.transcript.append(text)
        return text

    def _drain(self, name: str) -> None:
        """loop reader 回调：读出一块回显写入 transcript。"""

        session = self._sessions.get(name)
        if session is None:
            return
        try:
            b = os.read(session.master_fd, 4096)
        except OSError:
            b = b""
        if not b:
            logger.warning("interpreter session %r closed its terminal", name)
            self._cleanup_session(name)
            return
        session.transcript.append(b.decode("utf-8", errors="replace"))

    def _cleanup_session(self, name: str) -> None:
        """清理 session 资源（移除 reader、关闭 master fd 并从内存移除）。"""

        session = self._sessions.pop(name, None)
        if session is None:
            return
        if self._loop is not None and not self._loop.is_closed():
            self._loop.remove_reader(session.master_fd)
        try:
            os.close(session.master_fd)
        except OSError:
            pass


class PtySessionChannel:
    """
    `SessionChannel` 的 PTY 实现：把文本写入指定名字的解释器 session。

    说明：
    - 首次发送时按需启动解释器；
    - 发送即返回，不等待求值结束（完成只能通过哨兵文件观测）。
    """

    def __init__(self, *, manager: InterpreterSessionManager, session_name: str, echo_drain_ms: int = 50) -> None:
        """
        参数：
        - manager：解释器会话管理器
        - session_name：目标 session 名
        - echo_drain_ms：未挂接事件循环时，每次写入后读取回显的时间窗口
        """

        self._manager = manager
        self.session_name = session_name
        self._echo_drain_ms = int(echo_drain_ms)

    def send(self, text: str) -> None:
        """写入文本；解释器已退出时抛 `SessionChannelError`。"""

        self._manager.get_or_spawn(self.session_name)
        result = self._manager.write(self.session_name, chars=text, yield_time_ms=self._echo_drain_ms)
        if result.echo:
            logger.debug("session %r echo: %r", self.session_name, result.echo[-400:])
        if not result.running:
            raise SessionChannelError(f"interpreter session {self.session_name!r} exited with code {result.exit_code}")
