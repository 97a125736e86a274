"""
内存态 org 风格文档（`Document` 协议的参考实现）。

说明：
- 供 CLI 批量求值与测试使用；真实编辑器应提供自己的 buffer 实现；
- `Marker` 是随编辑自动调整的位置句柄：插入点之后的 marker 右移，
  删除区间内的 marker 收缩到区间起点（整块被删时起止 marker 会重合）；
- 结果区域格式：

      #+begin_src julia :results output
      println(1+1)
      #+end_src

      #+RESULTS:
      : 2
"""

from __future__ import annotations

import logging
import re
import uuid
import weakref
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Hashable, List, Optional, Tuple

logger = logging.getLogger(__name__)

_BLOCK_RE = re.compile(
    r"^[ \t]*#\+begin_src[ \t]+(?P<lang>\S+)(?P<header>[^\n]*)\n(?P<body>.*?)^[ \t]*#\+end_src[ \t]*$",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)
_BEGIN_LINE_RE = re.compile(r"[ \t]*#\+begin_src\b", re.IGNORECASE)
_RESULT_RE = re.compile(
    r"\n(?:[ \t]*\n)*(?P<result>#\+RESULTS:[^\n]*(?:\n[ \t]*:(?:[ \t][^\n]*)?(?=\n|\Z))*)",
    re.IGNORECASE,
)


class Marker:
    """随编辑自动调整的位置句柄（实现 `LivePosition`）。"""

    def __init__(self, position: int, *, advances: bool) -> None:
        """
        参数：
        - position：初始 offset
        - advances：恰好在该位置插入文本时是否随之右移
        """

        self._position = int(position)
        self.advances = bool(advances)

    @property
    def position(self) -> int:
        """当前位置。"""

        return self._position

    def __repr__(self) -> str:
        """调试表示。"""

        return f"Marker({self._position}, advances={self.advances})"


def parse_header_args(header: str) -> Dict[str, str]:
    """
    解析 `:key value ...` 形式的头参数。

    说明：
    - 值为下一个 `:key` 之前的全部 token（空格连接）；没有值的 key 映射为空串。
    """

    args: Dict[str, str] = {}
    key: Optional[str] = None
    values: List[str] = []
    for token in header.split():
        if token.startswith(":") and len(token) > 1:
            if key is not None:
                args[key] = " ".join(values)
            key, values = token[1:].lower(), []
        elif key is not None:
            values.append(token)
    if key is not None:
        args[key] = " ".join(values)
    return args


@dataclass(frozen=True)
class SourceBlock:
    """源码块（解析快照；位置仅在解析时刻有效，需要长期持有时用 `mark_block`）。"""

    language: str
    body: str
    begin: int
    end: int
    header_args: Dict[str, str] = field(default_factory=dict)


class OrgDocument:
    """内存态 org 文档。"""

    def __init__(self, text: str = "", *, document_id: Optional[Hashable] = None) -> None:
        """
        参数：
        - text：初始文本
        - document_id：文档标识（默认随机生成）
        """

        self._text = str(text)
        self._document_id: Hashable = document_id if document_id is not None else uuid.uuid4().hex
        self._markers: "weakref.WeakSet[Marker]" = weakref.WeakSet()
        self.artifact_refreshes = 0

    @classmethod
    def from_file(cls, path: Path) -> "OrgDocument":
        """从文件读取文档（document_id 为绝对路径）。"""

        p = Path(path).resolve()
        return cls(p.read_text(encoding="utf-8"), document_id=str(p))

    def save(self, path: Path) -> None:
        """写回文件。"""

        Path(path).write_text(self._text, encoding="utf-8")

    @property
    def document_id(self) -> Hashable:
        """文档标识。"""

        return self._document_id

    @property
    def text(self) -> str:
        """当前全文。"""

        return self._text

    def marker(self, offset: int, *, advances: bool = False) -> Marker:
        """在 offset 处创建 live marker。"""

        if not 0 <= offset <= len(self._text):
            raise ValueError("offset out of range")
        m = Marker(offset, advances=advances)
        self._markers.add(m)
        return m

    def insert(self, offset: int, text: str) -> None:
        """在 offset 处插入文本并调整 marker。"""

        if not 0 <= offset <= len(self._text):
            raise ValueError("offset out of range")
        if not text:
            return
        self._text = self._text[:offset] + text + self._text[offset:]
        n = len(text)
        for m in list(self._markers):
            if m._position > offset or (m._position == offset and m.advances):
                m._position += n

    def delete(self, start: int, end: int) -> None:
        """删除 [start, end) 并调整 marker。"""

        if not 0 <= start <= end <= len(self._text):
            raise ValueError("range out of bounds")
        if start == end:
            return
        self._text = self._text[:start] + self._text[end:]
        n = end - start
        for m in list(self._markers):
            if m._position >= end:
                m._position -= n
            elif m._position > start:
                m._position = start

    def replace(self, start: int, end: int, text: str) -> None:
        """用 text 替换 [start, end)。"""

        self.delete(start, end)
        self.insert(start, text)

    def source_blocks(self, *, language: Optional[str] = None) -> List[SourceBlock]:
        """按文档顺序列出源码块（可按语言过滤，大小写不敏感）。"""

        blocks: List[SourceBlock] = []
        for m in _BLOCK_RE.finditer(self._text):
            lang = m.group("lang")
            if language is not None and lang.lower() != language.lower():
                continue
            blocks.append(
                SourceBlock(
                    language=lang,
                    body=m.group("body"),
                    begin=m.start(),
                    end=m.end(),
                    header_args=parse_header_args(m.group("header")),
                )
            )
        return blocks

    def mark_block(self, block: SourceBlock) -> Tuple[Marker, Marker]:
        """为源码块创建锚点 marker 对（起点随前方插入右移，终点不随结果插入移动）。"""

        return self.marker(block.begin, advances=True), self.marker(block.end, advances=False)

    def is_source_block_at(self, start: Marker) -> bool:
        """start 所在行是否仍以 `#+begin_src` 开头。"""

        pos = start.position
        if pos > len(self._text):
            return False
        line_start = self._text.rfind("\n", 0, pos) + 1
        return bool(_BEGIN_LINE_RE.match(self._text, line_start))

    def result_span(self, end: Marker) -> Optional[Tuple[int, int]]:
        """返回源码块之后已有结果区域的 [start, end)；没有则 None。"""

        m = _RESULT_RE.match(self._text, end.position)
        if m is None:
            return None
        return m.start("result"), m.end("result")

    def replace_result(self, start: Marker, end: Marker, text: str) -> None:
        """写入结果：已有 `#+RESULTS:` 区域则覆盖，否则插入到 `#+end_src` 之后。"""

        _ = start
        rendered = render_result(text)
        span = self.result_span(end)
        if span is not None:
            self.replace(span[0], span[1], rendered)
            return
        self.insert(end.position, "\n\n" + rendered)

    def refresh_inline_artifacts(self, start: Marker, end: Marker) -> None:
        """内存文档没有渲染层：只记录刷新次数。"""

        self.artifact_refreshes += 1
        logger.debug("inline artifacts refreshed for block at %d..%d", start.position, end.position)


def render_result(text: str) -> str:
    """把结果文本渲染为 `#+RESULTS:` + `: ` 前缀行。"""

    lines = [f": {line}" if line else ":" for line in text.splitlines()]
    return "\n".join(["#+RESULTS:", *lines])
