"""
求值请求构建器（包装源码 + 会话加载片段）。

设计目标：
- 会话通道只能向交互式提示符粘贴原始文本，因此拆成两个单元：
  - 包装单元：写入临时源码文件，负责作用域（会话/隔离）与结果捕获（值/stdout）；
  - 加载单元：经通道粘贴，按需开启输出抑制，include 包装单元，再把输出变量原样写入哨兵文件。
- 大段源码通过文件 include 加载，避免逐字符粘贴带来的慢与回显。
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from repl_eval_runtime.core.contracts import ResultMode
from repl_eval_runtime.core.errors import UserError

logger = logging.getLogger(__name__)

OUTPUT_VARIABLE = "_evalq_output"


class LanguageProfile:
    """解释器语言模板（基类）。"""

    name = ""
    source_suffix = ""
    default_argv: tuple[str, ...] = ()

    def wrap(self, source_text: str, *, result_mode: ResultMode, isolated: bool) -> str:
        """生成包装单元文本。"""

        raise NotImplementedError

    def loader(self, *, source_path: Path, output_path: Path, result_mode: ResultMode) -> str:
        """生成会话加载单元文本（以换行结尾，可直接粘贴）。"""

        raise NotImplementedError

    def comment_block(self, text: str) -> str:
        """把任意文本转成解释器可安全忽略的注释块。"""

        lines = text.splitlines() or [""]
        return "".join(f"# {line}\n" for line in lines)


def _julia_string(value: str) -> str:
    """转义为 Julia 双引号字符串字面量。"""

    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$")
    return f'"{escaped}"'


class JuliaProfile(LanguageProfile):
    """
    Julia 模板。

    说明：
    - OUTPUT 模式依赖 Suppressor.jl 的 `@capture_out`；
    - 会话作用域用 `begin ... end`（写入 Main），隔离作用域用 `let ... end`；
    - include 抛错时把 `showerror` 文本作为结果，保证哨兵文件总会被写入。
    """

    name = "julia"
    source_suffix = ".jl"
    default_argv = ("julia", "--banner=no", "--color=no")

    def wrap(self, source_text: str, *, result_mode: ResultMode, isolated: bool) -> str:
        """生成 `_evalq_output = [@capture_out] begin|let ... end`。"""

        opener = "let" if isolated else "begin"
        capture = "@capture_out " if result_mode is ResultMode.OUTPUT else ""
        body = source_text if source_text.endswith("\n") else source_text + "\n"
        return f"{OUTPUT_VARIABLE} = {capture}{opener}\n{body}end\n"

    def loader(self, *, source_path: Path, output_path: Path, result_mode: ResultMode) -> str:
        """生成 Julia 加载片段（每行都以 `;` 结尾，抑制 REPL 回显）。"""

        lines = []
        if result_mode is ResultMode.OUTPUT:
            lines.append("using Suppressor;")
        lines.append(
            f"try include({_julia_string(str(source_path))}); "
            f"catch err; global {OUTPUT_VARIABLE} = sprint(showerror, err); end;"
        )
        # 没有值（nothing）写空串，与 Python 的 None 一致
        lines.append(
            f"open({_julia_string(str(output_path))}, \"w\") do io "
            f"print(io, something({OUTPUT_VARIABLE}, \"\")) end;"
        )
        return "\n".join(lines) + "\n"

    def comment_block(self, text: str) -> str:
        """Julia 多行注释 `#= ... =#`。"""

        return "#=\n" + text.replace("=#", "= #") + ("" if text.endswith("\n") else "\n") + "=#\n"


_PYTHON_WRAPPER = '''\
def _evalq_run(_evalq_scope):
    import ast
    import contextlib
    import io
    import traceback

    buffer = io.StringIO()
    value = None
    try:
        with contextlib.redirect_stdout(buffer) if {capture} else contextlib.nullcontext():
            tree = ast.parse({source}, filename="<evalq>", mode="exec")
            last = tree.body.pop() if tree.body and isinstance(tree.body[-1], ast.Expr) else None
            exec(compile(tree, "<evalq>", "exec"), _evalq_scope)
            if last is not None:
                value = eval(compile(ast.Expression(last.value), "<evalq>", "eval"), _evalq_scope)
    except BaseException:
        return buffer.getvalue() + traceback.format_exc()
    if {capture}:
        return buffer.getvalue()
    return "" if value is None else str(value)


{output} = _evalq_run({scope})
del _evalq_run
'''


class PythonProfile(LanguageProfile):
    """
    Python 模板。

    说明：
    - 末尾表达式的值通过 ast 拆分后 eval 获得（与 REPL 语义一致）；
    - OUTPUT 模式用 `contextlib.redirect_stdout` 捕获；
    - 异常 traceback 作为结果文本写回。
    """

    name = "python"
    source_suffix = ".py"
    default_argv = ("python3", "-q", "-i", "-u")

    def wrap(self, source_text: str, *, result_mode: ResultMode, isolated: bool) -> str:
        """生成 `_evalq_output = _evalq_run(scope)` 包装单元。"""

        scope = "{'__name__': '__evalq__'}" if isolated else "globals()"
        return _PYTHON_WRAPPER.format(
            capture="True" if result_mode is ResultMode.OUTPUT else "False",
            source=repr(source_text),
            output=OUTPUT_VARIABLE,
            scope=scope,
        )

    def loader(self, *, source_path: Path, output_path: Path, result_mode: ResultMode) -> str:
        """生成 Python 加载片段（单行语句；赋值语句不会触发 REPL 回显）。"""

        _ = result_mode
        lines = [
            f"exec(open({str(source_path)!r}, encoding='utf-8').read())",
            f"_evalq_written = __import__('pathlib').Path({str(output_path)!r})"
            f".write_text(str({OUTPUT_VARIABLE}), encoding='utf-8')",
        ]
        return "\n".join(lines) + "\n"


_PROFILES: Dict[str, LanguageProfile] = {
    JuliaProfile.name: JuliaProfile(),
    PythonProfile.name: PythonProfile(),
}


def get_profile(language: str) -> LanguageProfile:
    """
    按语言名获取模板。

    异常：
    - UserError：未知语言
    """

    key = str(language or "").strip().lower()
    profile = _PROFILES.get(key)
    if profile is None:
        raise UserError(
            "Unsupported interpreter language.",
            code="UNSUPPORTED_LANGUAGE",
            details={"language": language, "supported": sorted(_PROFILES)},
        )
    return profile


class TempFileAllocator:
    """临时文件分配器（唯一文件名）。"""

    def __init__(self, *, tmp_dir: Optional[Path] = None, prefix: str = "evalq-") -> None:
        """
        参数：
        - tmp_dir：临时目录（None 表示系统默认）
        - prefix：文件名前缀
        """

        self._tmp_dir = Path(tmp_dir) if tmp_dir is not None else None
        self._prefix = prefix

    def allocate(self, suffix: str = "") -> Path:
        """创建一个唯一命名的空文件并返回其路径。"""

        if self._tmp_dir is not None:
            self._tmp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(
            suffix=suffix,
            prefix=self._prefix,
            dir=None if self._tmp_dir is None else str(self._tmp_dir),
        )
        os.close(fd)
        return Path(name)


@dataclass(frozen=True)
class BuiltUnit:
    """构建结果：包装单元（已落盘）与加载单元。"""

    source_path: Path
    output_path: Path
    wrapped_text: str
    loader_text: str


class RequestBuilder:
    """把源码物化为“临时源码文件 + 结果哨兵路径 + 加载片段”。"""

    def __init__(self, *, profile: LanguageProfile, allocator: Optional[TempFileAllocator] = None) -> None:
        """
        参数：
        - profile：解释器语言模板
        - allocator：临时文件分配器（默认系统临时目录）
        """

        self.profile = profile
        self._allocator = allocator or TempFileAllocator()

    def build(self, *, source_text: str, result_mode: ResultMode, session_key: Optional[str]) -> BuiltUnit:
        """
        构建一次求值的两个单元。

        参数：
        - source_text：源码（不能全为空白）
        - result_mode：VALUE/OUTPUT
        - session_key：None 表示隔离作用域

        说明：
        - 哨兵文件与源码文件共享唯一文件名主干，但哨兵文件不预先创建，
          这样解释器创建它的动作本身就是一次可观测的写入。
        """

        if not isinstance(source_text, str) or not source_text.strip():
            raise UserError("source_text must be a non-empty string", code="EMPTY_SOURCE")

        mode = ResultMode.parse(result_mode)
        wrapped = self.profile.wrap(source_text, result_mode=mode, isolated=session_key is None)
        source_path = self._allocator.allocate(suffix=self.profile.source_suffix)
        source_path.write_text(wrapped, encoding="utf-8")
        output_path = source_path.with_name(source_path.stem + ".out")
        loader = self.profile.loader(source_path=source_path, output_path=output_path, result_mode=mode)
        logger.debug("built evaluation unit source=%s output=%s mode=%s", source_path, output_path, mode.value)
        return BuiltUnit(source_path=source_path, output_path=output_path, wrapped_text=wrapped, loader_text=loader)

    def debug_block(self, *, request_id: str, params: Mapping[str, Any], wrapped_text: str) -> str:
        """生成调试通道文本：参数与生成源码，以注释形式发送。"""

        header = json.dumps({"id": request_id, **dict(params)}, ensure_ascii=False, default=str, sort_keys=True)
        return self.profile.comment_block(f"evalq debug {header}\n{wrapped_text}")
