"""
repl-eval-runtime CLI（config / run）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；失败时也尽量输出 JSON
- 日志走 stderr（`--log-level`）

exit code：
- 0：成功（run：全部队列已排空）
- 1：run 超时（仍有在途/排队请求，队列停滞）
- 2：用法错误（argparse）
- 20：配置/文档/参数校验失败
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml
from pydantic import ValidationError

from repl_eval_runtime.config.defaults import load_default_config_dict
from repl_eval_runtime.config.loader import EvalRuntimeConfig, load_config_dicts
from repl_eval_runtime.core.contracts import ResultMode, SessionChannel
from repl_eval_runtime.core.coordinator import ChannelFactory, EvaluationCoordinator
from repl_eval_runtime.core.errors import FrameworkIssue, UserError
from repl_eval_runtime.core.exec_sessions import InterpreterSessionManager, PtySessionChannel
from repl_eval_runtime.core.request_builder import get_profile
from repl_eval_runtime.documents.org_document import OrgDocument, SourceBlock

logger = logging.getLogger(__name__)


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _issues_to_jsonable(issues: List[FrameworkIssue]) -> List[Dict[str, Any]]:
    """将 FrameworkIssue 列表投影为可 JSON 序列化结构。"""

    return [json.loads(json.dumps(dataclasses.asdict(it), default=str)) for it in issues]


def _load_yaml_mapping(path: Path) -> Tuple[Optional[Dict[str, Any]], Optional[FrameworkIssue]]:
    """
    加载 YAML overlay 并确保根节点为 mapping(dict)。

    返回：
    - (mapping, issue)：失败时 mapping 为 None，issue 为错误信息（英文结构化）。
    """

    if not path.exists():
        return None, FrameworkIssue(
            code="CLI_OVERLAY_NOT_FOUND",
            message="Overlay config not found.",
            details={"path": str(path)},
        )
    try:
        obj = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        return None, FrameworkIssue(
            code="CLI_OVERLAY_LOAD_FAILED",
            message="Overlay config load failed.",
            details={"path": str(path), "reason": str(exc)},
        )
    if not isinstance(obj, dict):
        return None, FrameworkIssue(
            code="CLI_OVERLAY_INVALID",
            message="Overlay config root must be an object.",
            details={"path": str(path), "actual": type(obj).__name__},
        )
    return obj, None


def _load_effective_config(
    overlay_paths: List[Path],
    *,
    extra_overlay: Optional[Dict[str, Any]] = None,
) -> Tuple[Optional[EvalRuntimeConfig], List[FrameworkIssue]]:
    """
    加载默认配置 + overlays（+ 命令行覆盖项），返回校验后的配置。

    返回：
    - (config, issues)：失败时 config 为 None，issues 至少包含一条 error。
    """

    overlays: List[Dict[str, Any]] = [load_default_config_dict()]
    issues: List[FrameworkIssue] = []
    for p in overlay_paths:
        obj, issue = _load_yaml_mapping(p)
        if issue is not None:
            issues.append(issue)
            continue
        overlays.append(obj or {})
    if issues:
        return None, issues
    if extra_overlay:
        overlays.append(extra_overlay)

    try:
        return load_config_dicts(overlays), []
    except ValidationError as exc:
        return None, [FrameworkIssue(code="CLI_CONFIG_INVALID", message="Config is invalid.", details={"reason": str(exc)})]


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="repl-eval-runtime",
        description="Evaluate document source blocks in persistent interpreter sessions.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    config = sub.add_parser("config", help="Print the effective config")
    _add_common_flags(config)

    run = sub.add_parser("run", help="Evaluate every source block of a document and write results back")
    _add_common_flags(run)
    run.add_argument("document", help="Org document path.")
    run.add_argument("--language", choices=["julia", "python"], default=None, help="Override interpreter.language.")
    run.add_argument("--timeout", type=float, default=60.0, help="Seconds to wait for all queues to drain.")
    run.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Log level for stderr logging.",
    )
    return parser


def _interpreter_argv(config: EvalRuntimeConfig) -> List[str]:
    """返回启动解释器的 argv（配置为空时使用语言模板默认值）。"""

    if config.interpreter.argv:
        return list(config.interpreter.argv)
    if config.interpreter.language == "python":
        # 与 CLI 使用同一个解释器
        return [sys.executable, "-q", "-i", "-u"]
    return list(get_profile(config.interpreter.language).default_argv)


def _make_session_manager(config: EvalRuntimeConfig, *, cwd: Path) -> InterpreterSessionManager:
    """创建 PTY 解释器会话管理器。"""

    workdir = Path(config.interpreter.cwd).expanduser() if config.interpreter.cwd else cwd
    return InterpreterSessionManager(argv=_interpreter_argv(config), cwd=workdir)


def _make_channel_factory(config: EvalRuntimeConfig, manager: InterpreterSessionManager) -> ChannelFactory:
    """按 session_key 创建 PTY 通道；None（隔离求值）落到默认会话。"""

    def _factory(session_key: Optional[str]) -> SessionChannel:
        """创建单个会话通道。"""

        name = session_key if session_key is not None else config.interpreter.default_session
        return PtySessionChannel(manager=manager, session_name=name, echo_drain_ms=config.interpreter.echo_drain_ms)

    return _factory


def _block_request_args(block: SourceBlock, config: EvalRuntimeConfig) -> Dict[str, Any]:
    """
    把源码块头参数映射为 submit 参数。

    说明：
    - `:results` 含 `output` → OUTPUT，否则 VALUE；含 `file`（或给出 `:file`）→ 文件型结果；
    - 无 `:session` 或 `:session none` → 隔离求值；`:session` 无值 → 默认会话名。
    """

    results = block.header_args.get("results", "").lower().split()
    mode = ResultMode.OUTPUT if "output" in results else ResultMode.VALUE
    session_key: Optional[str] = None
    if "session" in block.header_args:
        raw = block.header_args["session"].strip()
        if raw.lower() != "none":
            session_key = raw or config.interpreter.default_session
    return {
        "result_mode": mode,
        "session_key": session_key,
        "result_is_file": "file" in results or "file" in block.header_args,
    }


async def _evaluate_document(
    *,
    document: OrgDocument,
    config: EvalRuntimeConfig,
    manager: InterpreterSessionManager,
    channel_factory: ChannelFactory,
    timeout_sec: float,
) -> Dict[str, Any]:
    """提交文档中全部匹配语言的源码块，写入占位文本，然后等待队列排空。"""

    manager.attach_to_loop(asyncio.get_running_loop())
    coordinator = EvaluationCoordinator(channel_factory=channel_factory, config=config)

    blocks = document.source_blocks(language=config.interpreter.language)
    # 先为全部块建立 marker，后续插入占位/结果时位置自动调整
    marked = [(b, document.text.count("\n", 0, b.begin) + 1, *document.mark_block(b)) for b in blocks]

    submitted: List[Dict[str, Any]] = []
    issues: List[FrameworkIssue] = []
    for block, line, start, end in marked:
        args = _block_request_args(block, config)
        try:
            placeholder = coordinator.submit(
                document=document,
                anchor_start=start,
                anchor_to=end,
                source_text=block.body,
                params={"line": line},
                **args,
            )
        except UserError as exc:
            details = dict(exc.details)
            details["line"] = line
            issues.append(FrameworkIssue(code=exc.code, message=exc.message, details=details))
            continue
        if not args["result_is_file"]:
            document.replace_result(start, end, placeholder)
        submitted.append(
            {
                "id": placeholder.rsplit(" ", 1)[-1],
                "line": line,
                "session": args["session_key"],
                "result_mode": args["result_mode"].value,
            }
        )

    try:
        drained = await coordinator.wait_until_idle(timeout_sec=timeout_sec)
    finally:
        coordinator.shutdown()

    pending: List[str] = []
    for session_key in dict.fromkeys(item["session"] for item in submitted):
        pending.extend(coordinator.pending_ids(document, session_key))
    if not drained:
        logger.warning("timed out after %.1fs with %d request(s) still queued", timeout_sec, len(pending))
    return {
        "drained": drained,
        "blocks_total": len(blocks),
        "submitted": submitted,
        "pending": pending,
        "issues": issues,
    }


def _handle_config(args: argparse.Namespace) -> int:
    """执行 `config`：输出合并后的有效配置。"""

    config, issues = _load_effective_config([Path(p).expanduser() for p in args.config or []])
    if config is None:
        _dump_json_to_stdout({"issues": _issues_to_jsonable(issues)}, pretty=bool(args.pretty))
        return 20
    _dump_json_to_stdout({"config": config.model_dump(mode="json")}, pretty=bool(args.pretty))
    return 0


def _handle_run(args: argparse.Namespace) -> int:
    """执行 `run`：求值文档全部源码块并回写结果。"""

    logging.basicConfig(
        level=getattr(logging, str(args.log_level)),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    doc_path = Path(str(args.document)).expanduser().resolve()
    extra = {"interpreter": {"language": args.language}} if args.language else None
    config, issues = _load_effective_config([Path(p).expanduser() for p in args.config or []], extra_overlay=extra)
    if config is not None and not doc_path.is_file():
        issues.append(
            FrameworkIssue(code="CLI_DOCUMENT_NOT_FOUND", message="Document not found.", details={"path": str(doc_path)})
        )
    if config is None or issues:
        _dump_json_to_stdout({"document": str(doc_path), "issues": _issues_to_jsonable(issues)}, pretty=bool(args.pretty))
        return 20

    document = OrgDocument.from_file(doc_path)
    manager = _make_session_manager(config, cwd=doc_path.parent)
    try:
        summary = asyncio.run(
            _evaluate_document(
                document=document,
                config=config,
                manager=manager,
                channel_factory=_make_channel_factory(config, manager),
                timeout_sec=float(args.timeout),
            )
        )
    finally:
        manager.close_all()

    document.save(doc_path)
    payload = {
        "document": str(doc_path),
        "language": config.interpreter.language,
        "drained": summary["drained"],
        "blocks_total": summary["blocks_total"],
        "submitted": summary["submitted"],
        "pending": summary["pending"],
        "issues": _issues_to_jsonable(summary["issues"]),
    }
    _dump_json_to_stdout(payload, pretty=bool(args.pretty))
    return 0 if summary["drained"] else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse：`--help` 为 0，参数错误为 2
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    if args.command == "config":
        return _handle_config(args)
    if args.command == "run":
        return _handle_run(args)

    _dump_json_to_stdout(
        {"issues": [{"code": "CLI_COMMAND_INVALID", "message": "Unknown command.", "details": {"command": args.command}}]},
        pretty=bool(getattr(args, "pretty", False)),
    )
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
