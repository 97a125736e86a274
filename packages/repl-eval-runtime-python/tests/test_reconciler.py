from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple

from repl_eval_runtime.core.contracts import EvaluationRequest, ResultMode
from repl_eval_runtime.core.reconciler import SUPPRESSED_PLACEHOLDER, ResultReconciler, apply_size_policy
from repl_eval_runtime.documents.org_document import Marker, OrgDocument

DOC = "intro\n#+begin_src julia :session main\nx = 1\n#+end_src\noutro\n"


class _Queue:
    """只记录 complete_head 调用的队列替身。"""

    def __init__(self) -> None:
        self.completed: List[Optional[str]] = []

    def complete_head(self, expected_id: Optional[str] = None) -> None:
        self.completed.append(expected_id)


def _request(
    tmp_path: Path,
    doc: OrgDocument,
    *,
    output: Optional[str],
    result_is_file: bool = False,
) -> Tuple[EvaluationRequest, Marker, Marker]:
    block = doc.source_blocks()[0]
    start, end = doc.mark_block(block)
    out = tmp_path / "evalq-x.out"
    if output is not None:
        out.write_text(output, encoding="utf-8")
    src = tmp_path / "evalq-x.jl"
    src.write_text("wrapped", encoding="utf-8")
    req = EvaluationRequest(
        id="r1",
        session_key="main",
        result_mode=ResultMode.OUTPUT,
        source_text=block.body,
        source_path=src,
        output_path=out,
        loader_text="",
        document=doc,
        anchor_start=start,
        anchor_to=end,
        result_is_file=result_is_file,
    )
    return req, start, end


def test_size_policy_threshold_is_per_line() -> None:
    ok = "a" * 12000
    assert apply_size_policy(ok) == ok
    assert apply_size_policy("short\n" + "b" * 12001) == SUPPRESSED_PLACEHOLDER
    assert apply_size_policy("x" * 11, max_line_chars=10, placeholder="cut") == "cut"


def test_result_is_inserted_after_block_and_queue_advances(tmp_path: Path) -> None:
    doc = OrgDocument(DOC)
    req, _, _ = _request(tmp_path, doc, output="2\n")
    queue = _Queue()

    ResultReconciler().reconcile(req, queue)  # type: ignore[arg-type]

    assert doc.text == "intro\n#+begin_src julia :session main\nx = 1\n#+end_src\n\n#+RESULTS:\n: 2\noutro\n"
    assert queue.completed == ["r1"]


def test_oversized_line_is_replaced_by_placeholder(tmp_path: Path) -> None:
    doc = OrgDocument(DOC)
    req, _, _ = _request(tmp_path, doc, output="ok\n" + "z" * 12001)
    queue = _Queue()

    ResultReconciler().reconcile(req, queue)  # type: ignore[arg-type]

    assert f"#+RESULTS:\n: {SUPPRESSED_PLACEHOLDER}\n" in doc.text
    assert "zzzz" not in doc.text
    assert queue.completed == ["r1"]


def test_collapsed_anchor_drops_result_but_advances(tmp_path: Path) -> None:
    doc = OrgDocument(DOC)
    req, start, end = _request(tmp_path, doc, output="2")
    # 用户删除了整个源码块
    doc.delete(start.position, end.position)
    assert start.position == end.position
    before = doc.text
    queue = _Queue()

    ResultReconciler().reconcile(req, queue)  # type: ignore[arg-type]

    assert doc.text == before
    assert queue.completed == ["r1"]


def test_anchor_no_longer_on_a_source_block_is_skipped(tmp_path: Path) -> None:
    doc = OrgDocument(DOC)
    req, start, _ = _request(tmp_path, doc, output="2")
    line_end = doc.text.index("\n", start.position)
    doc.replace(start.position, line_end, "just a paragraph")
    before = doc.text
    queue = _Queue()

    ResultReconciler().reconcile(req, queue)  # type: ignore[arg-type]

    assert doc.text == before
    assert queue.completed == ["r1"]


def test_missing_output_file_still_advances(tmp_path: Path) -> None:
    doc = OrgDocument(DOC)
    req, _, _ = _request(tmp_path, doc, output=None)
    queue = _Queue()

    ResultReconciler().reconcile(req, queue)  # type: ignore[arg-type]

    assert "#+RESULTS:" not in doc.text
    assert queue.completed == ["r1"]


def test_file_results_refresh_artifacts_without_inserting_text(tmp_path: Path) -> None:
    doc = OrgDocument(DOC)
    req, _, _ = _request(tmp_path, doc, output="plot.png", result_is_file=True)
    queue = _Queue()

    ResultReconciler().reconcile(req, queue)  # type: ignore[arg-type]

    assert doc.text == DOC
    assert doc.artifact_refreshes == 1
    assert queue.completed == ["r1"]


def test_rerun_replaces_previous_result(tmp_path: Path) -> None:
    doc = OrgDocument(DOC)
    req, start, end = _request(tmp_path, doc, output="first\nsecond")
    ResultReconciler().reconcile(req, _Queue())  # type: ignore[arg-type]
    assert "#+RESULTS:\n: first\n: second\noutro" in doc.text

    req.output_path.write_text("third", encoding="utf-8")
    ResultReconciler().reconcile(req, _Queue())  # type: ignore[arg-type]

    assert doc.text.count("#+RESULTS:") == 1
    assert doc.text.endswith("#+end_src\n\n#+RESULTS:\n: third\noutro\n")


def test_document_failure_is_absorbed(tmp_path: Path, caplog) -> None:  # type: ignore[no-untyped-def]
    doc = OrgDocument(DOC)
    req, _, _ = _request(tmp_path, doc, output="2")

    def _broken(*_args, **_kwargs):  # type: ignore[no-untyped-def]
        raise RuntimeError("buffer is read-only")

    doc.replace_result = _broken  # type: ignore[method-assign]
    queue = _Queue()

    ResultReconciler().reconcile(req, queue)  # type: ignore[arg-type]

    assert queue.completed == ["r1"]
    assert any("failed to apply result" in r.getMessage() for r in caplog.records)


def test_cleanup_removes_temp_files(tmp_path: Path) -> None:
    doc = OrgDocument(DOC)
    req, _, _ = _request(tmp_path, doc, output="2")

    ResultReconciler(cleanup_temp_files=True).reconcile(req, _Queue())  # type: ignore[arg-type]

    assert not req.source_path.exists()
    assert not req.output_path.exists()
    assert ": 2" in doc.text
