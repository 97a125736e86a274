from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest

from repl_eval_runtime.config.loader import EvalRuntimeConfig, load_config_dicts
from repl_eval_runtime.core.coordinator import EvaluationCoordinator
from repl_eval_runtime.documents.org_document import Marker, OrgDocument

PLACEHOLDER_RE = re.compile(r"Executing\.\.\. [0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")


def _config(tmp_path: Path, **overrides: Any) -> EvalRuntimeConfig:
    base: Dict[str, Any] = {
        "interpreter": {"language": "python"},
        "evaluation": {"tmp_dir": str(tmp_path / "evalq")},
        "watch": {"poll_interval_sec": 0.01},
        "sync_wait": {"poll_interval_sec": 0.01},
    }
    return load_config_dicts([base, overrides])


def _marked_blocks(doc: OrgDocument) -> List[Tuple[str, Marker, Marker]]:
    return [(b.body, *doc.mark_block(b)) for b in doc.source_blocks()]


def test_submit_returns_placeholder_and_applies_output(tmp_path: Path, manual_watcher, python_channels) -> None:  # type: ignore[no-untyped-def]
    doc = OrgDocument("#+begin_src python :results output\nprint(1+1)\n#+end_src\n")
    coord = EvaluationCoordinator(channel_factory=python_channels, config=_config(tmp_path), watcher=manual_watcher)
    (body, start, end), = _marked_blocks(doc)

    placeholder = coord.submit(
        document=doc, anchor_start=start, anchor_to=end, source_text=body, result_mode="output", session_key="main"
    )

    assert PLACEHOLDER_RE.fullmatch(placeholder)
    assert coord.pending_ids(doc, "main") == [placeholder.split(" ", 1)[1]]
    assert not coord.is_idle()

    manual_watcher.drain()

    assert doc.text == "#+begin_src python :results output\nprint(1+1)\n#+end_src\n\n#+RESULTS:\n: 2\n"
    assert coord.is_idle()
    # 默认清理临时文件
    assert list((tmp_path / "evalq").iterdir()) == []


def test_n_blocks_get_n_results_in_order(tmp_path: Path, manual_watcher, python_channels) -> None:  # type: ignore[no-untyped-def]
    doc = OrgDocument(
        "\n".join(
            [
                "#+begin_src python :session main",
                "y = 41",
                "#+end_src",
                "text between",
                "#+begin_src python :session main",
                "y + 1",
                "#+end_src",
                "#+begin_src python :session main",
                "y * 2",
                "#+end_src",
                "",
            ]
        )
    )
    coord = EvaluationCoordinator(channel_factory=python_channels, config=_config(tmp_path), watcher=manual_watcher)
    for body, start, end in _marked_blocks(doc):
        coord.submit(document=doc, anchor_start=start, anchor_to=end, source_text=body, session_key="main")

    # 只有队首被派发
    assert len(python_channels.by_key["main"].sent) == 1

    manual_watcher.drain()

    assert doc.text == "\n".join(
        [
            "#+begin_src python :session main",
            "y = 41",
            "#+end_src",
            "",
            "#+RESULTS:",
            "text between",
            "#+begin_src python :session main",
            "y + 1",
            "#+end_src",
            "",
            "#+RESULTS:",
            ": 42",
            "#+begin_src python :session main",
            "y * 2",
            "#+end_src",
            "",
            "#+RESULTS:",
            ": 82",
            "",
        ]
    )


def test_sessions_and_isolated_scope_use_separate_channels(tmp_path: Path, manual_watcher, python_channels) -> None:  # type: ignore[no-untyped-def]
    doc = OrgDocument(
        "#+begin_src python\nsecret = 1\n#+end_src\n"
        "#+begin_src python :session a\n'secret' in globals()\n#+end_src\n"
    )
    coord = EvaluationCoordinator(channel_factory=python_channels, config=_config(tmp_path), watcher=manual_watcher)
    (b1, s1, e1), (b2, s2, e2) = _marked_blocks(doc)

    coord.submit(document=doc, anchor_start=s1, anchor_to=e1, source_text=b1, session_key=None)
    coord.submit(document=doc, anchor_start=s2, anchor_to=e2, source_text=b2, session_key="a")

    # 不同会话的队列互不阻塞：两者同时在途
    assert coord.pending_ids(doc, None) and coord.pending_ids(doc, "a")
    assert set(python_channels.by_key) == {None, "a"}

    manual_watcher.drain()
    assert ": False" in doc.text
    assert "secret" not in python_channels.by_key[None].namespace


def test_debug_mode_sends_comment_block_first(tmp_path: Path, manual_watcher, python_channels) -> None:  # type: ignore[no-untyped-def]
    doc = OrgDocument("#+begin_src python\n1 + 1\n#+end_src\n")
    coord = EvaluationCoordinator(
        channel_factory=python_channels,
        config=_config(tmp_path, evaluation={"debug": True}),
        watcher=manual_watcher,
    )
    (body, start, end), = _marked_blocks(doc)
    coord.submit(document=doc, anchor_start=start, anchor_to=end, source_text=body, params={"line": 1})

    sent = python_channels.by_key[None].sent
    assert len(sent) == 2
    assert sent[0].startswith("# evalq debug {")
    assert '"line": 1' in sent[0]
    assert "_evalq_run" in sent[0]

    manual_watcher.drain()
    assert ": 2" in doc.text


def test_wait_until_idle_with_polling_watcher(tmp_path: Path, python_channels) -> None:  # type: ignore[no-untyped-def]
    doc = OrgDocument(
        "#+begin_src python :results output\nprint(1+1)\n#+end_src\n"
        "#+begin_src python\n'x' * 3\n#+end_src\n"
    )

    async def _go() -> bool:
        coord = EvaluationCoordinator(channel_factory=python_channels, config=_config(tmp_path))
        (b1, s1, e1), (b2, s2, e2) = _marked_blocks(doc)
        coord.submit(document=doc, anchor_start=s1, anchor_to=e1, source_text=b1, result_mode="output")
        coord.submit(document=doc, anchor_start=s2, anchor_to=e2, source_text=b2)
        try:
            return await coord.wait_until_idle(timeout_sec=5.0)
        finally:
            coord.shutdown()

    assert asyncio.run(_go()) is True
    assert ": 2\n" in doc.text
    assert doc.text.endswith("#+RESULTS:\n: xxx\n")


def test_wait_until_idle_times_out_when_interpreter_never_answers(tmp_path: Path, make_recording_channel) -> None:  # type: ignore[no-untyped-def]
    doc = OrgDocument("#+begin_src python\n1\n#+end_src\n")
    silent = make_recording_channel()

    async def _go() -> Tuple[bool, List[str]]:
        coord = EvaluationCoordinator(channel_factory=lambda _key: silent, config=_config(tmp_path))
        (body, start, end), = _marked_blocks(doc)
        coord.submit(document=doc, anchor_start=start, anchor_to=end, source_text=body)
        drained = await coord.wait_until_idle(timeout_sec=0.1)
        pending = coord.pending_ids(doc)
        coord.shutdown()
        return drained, pending

    drained, pending = asyncio.run(_go())
    assert drained is False
    assert len(pending) == 1
    assert len(silent.sent) == 1


def test_evaluate_sync_returns_rendered_text(tmp_path: Path, python_channels) -> None:  # type: ignore[no-untyped-def]
    coord = EvaluationCoordinator(channel_factory=python_channels, config=_config(tmp_path))

    assert coord.evaluate_sync(source_text="print(1+1)", result_mode="output", session_key="main") == "2"
    assert coord.evaluate_sync(source_text="'q' * 20000") == "Output suppressed (line too long)"


def test_evaluate_sync_times_out(tmp_path: Path, make_recording_channel) -> None:  # type: ignore[no-untyped-def]
    coord = EvaluationCoordinator(channel_factory=lambda _key: make_recording_channel(), config=_config(tmp_path))
    assert coord.evaluate_sync(source_text="1", timeout_sec=0.05) is None


def test_channels_are_created_once_per_session(tmp_path: Path, python_channels) -> None:  # type: ignore[no-untyped-def]
    created: List[Any] = []

    def _factory(key):  # type: ignore[no-untyped-def]
        created.append(key)
        return python_channels(key)

    coord = EvaluationCoordinator(channel_factory=_factory, config=_config(tmp_path))
    assert coord.channel_for("main") is coord.channel_for("main")
    coord.channel_for(None)
    assert created == ["main", None]


def test_submit_before_loop_starts_is_dispatched_on_bound_loop(tmp_path: Path, python_channels) -> None:  # type: ignore[no-untyped-def]
    doc = OrgDocument("#+begin_src python\n6 * 7\n#+end_src\n")
    loop = asyncio.new_event_loop()
    try:
        coord = EvaluationCoordinator(channel_factory=python_channels, config=_config(tmp_path), loop=loop)
        (body, start, end), = _marked_blocks(doc)

        # 同步调用方：此时没有正在运行的 loop
        placeholder = coord.submit(document=doc, anchor_start=start, anchor_to=end, source_text=body)

        assert PLACEHOLDER_RE.fullmatch(placeholder)
        assert len(python_channels.by_key[None].sent) == 1
        assert loop.run_until_complete(coord.wait_until_idle(timeout_sec=5.0)) is True
        coord.shutdown()
    finally:
        loop.close()

    assert doc.text.endswith("#+end_src\n\n#+RESULTS:\n: 42\n")


def test_submit_from_worker_thread_uses_coordinator_loop(tmp_path: Path, python_channels) -> None:  # type: ignore[no-untyped-def]
    doc = OrgDocument("#+begin_src python :session main\n'ab' * 2\n#+end_src\n")

    async def _go() -> bool:
        coord = EvaluationCoordinator(channel_factory=python_channels, config=_config(tmp_path))
        (body, start, end), = _marked_blocks(doc)
        await asyncio.to_thread(
            coord.submit, document=doc, anchor_start=start, anchor_to=end, source_text=body, session_key="main"
        )
        try:
            return await coord.wait_until_idle(timeout_sec=5.0)
        finally:
            coord.shutdown()

    assert asyncio.run(_go()) is True
    assert doc.text.endswith("#+RESULTS:\n: abab\n")


def test_submit_without_any_loop_leaves_nothing_behind(tmp_path: Path, python_channels) -> None:  # type: ignore[no-untyped-def]
    doc = OrgDocument("#+begin_src python\n1\n#+end_src\n")
    coord = EvaluationCoordinator(channel_factory=python_channels, config=_config(tmp_path))
    (body, start, end), = _marked_blocks(doc)

    with pytest.raises(RuntimeError):
        coord.submit(document=doc, anchor_start=start, anchor_to=end, source_text=body)

    assert coord.pending_ids(doc) == []
    assert coord.is_idle()
    assert python_channels.by_key[None].sent == []
    assert list((tmp_path / "evalq").iterdir()) == []


def test_evaluate_sync_tolerates_cleanup_failure(tmp_path: Path, python_channels, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    def _unlink(self, missing_ok=False):  # type: ignore[no-untyped-def]
        raise PermissionError(f"busy: {self}")

    coord = EvaluationCoordinator(channel_factory=python_channels, config=_config(tmp_path))
    monkeypatch.setattr(Path, "unlink", _unlink)

    assert coord.evaluate_sync(source_text="2 ** 5") == "32"
