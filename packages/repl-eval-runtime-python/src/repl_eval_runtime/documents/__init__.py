"""文档模型（`Document` 协议的参考实现）。"""

from __future__ import annotations

from repl_eval_runtime.documents.org_document import Marker, OrgDocument, SourceBlock, parse_header_args, render_result

__all__ = ["Marker", "OrgDocument", "SourceBlock", "parse_header_args", "render_result"]
