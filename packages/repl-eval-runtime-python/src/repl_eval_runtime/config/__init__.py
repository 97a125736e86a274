"""配置（YAML overlays + pydantic 校验）。"""

from __future__ import annotations

from repl_eval_runtime.config.defaults import load_default_config_dict
from repl_eval_runtime.config.loader import EvalRuntimeConfig, load_config, load_config_dicts

__all__ = [
    "EvalRuntimeConfig",
    "load_config",
    "load_config_dicts",
    "load_default_config_dict",
]
