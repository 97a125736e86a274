"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）。
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）。
- 默认配置：`repl_eval_runtime/assets/default.yaml`
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from repl_eval_runtime.config.defaults import load_default_config_dict


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(overlay_value, Mapping)
        ):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class InterpreterConfig(BaseModel):
    """解释器与会话配置。"""

    model_config = ConfigDict(extra="forbid")

    language: Literal["julia", "python"] = Field(default="julia")
    # 为空时使用语言模板默认 argv
    argv: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    default_session: str = Field(default="main", min_length=1)
    echo_drain_ms: int = Field(default=50, ge=0)


class EvaluationConfig(BaseModel):
    """求值请求构建与派发配置。"""

    model_config = ConfigDict(extra="forbid")

    tmp_dir: Optional[str] = None
    # 开启后每次派发前先经会话通道发送参数与生成源码（注释块）
    debug: bool = False
    cleanup_temp_files: bool = True
    placeholder_prefix: str = Field(default="Executing...")


class WatchConfig(BaseModel):
    """完成信号（文件轮询监听）配置。"""

    model_config = ConfigDict(extra="forbid")

    poll_interval_sec: float = Field(default=0.1, gt=0.0)


class SyncWaitConfig(BaseModel):
    """同步等待辅助函数配置。"""

    model_config = ConfigDict(extra="forbid")

    timeout_sec: float = Field(default=10.0, ge=0.0)
    poll_interval_sec: float = Field(default=0.1, gt=0.0)


class ResultConfig(BaseModel):
    """结果回写配置。"""

    model_config = ConfigDict(extra="forbid")

    max_line_chars: int = Field(default=12000, ge=1)
    suppressed_placeholder: str = Field(default="Output suppressed (line too long)")

    @field_validator("suppressed_placeholder")
    @classmethod
    def _reject_multiline_placeholder(cls, value: str) -> str:
        """占位文本必须是单行（否则无法保证不会再次触发行长策略）。"""

        if "\n" in value:
            raise ValueError("result.suppressed_placeholder must be a single line")
        return value


class EvalRuntimeConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    interpreter: InterpreterConfig = Field(default_factory=InterpreterConfig)
    evaluation: EvaluationConfig = Field(default_factory=EvaluationConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    sync_wait: SyncWaitConfig = Field(default_factory=SyncWaitConfig)
    result: ResultConfig = Field(default_factory=ResultConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: Iterable[Optional[Mapping[str, Any]]]) -> EvalRuntimeConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `EvalRuntimeConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return EvalRuntimeConfig.model_validate(merged)


def load_config(config_paths: List[Path], *, include_defaults: bool = False) -> EvalRuntimeConfig:
    """
    加载并合并多个配置文件，返回校验后的 `EvalRuntimeConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    - include_defaults：是否先合并内置默认配置
    """

    overlays: List[Dict[str, Any]] = [load_default_config_dict()] if include_defaults else []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
