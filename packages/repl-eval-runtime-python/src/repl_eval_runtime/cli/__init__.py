"""
CLI 模块。

说明：
- 对外入口为 `repl-eval-runtime ...`（由 `pyproject.toml` 的 `[project.scripts]` 注册）。
- CLI 只做“配置加载 + 驱动协调器 + JSON 输出”，不复制核心逻辑。
"""
