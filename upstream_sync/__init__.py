"""upstream_sync 包：从 GitHub 上游仓库同步技能目录的工具。

推荐直接运行：
  `python -m upstream_sync`               → 同步 upstream.json 中的全部技能；
  `python -m upstream_sync --skill bun`   → 只同步指定技能。

包含模块：
- `upstream_sync.session`：一次同步运行（条目调度、结果汇总、manifest 落盘、退出码）。
- `upstream_sync.cli`：命令行入口。
- `upstream_sync.core.*`：配置、manifest、GitHub API、目录替换与单条目同步引擎。
"""

__version__ = "0.1.0"
