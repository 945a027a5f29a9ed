"""配置与路径映射

职责：
- 读取环境变量（GITHUB_TOKEN/UPSTREAM_ROOT/UPSTREAM_MANIFEST/SKILLS_DIR/SYNC_*）。
- 允许命令行参数覆盖环境变量（`load_settings(**overrides)`）。
- 提供路径映射工具：
  - `to_abs_under_root(root, rel)`: 项目根相对路径 → 绝对路径；
  - `skill_dir(settings, entry)`: manifest 条目 → 本地技能目录。
"""

import os
from dataclasses import dataclass, fields
from typing import Any, Optional


DEFAULT_API_URL = "https://api.github.com"
DEFAULT_MANIFEST = "upstream.json"
DEFAULT_SKILLS_DIR = "skills"
DEFAULT_WORKERS = 1  # 默认串行；并发需显式开启
MAX_WORKERS = 8
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF = 1.0  # 指数退避的基数（秒）
DEFAULT_TIMEOUT = 30.0
DEFAULT_RATE_LIMIT_MAX_WAIT = 60.0  # 超过该等待时长的限流条目留到下次运行

# Token 读取顺序
TOKEN_ENV_VARS = ("GITHUB_TOKEN", "GH_TOKEN")


@dataclass
class Settings:
    root: str
    manifest_path: str
    skills_dir: str
    github_token: str
    api_url: str
    workers: int
    max_retries: int
    backoff: float
    timeout: float
    rate_limit_max_wait: float


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _read_token() -> str:
    for name in TOKEN_ENV_VARS:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return ""


def load_settings(**overrides: Any) -> Settings:
    """加载运行时配置。

    优先级：内置默认值 → 环境变量 → 显式覆盖（值为 None 的覆盖项被忽略）。
    `manifest_path` 与 `skills_dir` 若为相对路径，则相对于 `root` 解析。
    """
    unknown = set(overrides) - {f.name for f in fields(Settings)}
    if unknown:
        raise TypeError(f"unknown settings: {', '.join(sorted(unknown))}")
    ov = {k: v for k, v in overrides.items() if v is not None}

    root = os.path.abspath(ov.get("root") or os.environ.get("UPSTREAM_ROOT") or os.getcwd())
    manifest_path = ov.get("manifest_path") or os.environ.get("UPSTREAM_MANIFEST") or DEFAULT_MANIFEST
    skills_dir = ov.get("skills_dir") or os.environ.get("SKILLS_DIR") or DEFAULT_SKILLS_DIR

    workers = int(ov.get("workers", _env_int("SYNC_WORKERS", DEFAULT_WORKERS)))
    workers = min(max(workers, 1), MAX_WORKERS)

    return Settings(
        root=root,
        manifest_path=to_abs_under_root(root, manifest_path),
        skills_dir=to_abs_under_root(root, skills_dir),
        github_token=ov.get("github_token", _read_token()),
        api_url=(ov.get("api_url") or os.environ.get("GITHUB_API_URL") or DEFAULT_API_URL).rstrip("/"),
        workers=workers,
        max_retries=max(0, int(ov.get("max_retries", _env_int("SYNC_MAX_RETRIES", DEFAULT_MAX_RETRIES)))),
        backoff=float(ov.get("backoff", _env_float("SYNC_BACKOFF", DEFAULT_BACKOFF))),
        timeout=float(ov.get("timeout", _env_float("SYNC_TIMEOUT", DEFAULT_TIMEOUT))),
        rate_limit_max_wait=float(
            ov.get("rate_limit_max_wait", _env_float("SYNC_RATE_LIMIT_MAX_WAIT", DEFAULT_RATE_LIMIT_MAX_WAIT))
        ),
    )


def to_abs_under_root(root: str, rel: str) -> str:
    """将项目根相对路径转换为绝对路径。
    例如 root='/repo'，rel='skills/bun' → '/repo/skills/bun'
    若 rel 本身为绝对路径，则直接返回。
    """
    if os.path.isabs(rel):
        return os.path.normpath(rel)
    return os.path.normpath(os.path.join(root, rel))


def skill_dir(settings: Settings, local_path: Optional[str], skill_name: str) -> str:
    """技能的本地目录：显式 localPath 优先，否则为 `<skills_dir>/<skill_name>`。"""
    if local_path:
        return to_abs_under_root(settings.root, local_path)
    return os.path.join(settings.skills_dir, skill_name)
