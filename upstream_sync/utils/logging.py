"""简单日志工具：统一输出格式，并对 Token 进行掩码。"""

import re
import sys
from datetime import datetime, timezone


_TOKEN_RE = re.compile(r"\b(ghp_|gho_|ghs_|ghu_|github_pat_)[A-Za-z0-9_]+")


def _now():
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def log(msg: str):
    """标准输出日志（单行）。"""
    sys.stdout.write(f"[{_now()}] [upstream-sync] {msg}\n")
    sys.stdout.flush()


def err(msg: str):
    """标准错误日志（单行）。"""
    sys.stderr.write(f"[{_now()}] [upstream-sync] ERROR: {msg}\n")
    sys.stderr.flush()


def mask_token(s: str) -> str:
    """在日志中掩码 GitHub Token。

    识别 `ghp_`/`github_pat_` 等前缀的 Token 与 `Bearer xxx` 形式的头部，
    仅保留前缀，其余替换为 `***`。
    """
    if not s:
        return s
    s = _TOKEN_RE.sub(lambda m: f"{m.group(1)}***", s)
    return re.sub(r"\b(Bearer|token)\s+(?!\S*\*\*\*)\S+", r"\1 ***", s)
