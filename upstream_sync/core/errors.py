"""同步错误类型

- ManifestError：manifest 缺失/损坏，整个运行直接中止；
- RemoteError 及其子类：GitHub 侧失败，按条目记为 failed；
- WriteError：本地写入失败，按条目记为 failed。
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """所有同步错误的基类"""

    @property
    def kind(self) -> str:
        return type(self).__name__


class ManifestError(SyncError):
    """upstream.json 无法读取、不是合法 JSON 或缺少必填字段"""


class WriteError(SyncError):
    """技能目录写入失败（权限、空间、非法路径）"""


class RemoteError(SyncError):
    """GitHub API 返回了无法处理的响应"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(RemoteError):
    """仓库、ref 或路径在上游不存在"""


class TransientNetworkError(RemoteError):
    """超时、连接失败或 5xx，且重试次数已耗尽"""


class RateLimitError(RemoteError):
    """触发 GitHub 限流；wait_seconds 为距离配额重置的等待时间"""

    def __init__(self, message: str, wait_seconds: float, status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.wait_seconds = max(0.0, float(wait_seconds))
