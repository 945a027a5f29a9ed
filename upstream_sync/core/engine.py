"""Sync Engine：单个技能的同步

对每个 manifest 条目：
1. 解析上游 ref 当前的 HEAD SHA；
2. 与 lastSyncedSha 相同 → unchanged，不再有任何网络/磁盘操作；
3. trackOnly 条目只记录新 SHA；
4. 否则拉取 `sourceRepo@HEAD:sourcePath` 全部文件并整体替换本地目录；
5. 任意失败 → failed，本地目录与 manifest 条目保持原样。
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from upstream_sync.core.config import Settings, skill_dir
from upstream_sync.core.errors import NotFoundError, SyncError, WriteError
from upstream_sync.core.github_api import GitHubContentsAPI
from upstream_sync.core.manifest import ManifestEntry
from upstream_sync.core.materialize import replace_tree
from upstream_sync.utils.logging import err, log


class SyncStatus(str, Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass
class SyncResult:
    """单个条目的同步结果（不持久化）"""
    skill_name: str
    status: SyncStatus
    error: Optional[Exception] = None
    sha: Optional[str] = None
    synced_at: Optional[str] = None
    files_written: int = 0

    @property
    def error_kind(self) -> str:
        if self.error is None:
            return ""
        if isinstance(self.error, SyncError):
            return self.error.kind
        return type(self.error).__name__


def utc_now() -> str:
    """当前时间（ISO 8601，UTC）"""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SyncEngine:
    """单条目同步器

    - api: GitHub 客户端
    - settings: 用于计算技能本地目录
    - clock: 生成同步时间戳，测试时可注入
    - _write_lock: 保证两个技能的写入不会交错
    """

    def __init__(
        self,
        api: GitHubContentsAPI,
        settings: Settings,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        self.api = api
        self.st = settings
        self.clock = clock
        self._write_lock = threading.Lock()

    def local_dir(self, entry: ManifestEntry) -> str:
        return skill_dir(self.st, entry.local_path, entry.skill_name)

    def sync_one(self, entry: ManifestEntry) -> SyncResult:
        """同步一个条目；除 ManifestError 外的错误都转换为 failed 结果"""
        name = entry.skill_name
        try:
            head = self.api.resolve_head_sha(entry.source_repo, entry.source_ref)
            if entry.last_synced_sha == head:
                log(f"{name}: unchanged ({head[:8]})")
                return SyncResult(name, SyncStatus.UNCHANGED, sha=head)

            old = entry.last_synced_sha[:8] if entry.last_synced_sha else "never"
            log(f"{name}: {old} -> {head[:8]}")

            written = 0
            if not entry.track_only:
                files = self.api.fetch_tree(entry.source_repo, head, entry.source_path)
                if not files:
                    raise NotFoundError(f"{entry.source_repo}@{head[:8]}:{entry.source_path} has no files")
                with self._write_lock:
                    written = replace_tree(self.local_dir(entry), files)

            return SyncResult(
                name,
                SyncStatus.UPDATED,
                sha=head,
                synced_at=self.clock(),
                files_written=written,
            )
        except SyncError as e:
            err(f"{name}: {e.kind}: {e}")
            return SyncResult(name, SyncStatus.FAILED, error=e)
        except OSError as e:
            wrapped = WriteError(f"{type(e).__name__}: {e}")
            err(f"{name}: {wrapped.kind}: {wrapped}")
            return SyncResult(name, SyncStatus.FAILED, error=wrapped)
