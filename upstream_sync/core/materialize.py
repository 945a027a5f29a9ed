"""技能目录整体替换

职责：
- 将上游文件写入技能目录，且是“整棵子树替换”：本地修改不会被保留；
- 先写入同级临时目录，全部成功后再 rename 换入，失败时原目录保持不变；
- 拒绝越出技能目录的路径（绝对路径、`..`）。
"""

from __future__ import annotations

import os
import shutil
import tempfile
from typing import Iterable

from upstream_sync.core.errors import WriteError
from upstream_sync.core.github_api import RemoteFile
from upstream_sync.utils.logging import err, log


def _safe_join(root: str, rel: str) -> str:
    """拼接并校验路径仍位于 root 之内"""
    if not rel or os.path.isabs(rel) or rel.startswith(("/", "\\")):
        raise WriteError(f"refusing to write unsafe path {rel!r}")
    parts = rel.replace("\\", "/").split("/")
    if any(p in ("", ".", "..") for p in parts):
        raise WriteError(f"refusing to write unsafe path {rel!r}")
    return os.path.join(root, *parts)


def write_files(root: str, files: Iterable[RemoteFile]) -> int:
    """把文件写入 root（root 需已存在），返回写入个数"""
    count = 0
    for f in files:
        target = _safe_join(root, f.path)
        parent = os.path.dirname(target)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(target, "wb") as fh:
            fh.write(f.content)
        count += 1
    return count


def replace_tree(target_dir: str, files: Iterable[RemoteFile]) -> int:
    """用 files 整体替换 target_dir 的内容

    流程：
    1. 在 target_dir 同级创建临时目录并写入全部文件，权限沿用原目录（默认 0755）
    2. 原目录（若存在）rename 为备份
    3. 临时目录 rename 为 target_dir
    4. 删除备份

    Returns:
        写入的文件数

    Raises:
        WriteError: 任一步骤失败；此时 target_dir 保持同步前的状态
    """
    target_dir = os.path.abspath(target_dir)
    if os.path.islink(target_dir) and os.path.isdir(target_dir):
        # 指向目录的链接：替换链接目标，链接本身保留
        target_dir = os.path.realpath(target_dir)
    parent = os.path.dirname(target_dir)
    name = os.path.basename(target_dir)

    try:
        os.makedirs(parent, exist_ok=True)
        staging = tempfile.mkdtemp(prefix=f".{name}.sync-", dir=parent)
    except OSError as e:
        raise WriteError(f"cannot create staging directory next to {target_dir}: {e}") from e

    backup = None
    try:
        count = write_files(staging, files)
        exists = os.path.lexists(target_dir)
        mode = 0o755
        if exists:
            if not os.path.isdir(target_dir) or os.path.islink(target_dir):
                raise WriteError(f"{target_dir} exists and is not a directory")
            mode = os.stat(target_dir).st_mode & 0o777
        os.chmod(staging, mode)
        if exists:
            backup = tempfile.mkdtemp(prefix=f".{name}.old-", dir=parent)
            os.rmdir(backup)
            os.rename(target_dir, backup)
        try:
            os.rename(staging, target_dir)
        except OSError:
            if backup is not None:
                os.rename(backup, target_dir)
                backup = None
            raise
    except WriteError:
        shutil.rmtree(staging, ignore_errors=True)
        raise
    except OSError as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise WriteError(f"failed to write {target_dir}: {e}") from e

    if backup is not None:
        try:
            shutil.rmtree(backup)
        except OSError as e:
            # 新内容已就位，旧目录残留不影响结果
            err(f"Failed to remove old copy {backup}: {e}")

    log(f"Replaced {target_dir} with {count} files")
    return count
