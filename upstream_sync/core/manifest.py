"""Upstream Manifest 管理

职责：
- 加载并校验 upstream.json（技能来源仓库、路径、ref、最近同步的 SHA 与时间）
- 原子写回（临时文件 + rename），中途崩溃不会破坏原文件
- Manifest 作为值对象传递：更新返回新副本，不修改原对象

upstream.json 的规范形态是以技能名为键的对象：

    {
      "bun": {
        "sourceRepo": "org/bun-skills",
        "sourcePath": "skills/bun",
        "sourceRef": "main",
        "lastSyncedSha": "abc123",
        "lastSyncedAt": "2026-01-01T00:00:00Z"
      }
    }

也接受由带 `skillName` 的条目组成的数组，保存时统一写成对象形态。
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterator, List, Optional

from upstream_sync.core.errors import ManifestError
from upstream_sync.utils.logging import log

# Python 字段名 -> JSON 键名
_FIELD_KEYS = {
    "source_repo": "sourceRepo",
    "source_path": "sourcePath",
    "source_ref": "sourceRef",
    "last_synced_sha": "lastSyncedSha",
    "last_synced_at": "lastSyncedAt",
    "local_path": "localPath",
    "track_only": "trackOnly",
}
_REQUIRED = ("sourceRepo", "sourcePath")
_OPTIONAL_STR = ("sourceRef", "lastSyncedSha", "lastSyncedAt", "localPath")


@dataclass(frozen=True)
class ManifestEntry:
    """单个技能的来源记录"""
    skill_name: str
    source_repo: str
    source_path: str
    source_ref: Optional[str] = None  # None 表示仓库默认分支
    last_synced_sha: Optional[str] = None
    last_synced_at: Optional[str] = None  # ISO 8601 格式
    local_path: Optional[str] = None
    track_only: bool = False
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def synced(self, sha: str, synced_at: str) -> ManifestEntry:
        """返回记录了新 SHA 与同步时间的副本"""
        return replace(self, last_synced_sha=sha, last_synced_at=synced_at)

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {
            "sourceRepo": self.source_repo,
            "sourcePath": self.source_path,
        }
        if self.source_ref is not None:
            data["sourceRef"] = self.source_ref
        if self.local_path is not None:
            data["localPath"] = self.local_path
        if self.track_only:
            data["trackOnly"] = True
        data["lastSyncedSha"] = self.last_synced_sha
        data["lastSyncedAt"] = self.last_synced_at
        # 未识别的键原样保留
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, skill_name: str, data: Any) -> ManifestEntry:
        if not isinstance(skill_name, str) or not skill_name.strip():
            raise ManifestError("skillName must be a non-empty string")
        if not isinstance(data, dict):
            raise ManifestError(f"{skill_name}: entry must be an object")
        for key in _REQUIRED:
            if not isinstance(data.get(key), str):
                raise ManifestError(f"{skill_name}: missing required field '{key}'")
        for key in _OPTIONAL_STR:
            if data.get(key) is not None and not isinstance(data[key], str):
                raise ManifestError(f"{skill_name}: field '{key}' must be a string")
        if not isinstance(data.get("trackOnly", False), bool):
            raise ManifestError(f"{skill_name}: field 'trackOnly' must be a boolean")

        repo = data["sourceRepo"].strip().strip("/")
        owner, _, name = repo.partition("/")
        if not owner or not name or "/" in name:
            raise ManifestError(f"{skill_name}: sourceRepo must look like 'owner/repo', got {repo!r}")

        known = set(_FIELD_KEYS.values()) | {"skillName"}
        return cls(
            skill_name=skill_name,
            source_repo=repo,
            source_path=data["sourcePath"].strip("/"),
            source_ref=data.get("sourceRef") or None,
            last_synced_sha=data.get("lastSyncedSha") or None,
            last_synced_at=data.get("lastSyncedAt") or None,
            local_path=data.get("localPath") or None,
            track_only=data.get("trackOnly", False),
            extra={k: v for k, v in data.items() if k not in known},
        )


class Manifest:
    """技能名 -> ManifestEntry 的有序集合（值语义）"""

    def __init__(self, entries: Optional[List[ManifestEntry]] = None):
        self._entries: Dict[str, ManifestEntry] = {}
        for entry in entries or []:
            if entry.skill_name in self._entries:
                raise ManifestError(f"duplicate skillName: {entry.skill_name}")
            self._entries[entry.skill_name] = entry

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(list(self._entries.values()))

    def __contains__(self, skill_name: object) -> bool:
        return skill_name in self._entries

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Manifest):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def get(self, skill_name: str) -> Optional[ManifestEntry]:
        return self._entries.get(skill_name)

    def names(self) -> List[str]:
        return list(self._entries)

    def with_entry(self, entry: ManifestEntry) -> Manifest:
        """返回替换（或追加）了该条目的新 Manifest"""
        entries = dict(self._entries)
        entries[entry.skill_name] = entry
        return Manifest(list(entries.values()))

    def to_dict(self) -> dict:
        return {name: entry.to_dict() for name, entry in self._entries.items()}

    @classmethod
    def from_json(cls, data: Any) -> Manifest:
        if isinstance(data, dict):
            return cls([ManifestEntry.from_dict(name, item) for name, item in data.items()])
        if isinstance(data, list):
            entries = []
            for index, item in enumerate(data):
                if not isinstance(item, dict):
                    raise ManifestError(f"entry #{index} must be an object")
                entries.append(ManifestEntry.from_dict(item.get("skillName"), item))
            return cls(entries)
        raise ManifestError("manifest must be a JSON object keyed by skill name or an array of entries")


class ManifestStore:
    """upstream.json 的唯一读写入口"""

    def __init__(self, manifest_path: str):
        self.manifest_path = manifest_path

    def load(self) -> Manifest:
        """读取并校验 manifest

        Raises:
            ManifestError: 文件不存在/不可读、不是合法 JSON 或字段不完整
        """
        try:
            with open(self.manifest_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ManifestError(f"manifest not found: {self.manifest_path}")
        except json.JSONDecodeError as e:
            raise ManifestError(f"invalid JSON in {self.manifest_path}: {e}")
        except (OSError, UnicodeDecodeError) as e:
            raise ManifestError(f"cannot read {self.manifest_path}: {e}")

        manifest = Manifest.from_json(data)
        log(f"Loaded manifest: {len(manifest)} skills")
        return manifest

    def save(self, manifest: Manifest) -> None:
        """原子写入：先写同目录临时文件并 fsync，再 rename 覆盖"""
        directory = os.path.dirname(os.path.abspath(self.manifest_path))
        payload = json.dumps(manifest.to_dict(), indent=2, ensure_ascii=False) + "\n"

        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=".upstream-", suffix=".json.tmp", dir=directory
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            # mkstemp 创建的是 0600，沿用原文件权限
            try:
                mode = os.stat(self.manifest_path).st_mode & 0o777
            except FileNotFoundError:
                mode = 0o644
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, self.manifest_path)
            tmp_path = None
        except OSError as e:
            raise ManifestError(f"failed to save {self.manifest_path}: {e}")
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        log(f"Saved manifest: {len(manifest)} skills")
