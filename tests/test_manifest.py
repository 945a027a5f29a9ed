"""Tests for the manifest store."""

from __future__ import annotations

import json
import os
from unittest.mock import patch

import pytest

from conftest import write_manifest
from upstream_sync.core.errors import ManifestError
from upstream_sync.core.manifest import Manifest, ManifestEntry, ManifestStore

BUN = {
    "sourceRepo": "org/bun-skills",
    "sourcePath": "skills/bun",
    "sourceRef": "main",
    "lastSyncedSha": "abc123",
}


class TestLoad:
    def test_object_keyed_by_skill_name(self, tmp_path):
        path = write_manifest(tmp_path / "upstream.json", {"bun": BUN})
        manifest = ManifestStore(str(path)).load()

        entry = manifest.get("bun")
        assert entry == ManifestEntry(
            skill_name="bun",
            source_repo="org/bun-skills",
            source_path="skills/bun",
            source_ref="main",
            last_synced_sha="abc123",
        )
        assert entry.last_synced_at is None

    def test_array_of_entries(self, tmp_path):
        path = write_manifest(tmp_path / "upstream.json", [
            dict(BUN, skillName="bun"),
            {"skillName": "playwright", "sourceRepo": "org/pw", "sourcePath": "pw"},
        ])
        manifest = ManifestStore(str(path)).load()
        assert manifest.names() == ["bun", "playwright"]
        assert manifest.get("playwright").source_ref is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(ManifestError, match="not found"):
            ManifestStore(str(tmp_path / "upstream.json")).load()

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "upstream.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ManifestError, match="invalid JSON"):
            ManifestStore(str(path)).load()

    @pytest.mark.parametrize("missing", ["sourceRepo", "sourcePath"])
    def test_missing_required_field(self, tmp_path, missing):
        entry = {k: v for k, v in BUN.items() if k != missing}
        path = write_manifest(tmp_path / "upstream.json", {"bun": entry})
        with pytest.raises(ManifestError, match=missing):
            ManifestStore(str(path)).load()

    def test_bad_repo_format(self, tmp_path):
        path = write_manifest(tmp_path / "upstream.json", {"bun": dict(BUN, sourceRepo="bun-skills")})
        with pytest.raises(ManifestError, match="owner/repo"):
            ManifestStore(str(path)).load()

    def test_duplicate_skill_name_in_array(self, tmp_path):
        path = write_manifest(tmp_path / "upstream.json", [
            dict(BUN, skillName="bun"),
            dict(BUN, skillName="bun"),
        ])
        with pytest.raises(ManifestError, match="duplicate"):
            ManifestStore(str(path)).load()

    def test_array_entry_without_skill_name(self, tmp_path):
        path = write_manifest(tmp_path / "upstream.json", [BUN])
        with pytest.raises(ManifestError, match="skillName"):
            ManifestStore(str(path)).load()

    def test_wrong_top_level_type(self, tmp_path):
        path = write_manifest(tmp_path / "upstream.json", "bun")
        with pytest.raises(ManifestError):
            ManifestStore(str(path)).load()

    def test_track_only_must_be_boolean(self, tmp_path):
        path = write_manifest(tmp_path / "upstream.json", {"bun": dict(BUN, trackOnly="yes")})
        with pytest.raises(ManifestError, match="trackOnly"):
            ManifestStore(str(path)).load()


class TestSave:
    def test_round_trip_keeps_unknown_keys(self, tmp_path):
        path = write_manifest(tmp_path / "upstream.json", {
            "bun": dict(BUN, description="Bun runtime docs"),
        })
        store = ManifestStore(str(path))
        store.save(store.load())

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["bun"]["description"] == "Bun runtime docs"
        assert data["bun"]["lastSyncedSha"] == "abc123"
        assert path.read_text(encoding="utf-8").endswith("}\n")

    def test_array_manifest_is_saved_keyed_by_name(self, tmp_path):
        path = write_manifest(tmp_path / "upstream.json", [dict(BUN, skillName="bun")])
        store = ManifestStore(str(path))
        store.save(store.load())
        data = json.loads(path.read_text(encoding="utf-8"))
        assert list(data) == ["bun"]
        assert "skillName" not in data["bun"]

    def test_crash_before_rename_keeps_original(self, tmp_path):
        path = write_manifest(tmp_path / "upstream.json", {"bun": BUN})
        original = path.read_text(encoding="utf-8")
        store = ManifestStore(str(path))
        updated = store.load().with_entry(
            store.load().get("bun").synced("def456", "2026-10-19T12:00:00Z")
        )

        with patch("upstream_sync.core.manifest.os.replace", side_effect=OSError("power loss")):
            with pytest.raises(ManifestError):
                store.save(updated)

        assert path.read_text(encoding="utf-8") == original
        assert json.loads(original)["bun"]["lastSyncedSha"] == "abc123"
        assert os.listdir(tmp_path) == ["upstream.json"]

    def test_save_preserves_file_mode(self, tmp_path):
        path = write_manifest(tmp_path / "upstream.json", {"bun": BUN})
        os.chmod(path, 0o644)
        store = ManifestStore(str(path))
        store.save(store.load())
        assert os.stat(path).st_mode & 0o777 == 0o644


class TestManifestValue:
    def test_with_entry_returns_copy(self):
        entry = ManifestEntry("bun", "org/bun-skills", "skills/bun", "main", "abc123")
        manifest = Manifest([entry])

        updated = manifest.with_entry(entry.synced("def456", "2026-10-19T12:00:00Z"))

        assert manifest.get("bun").last_synced_sha == "abc123"
        assert updated.get("bun").last_synced_sha == "def456"
        assert updated.get("bun").last_synced_at == "2026-10-19T12:00:00Z"
        assert updated != manifest

    def test_order_is_preserved(self):
        entries = [ManifestEntry(n, "o/r", n) for n in ("c", "a", "b")]
        manifest = Manifest(entries).with_entry(ManifestEntry("a", "o/r", "a", last_synced_sha="x"))
        assert manifest.names() == ["c", "a", "b"]
