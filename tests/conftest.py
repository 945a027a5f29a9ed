"""Shared test fixtures: an in-memory GitHub served through httpx.MockTransport."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from upstream_sync.core.config import Settings, load_settings
from upstream_sync.core.engine import SyncEngine
from upstream_sync.core.github_api import GitHubContentsAPI

API = "https://api.github.com"
RAW = "https://raw.example.test"
SYNC_TIME = "2026-10-19T12:00:00Z"


class FakeGitHub:
    """Minimal GitHub REST API: default branch, commits/{ref}, contents, raw downloads."""

    def __init__(self) -> None:
        self.default_branches: Dict[str, str] = {}
        self.heads: Dict[Tuple[str, str], str] = {}
        self.trees: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self.page_size: Optional[int] = None
        self.requests: List[httpx.Request] = []
        # Called before routing; returning a response short-circuits the request.
        self.intercept: Optional[Callable[[httpx.Request], Optional[httpx.Response]]] = None

    def publish(self, repo: str, ref: str, sha: str, files: Dict[str, str]) -> None:
        self.heads[(repo, ref)] = sha
        self.trees[(repo, sha)] = {p: c.encode("utf-8") for p, c in files.items()}
        self.default_branches.setdefault(repo, ref)

    def calls(self, kind: str) -> List[httpx.Request]:
        """Requests of one kind: 'commits', 'contents', 'raw' or 'repo'."""
        return [r for r in self.requests if _kind(r) == kind]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.intercept is not None:
            resp = self.intercept(request)
            if resp is not None:
                return resp

        if request.url.host == "raw.example.test":
            _, owner, name, sha, path = request.url.path.split("/", 4)
            content = self.trees.get((f"{owner}/{name}", sha), {}).get(path)
            if content is None:
                return httpx.Response(404, text="404: Not Found")
            return httpx.Response(200, content=content)

        parts = request.url.path.strip("/").split("/")
        if len(parts) < 3 or parts[0] != "repos":
            return _not_found()
        repo = f"{parts[1]}/{parts[2]}"
        if len(parts) == 3:
            if repo not in self.default_branches:
                return _not_found()
            return httpx.Response(200, json={"full_name": repo, "default_branch": self.default_branches[repo]})
        if parts[3] == "commits":
            ref = "/".join(parts[4:])
            if repo not in self.default_branches:
                return _not_found()
            sha = self.heads.get((repo, ref))
            if sha is None:
                return httpx.Response(422, json={"message": f"No commit found for SHA: {ref}"})
            return httpx.Response(200, text=sha)
        if parts[3] == "contents":
            return self._contents(request, repo, "/".join(parts[4:]))
        return _not_found()

    def _contents(self, request: httpx.Request, repo: str, path: str) -> httpx.Response:
        sha = request.url.params.get("ref")
        tree = self.trees.get((repo, sha))
        if tree is None:
            return _not_found()
        if path in tree:
            return httpx.Response(200, json=self._item(repo, sha, path, "file"))

        prefix = f"{path}/" if path else ""
        children: Dict[str, str] = {}
        for file_path in sorted(tree):
            if not file_path.startswith(prefix):
                continue
            rest = file_path[len(prefix):]
            head = rest.split("/", 1)[0]
            children[prefix + head] = "dir" if "/" in rest else "file"
        if not children:
            return _not_found()
        items = [self._item(repo, sha, p, kind) for p, kind in children.items()]

        headers = {}
        if self.page_size:
            page = int(request.url.params.get("page", "1"))
            start = (page - 1) * self.page_size
            if start + self.page_size < len(items):
                next_url = request.url.copy_set_param("page", str(page + 1))
                headers["Link"] = f'<{next_url}>; rel="next"'
            items = items[start:start + self.page_size]
        return httpx.Response(200, json=items, headers=headers)

    @staticmethod
    def _item(repo: str, sha: str, path: str, kind: str) -> dict:
        return {
            "name": path.rsplit("/", 1)[-1],
            "path": path,
            "type": kind,
            "sha": "0" * 40,
            "download_url": f"{RAW}/{repo}/{sha}/{path}" if kind == "file" else None,
        }


def _kind(request: httpx.Request) -> str:
    if request.url.host == "raw.example.test":
        return "raw"
    parts = request.url.path.strip("/").split("/")
    if len(parts) == 3:
        return "repo"
    return parts[3] if len(parts) > 3 else ""


def _not_found() -> httpx.Response:
    return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def api(github: FakeGitHub, sleeps: List[float]):
    client = GitHubContentsAPI(
        token="ghp_testtoken",
        transport=httpx.MockTransport(github.handler),
        max_retries=3,
        backoff=0.5,
        sleep=sleeps.append,
        clock=lambda: 1_000_000.0,
    )
    yield client
    client.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return load_settings(root=str(tmp_path), github_token="")


@pytest.fixture
def engine(api: GitHubContentsAPI, settings: Settings) -> SyncEngine:
    return SyncEngine(api, settings, clock=lambda: SYNC_TIME)


def write_manifest(path: Path, data) -> Path:
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


def read_tree(root: Path) -> Dict[str, str]:
    """Relative path -> text for every file under root."""
    return {
        str(p.relative_to(root)).replace("\\", "/"): p.read_text(encoding="utf-8")
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }
