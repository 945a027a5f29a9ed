"""GitHub Contents API 封装

职责：
- 解析仓库某个 ref 当前的 commit SHA
- 获取某个 SHA 下指定目录的完整文件列表（递归、分页全部取完）并下载内容
- 区分错误类型：404 → NotFoundError；限流 → RateLimitError（不重试，交给调用方）；
  超时/连接失败/5xx → 指数退避重试，耗尽后 TransientNetworkError
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx

from upstream_sync.core.config import DEFAULT_API_URL
from upstream_sync.core.errors import (
    NotFoundError,
    RateLimitError,
    RemoteError,
    TransientNetworkError,
)
from upstream_sync.utils.logging import log, mask_token


@dataclass(frozen=True)
class RemoteFile:
    """上游文件：path 相对于技能根目录"""
    path: str
    content: bytes


class GitHubContentsAPI:
    """GitHub REST API 客户端（只读）"""

    def __init__(
        self,
        token: str = "",
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff: float = 1.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        """初始化 API 客户端

        Args:
            token: GitHub Token，为空时匿名访问（限流更严格）
            api_url: API 根地址
            timeout: 单次请求超时（秒）
            max_retries: 瞬时错误的最大重试次数
            backoff: 指数退避基数（秒），第 n 次重试前等待 backoff * 2**n
            transport: 自定义 httpx transport（测试用）
            sleep/clock: 可注入的等待与时钟函数
        """
        self.api_url = api_url.rstrip("/")
        self.max_retries = max_retries
        self.backoff = backoff
        self._sleep = sleep
        self._clock = clock
        self._default_branches: Dict[str, str] = {}
        self._lock = threading.Lock()

        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "upstream-sync/1.0",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.authenticated = bool(token)
        self._client = httpx.Client(
            headers=headers,
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubContentsAPI:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # -------- 请求与错误分类 --------
    def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """发送 HTTP 请求，瞬时错误带指数退避重试"""
        for attempt in range(self.max_retries + 1):
            try:
                resp = self._client.request(method, url, params=params, headers=headers)
            except httpx.TransportError as e:
                if attempt < self.max_retries:
                    self._backoff(attempt, f"{type(e).__name__} for {url}")
                    continue
                raise TransientNetworkError(
                    f"{method} {url} failed after {attempt + 1} attempts: {mask_token(str(e)) or type(e).__name__}"
                ) from e

            if resp.status_code >= 500:
                if attempt < self.max_retries:
                    self._backoff(attempt, f"HTTP {resp.status_code} for {url}")
                    continue
                raise TransientNetworkError(
                    f"{method} {url} failed after {attempt + 1} attempts: HTTP {resp.status_code}",
                    resp.status_code,
                )

            self._raise_for_status(resp, url)
            return resp
        raise RuntimeError("Max retries exceeded")

    def _backoff(self, attempt: int, reason: str) -> None:
        delay = self.backoff * (2 ** attempt)
        log(f"{reason}, retrying in {delay:.1f}s ({attempt + 1}/{self.max_retries})")
        self._sleep(delay)

    def _raise_for_status(self, resp: httpx.Response, url: str) -> None:
        status = resp.status_code
        if status < 400:
            return
        message = _error_message(resp)
        if status in (403, 429):
            wait = self._rate_limit_wait(resp)
            if wait is not None:
                raise RateLimitError(
                    f"GitHub rate limit exceeded for {url}, resets in {wait:.0f}s",
                    wait,
                    status,
                )
        if status == 404:
            raise NotFoundError(f"not found: {url}", status)
        raise RemoteError(f"GitHub API error {status} for {url}: {message}", status)

    def _rate_limit_wait(self, resp: httpx.Response) -> Optional[float]:
        """根据响应头计算需要等待的秒数；不是限流响应时返回 None"""
        retry_after = resp.headers.get("retry-after")
        if retry_after is not None:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass
        if resp.headers.get("x-ratelimit-remaining") == "0":
            reset = resp.headers.get("x-ratelimit-reset")
            try:
                return max(0.0, float(reset) - self._clock())
            except (TypeError, ValueError):
                return 60.0
        return None

    # -------- ref 解析 --------
    def default_branch(self, repo: str) -> str:
        """仓库默认分支（按仓库缓存）"""
        with self._lock:
            cached = self._default_branches.get(repo)
        if cached:
            return cached
        resp = self._request("GET", f"{self.api_url}/repos/{repo}")
        branch = resp.json().get("default_branch")
        if not branch:
            raise RemoteError(f"repository {repo} reports no default branch")
        with self._lock:
            self._default_branches[repo] = branch
        return branch

    def resolve_head_sha(self, repo: str, ref: Optional[str] = None) -> str:
        """返回 ref 当前指向的 commit SHA

        Args:
            repo: owner/repo
            ref: 分支或 tag；None 时使用仓库默认分支

        Raises:
            NotFoundError: 仓库或 ref 不存在
        """
        ref = ref or self.default_branch(repo)
        url = f"{self.api_url}/repos/{repo}/commits/{quote(ref, safe='/')}"
        try:
            resp = self._request("GET", url, headers={"Accept": "application/vnd.github.sha"})
        except NotFoundError:
            raise NotFoundError(f"{repo}@{ref} not found", 404)
        except RemoteError as e:
            # 未知 ref 时 GitHub 返回 422 "No commit found for SHA"
            if e.status_code == 422:
                raise NotFoundError(f"{repo}@{ref} not found", 422) from e
            raise
        sha = resp.text.strip()
        if not sha or sha.startswith("{") or any(c.isspace() for c in sha):
            raise RemoteError(f"unexpected SHA response for {repo}@{ref}: {sha[:80]!r}")
        return sha

    # -------- 目录内容 --------
    def _contents_url(self, repo: str, path: str) -> str:
        if not path:
            return f"{self.api_url}/repos/{repo}/contents"
        return f"{self.api_url}/repos/{repo}/contents/{quote(path, safe='/')}"

    def list_contents(self, repo: str, sha: str, path: str) -> List[Dict[str, Any]]:
        """列出目录内容，按 Link 头把所有分页取完；path 指向文件时返回单元素列表"""
        url: Optional[str] = self._contents_url(repo, path)
        params: Optional[Dict[str, str]] = {"ref": sha}
        items: List[Dict[str, Any]] = []
        while url:
            resp = self._request("GET", url, params=params)
            data = resp.json()
            if isinstance(data, dict):
                return [data]
            items.extend(data)
            url = resp.links.get("next", {}).get("url")
            params = None  # next 链接已带上查询参数
        return items

    def download_file(self, repo: str, sha: str, item: Dict[str, Any]) -> bytes:
        """下载单个文件内容（二进制）"""
        download_url = item.get("download_url")
        if download_url:
            return self._request("GET", download_url).content
        resp = self._request(
            "GET",
            self._contents_url(repo, item["path"]),
            params={"ref": sha},
            headers={"Accept": "application/vnd.github.raw"},
        )
        return resp.content

    def fetch_tree(self, repo: str, sha: str, path: str) -> List[RemoteFile]:
        """获取 `repo@sha:path` 下全部文件（按路径排序）

        Raises:
            NotFoundError: path 在该 SHA 下不存在，或其下没有任何普通文件
                （例如已变成 symlink / submodule）
        """
        root = path.strip("/")
        files: List[RemoteFile] = []
        skipped: List[str] = []
        self._walk(repo, sha, root, root, files, skipped)
        if not files:
            # 空列表会把本地技能清空，按路径不存在处理
            detail = f" (skipped: {', '.join(sorted(set(skipped)))})" if skipped else ""
            raise NotFoundError(f"no regular files under {repo}@{sha[:8]}:{root or '/'}{detail}")
        files.sort(key=lambda f: f.path)
        log(f"Fetched {len(files)} files from {repo}@{sha[:8]}:{root or '/'}")
        return files

    def _walk(
        self,
        repo: str,
        sha: str,
        root: str,
        path: str,
        out: List[RemoteFile],
        skipped: List[str],
    ) -> None:
        for item in self.list_contents(repo, sha, path):
            kind = item.get("type")
            if kind == "file":
                rel = _relative_path(item["path"], root)
                out.append(RemoteFile(rel, self.download_file(repo, sha, item)))
            elif kind == "dir":
                self._walk(repo, sha, root, item["path"], out, skipped)
            else:
                # symlink / submodule 不同步
                log(f"Skipping {kind} {item.get('path')}")
                skipped.append(str(kind))


def _relative_path(item_path: str, root: str) -> str:
    if not root:
        return item_path
    if item_path == root:
        return item_path.rsplit("/", 1)[-1]
    if item_path.startswith(root + "/"):
        return item_path[len(root) + 1:]
    raise RemoteError(f"unexpected path {item_path!r} outside {root!r}")


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return resp.text[:200]
