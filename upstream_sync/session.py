"""Sync Session
----------------
一次完整的同步运行：选择条目 → 逐个（或有限并发）调用 SyncEngine → 汇总结果 →
合并进 manifest 副本 → 有更新时原子保存 → 打印摘要并给出退出码。

关键特性：
- 每个条目在一次运行中只处理一次，状态为 unchanged / updated / failed 之一；
- 单个条目的失败不会影响其他条目，结果只在协调线程中合并，无需共享可变状态；
- 限流的条目推迟到本轮末尾，等待配额重置（不超过 rate_limit_max_wait）后重试一次；
- SIGINT：停止派发新条目，已在处理中的条目完成后再退出，避免技能目录写一半。
"""

from __future__ import annotations

import signal
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from upstream_sync.core.engine import SyncEngine, SyncResult, SyncStatus
from upstream_sync.core.errors import ManifestError, RateLimitError
from upstream_sync.core.manifest import Manifest, ManifestEntry, ManifestStore
from upstream_sync.utils.logging import err, log

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


@dataclass
class SessionReport:
    """一次运行的结果汇总"""
    results: List[SyncResult]
    updated_manifest: Manifest
    not_started: List[str] = field(default_factory=list)
    interrupted: bool = False
    saved: bool = False
    save_error: Optional[ManifestError] = None

    @property
    def failures(self) -> List[SyncResult]:
        return [r for r in self.results if r.status is SyncStatus.FAILED]

    def counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in SyncStatus}
        for r in self.results:
            counts[r.status.value] += 1
        return counts

    @property
    def exit_code(self) -> int:
        if self.save_error is not None:
            return EXIT_USAGE
        if self.failures:
            return EXIT_FAILED
        if self.interrupted:
            return EXIT_INTERRUPTED
        return EXIT_OK

    def summary_lines(self) -> List[str]:
        c = self.counts()
        head = f"Summary: {c['updated']} updated, {c['unchanged']} unchanged, {c['failed']} failed"
        if self.not_started:
            head += f", {len(self.not_started)} not started (interrupted)"
        lines = [head]
        for r in self.failures:
            lines.append(f"  FAILED {r.skill_name}: {r.error_kind}: {r.error}")
        if self.save_error is not None:
            lines.append(f"  MANIFEST NOT SAVED: {self.save_error}")
        return lines


class SyncSession:
    """同步会话。

    - engine: 单条目同步器
    - store: manifest 存储；为 None 时不落盘（仅返回 updated_manifest）
    - workers: 并发条目数，1 表示严格串行
    - rate_limit_max_wait: 限流后愿意在本轮内等待的最长秒数
    - _stop: 中断标记，置位后不再派发新条目
    """

    def __init__(
        self,
        engine: SyncEngine,
        store: Optional[ManifestStore] = None,
        workers: int = 1,
        rate_limit_max_wait: float = 60.0,
    ) -> None:
        self.engine = engine
        self.store = store
        self.workers = max(1, workers)
        self.rate_limit_max_wait = rate_limit_max_wait
        self._stop = threading.Event()

    # -------- 中断 --------
    def request_stop(self) -> None:
        """停止派发新条目（处理中的条目会继续完成）"""
        if not self._stop.is_set():
            log("Interrupt received: finishing in-flight skills, no new ones will start")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def install_interrupt_handler(self) -> Callable[[], None]:
        """注册 SIGINT 处理：第一次请求停止，第二次恢复默认行为。

        返回用于恢复原处理器的函数。只能在主线程调用。
        """
        previous = signal.getsignal(signal.SIGINT)

        def _handler(signum, frame):
            self.request_stop()
            signal.signal(signal.SIGINT, signal.default_int_handler)

        signal.signal(signal.SIGINT, _handler)
        return lambda: signal.signal(signal.SIGINT, previous)

    # -------- 条目选择 --------
    @staticmethod
    def select(
        manifest: Manifest,
        only: Optional[Iterable[str]] = None,
        new_only: bool = False,
    ) -> List[ManifestEntry]:
        """按名称过滤（未知名称直接报错）并可只保留从未同步过的条目"""
        entries = list(manifest)
        if only:
            wanted = list(dict.fromkeys(only))
            unknown = [n for n in wanted if n not in manifest]
            if unknown:
                raise ManifestError(f"unknown skill(s): {', '.join(unknown)}")
            entries = [e for e in entries if e.skill_name in wanted]
        if new_only:
            entries = [e for e in entries if e.last_synced_sha is None]
        return entries

    # -------- 执行 --------
    def _sync_entry(self, entry: ManifestEntry) -> SyncResult:
        try:
            return self.engine.sync_one(entry)
        except Exception as e:
            err(f"{entry.skill_name}: unexpected {type(e).__name__}: {e}")
            return SyncResult(entry.skill_name, SyncStatus.FAILED, error=e)

    def _visit_sequential(
        self, entries: List[ManifestEntry], on_result: Callable[[ManifestEntry, SyncResult], None]
    ) -> List[str]:
        for i, entry in enumerate(entries):
            if self._stop.is_set():
                return [e.skill_name for e in entries[i:]]
            on_result(entry, self._sync_entry(entry))
        return []

    def _visit_concurrent(
        self, entries: List[ManifestEntry], on_result: Callable[[ManifestEntry, SyncResult], None]
    ) -> List[str]:
        pending = list(entries)
        in_flight: Dict[Future, ManifestEntry] = {}
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            while pending or in_flight:
                while pending and len(in_flight) < self.workers and not self._stop.is_set():
                    entry = pending.pop(0)
                    in_flight[executor.submit(self._sync_entry, entry)] = entry
                if not in_flight:
                    break
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    on_result(in_flight.pop(future), future.result())
        return [e.skill_name for e in pending]

    def _visit(
        self, entries: List[ManifestEntry], on_result: Callable[[ManifestEntry, SyncResult], None]
    ) -> List[str]:
        """处理条目，返回因中断而未开始的技能名"""
        if self.workers == 1 or len(entries) <= 1:
            return self._visit_sequential(entries, on_result)
        return self._visit_concurrent(entries, on_result)

    def run(
        self,
        manifest: Manifest,
        only: Optional[Iterable[str]] = None,
        new_only: bool = False,
    ) -> SessionReport:
        """执行一次同步运行。

        Args:
            manifest: 已加载的 manifest（不会被修改）
            only: 只同步这些技能
            new_only: 只同步从未同步过的技能

        Returns:
            SessionReport，results 按 manifest 顺序排列

        Raises:
            ManifestError: only 中包含未知技能

        保存 manifest 失败时不抛出，错误记录在 report.save_error 中，
        已写入的技能结果仍会返回。
        """
        entries = self.select(manifest, only, new_only)
        log(f"Syncing {len(entries)} of {len(manifest)} skills (workers={self.workers})")

        results: Dict[str, SyncResult] = {}
        rate_limited: Dict[str, SyncResult] = {}

        def collect(entry: ManifestEntry, result: SyncResult) -> None:
            if isinstance(result.error, RateLimitError):
                rate_limited[entry.skill_name] = result
            else:
                results[entry.skill_name] = result

        not_started = self._visit(entries, collect)
        if rate_limited:
            self._retry_rate_limited(entries, rate_limited, results)

        updated_manifest = manifest
        ordered: List[SyncResult] = []
        for entry in entries:
            result = results.get(entry.skill_name)
            if result is None:
                continue
            ordered.append(result)
            if result.status is SyncStatus.UPDATED:
                updated_manifest = updated_manifest.with_entry(
                    entry.synced(result.sha, result.synced_at)
                )

        report = SessionReport(
            results=ordered,
            updated_manifest=updated_manifest,
            not_started=not_started,
            interrupted=self._stop.is_set(),
        )
        if self.store is not None and any(r.status is SyncStatus.UPDATED for r in ordered):
            try:
                self.store.save(updated_manifest)
                report.saved = True
            except ManifestError as e:
                err(f"ManifestError: {e}")
                report.save_error = e
        return report

    def _retry_rate_limited(
        self,
        entries: List[ManifestEntry],
        rate_limited: Dict[str, SyncResult],
        results: Dict[str, SyncResult],
    ) -> None:
        """等待限流重置后对推迟的条目各重试一次；等待过长则留给下次运行"""
        delay = max(r.error.wait_seconds for r in rate_limited.values())
        if delay > self.rate_limit_max_wait:
            log(f"Rate limit resets in {delay:.0f}s (> {self.rate_limit_max_wait:.0f}s), "
                f"deferring {len(rate_limited)} skills to the next run")
            results.update(rate_limited)
            return

        log(f"Rate limited: waiting {delay:.0f}s before retrying {len(rate_limited)} skills")
        if self._stop.wait(delay):
            results.update(rate_limited)
            return
        for entry in entries:
            first = rate_limited.get(entry.skill_name)
            if first is None:
                continue
            if self._stop.is_set():
                results[entry.skill_name] = first
                continue
            results[entry.skill_name] = self._sync_entry(entry)

    @staticmethod
    def print_summary(report: SessionReport) -> None:
        lines = report.summary_lines()
        log(lines[0])
        for line in lines[1:]:
            err(line.strip())
