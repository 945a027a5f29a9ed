"""命令行入口

退出码：
- 0：全部技能 unchanged/updated；
- 1：至少一个技能 failed；
- 2：manifest 错误或参数错误（在任何网络请求之前），或同步后保存 manifest 失败
  （此时仍先打印摘要）；
- 130：被 SIGINT 中断且没有失败条目。
"""

from __future__ import annotations

from typing import Optional, Tuple

import click

from upstream_sync import __version__
from upstream_sync.core.config import MAX_WORKERS, load_settings
from upstream_sync.core.engine import SyncEngine
from upstream_sync.core.errors import ManifestError
from upstream_sync.core.github_api import GitHubContentsAPI
from upstream_sync.core.manifest import ManifestStore
from upstream_sync.session import EXIT_USAGE, SyncSession
from upstream_sync.utils.logging import err, log, mask_token


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--skill", "skills", multiple=True, metavar="NAME",
              help="Only sync this skill (repeatable).")
@click.option("--new-only", is_flag=True, help="Only sync skills that were never synced.")
@click.option("--workers", type=click.IntRange(1, MAX_WORKERS), default=None,
              help="Skills processed concurrently (default: SYNC_WORKERS or 1).")
@click.option("--manifest", "manifest_path", type=click.Path(dir_okay=False), default=None,
              help="Path to upstream.json (default: <root>/upstream.json).")
@click.option("--root", type=click.Path(file_okay=False), default=None,
              help="Project root (default: UPSTREAM_ROOT or the current directory).")
@click.option("--skills-dir", default=None,
              help="Directory holding one folder per skill (default: <root>/skills).")
@click.version_option(__version__, prog_name="upstream-sync")
@click.pass_context
def main(
    ctx: click.Context,
    skills: Tuple[str, ...],
    new_only: bool,
    workers: Optional[int],
    manifest_path: Optional[str],
    root: Optional[str],
    skills_dir: Optional[str],
) -> None:
    """Sync upstream-tracked skills from GitHub into the local skills directory."""
    try:
        st = load_settings(
            root=root,
            manifest_path=manifest_path,
            skills_dir=skills_dir,
            workers=workers,
        )
    except ValueError as e:
        err(str(e))
        ctx.exit(EXIT_USAGE)

    store = ManifestStore(st.manifest_path)
    try:
        manifest = store.load()
    except ManifestError as e:
        err(f"ManifestError: {e}")
        ctx.exit(EXIT_USAGE)

    if st.github_token:
        log(f"GitHub auth: {mask_token('Bearer ' + st.github_token)}")
    else:
        log("No GITHUB_TOKEN set: using unauthenticated requests (60 requests/hour)")

    with GitHubContentsAPI(
        token=st.github_token,
        api_url=st.api_url,
        timeout=st.timeout,
        max_retries=st.max_retries,
        backoff=st.backoff,
    ) as api:
        session = SyncSession(
            SyncEngine(api, st),
            store,
            workers=st.workers,
            rate_limit_max_wait=st.rate_limit_max_wait,
        )
        restore = session.install_interrupt_handler()
        try:
            report = session.run(manifest, only=skills, new_only=new_only)
        except ManifestError as e:
            err(f"ManifestError: {e}")
            ctx.exit(EXIT_USAGE)
        finally:
            restore()

    SyncSession.print_summary(report)
    if report.saved:
        log(f"Manifest updated: {st.manifest_path}")
    ctx.exit(report.exit_code)
