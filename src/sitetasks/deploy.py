"""Deployment tasks: publish to GitHub Pages, upload over FTP."""

from __future__ import annotations

import contextvars
import ftplib
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path, PurePosixPath
from typing import Callable, List

from sitepipe import task
from sitepipe.config import FtpOptions, SiteConfig
from sitepipe.logging import get_logger
from sitepipe.tools import render, run_command
from sitepipe.utils import expand_globs


log = get_logger("sitepipe.tasks.deploy")


@task(name="publish_git")
async def publish_git(config: SiteConfig):
    """Publish the output folder to GitHub Pages."""
    out = config.path(config.output)
    if not out.is_dir():
        raise FileNotFoundError(f"Nothing to publish: {out} does not exist")
    argv = render(config.tools.ghpages, dir=out)
    await run_command(argv, cwd=Path(config.root))
    log.info("Published %s", out)


def _connect(opts: FtpOptions) -> ftplib.FTP:
    ftp = ftplib.FTP()
    ftp.connect(opts.host, opts.port, timeout=opts.timeout)
    ftp.login(opts.user, opts.password)
    return ftp


def _ensure_dirs(ftp: ftplib.FTP, remote_dir: PurePosixPath, known: set) -> None:
    parts = []
    for part in remote_dir.parts:
        parts.append(part)
        d = str(PurePosixPath(*parts))
        if d in known or d == "/":
            continue
        try:
            ftp.mkd(d)
        except ftplib.error_perm as e:
            # 550: already exists
            if not str(e).startswith("550"):
                raise
        known.add(d)


def upload_batch(
    opts: FtpOptions,
    files: List[tuple[Path, PurePosixPath]],
    connect: Callable[[FtpOptions], ftplib.FTP] = _connect,
) -> int:
    ftp = connect(opts)
    known: set = set()
    try:
        for local, remote in files:
            _ensure_dirs(ftp, remote.parent, known)
            with open(local, "rb") as f:
                ftp.storbinary(f"STOR {remote}", f)
            log.debug("Uploaded %s -> %s", local, remote)
    finally:
        ftp.quit()
    return len(files)


def plan_upload(config: SiteConfig) -> List[tuple[Path, PurePosixPath]]:
    base = config.path(config.output)
    remote_root = PurePosixPath(config.ftp.remote_dir)
    files = [p for p in expand_globs([config.deploy_src], Path(config.root)) if p.is_file()]
    return [(p, remote_root / p.relative_to(base).as_posix()) for p in files]


@task(name="upload_ftp")
def upload_ftp(config: SiteConfig, connect: Callable[[FtpOptions], ftplib.FTP] = _connect):
    """Upload the output folder over FTP."""
    opts = config.ftp
    if not opts.host:
        raise ValueError("FTP host is not configured (set SITEPIPE_FTP_HOST)")
    plan = plan_upload(config)
    if not plan:
        raise FileNotFoundError(f"Nothing to upload: no files match {config.deploy_src}")
    workers = max(1, min(opts.parallel, len(plan)))
    batches = [plan[i::workers] for i in range(workers)]
    uploaded = 0
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [
            executor.submit(contextvars.copy_context().run, upload_batch, opts, batch, connect)
            for batch in batches
        ]
        for fut in as_completed(futures):
            uploaded += fut.result()
    log.info("Uploaded %d files to %s:%s", uploaded, opts.host, opts.remote_dir)
