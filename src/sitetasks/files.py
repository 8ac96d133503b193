"""Copy static files into the output folder."""

import shutil
from pathlib import Path

from sitepipe import task
from sitepipe.config import SiteConfig
from sitepipe.logging import get_logger
from sitepipe.utils import expand_globs, static_base


@task(name="copy_files")
def copy_files(config: SiteConfig):
    """Copy static files into the output folder."""
    base = config.path(static_base(config.copy.input))
    out_dir = config.path(config.copy.output)
    count = 0
    for src in expand_globs([config.copy.input], Path(config.root)):
        if not src.is_file():
            continue
        target = out_dir / src.relative_to(base)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, target)
        count += 1
    get_logger("sitepipe.tasks.files").info("Copied %d files", count)
