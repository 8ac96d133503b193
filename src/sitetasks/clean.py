"""Remove pre-existing content from the output folder."""

import shutil

from sitepipe import task
from sitepipe.config import SiteConfig
from sitepipe.logging import get_logger


@task(name="clean_dist")
def clean_dist(config: SiteConfig, done):
    """Delete the output directory."""
    out = config.path(config.output)
    if out.exists():
        get_logger("sitepipe.tasks.clean").info("Removing %s", out)
        shutil.rmtree(out)
    done()
