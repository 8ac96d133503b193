"""Named compositions and watch rules for the site.

    default    = clean_dist -> (build_scripts | build_styles | generate_previews | copy_files)
    build      = clean_dist -> (assets | optimize_images)
    watch      = default -> copy_images -> start_server, then watch the sources
    deploy_git = build -> validate_html -> publish_git
    deploy_ftp = build -> validate_html -> upload_ftp

`clean_dist` always finishes before anything writes into the output tree.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

from sitepipe import Orchestrator, discover_tasks, parallel, series
from sitepipe.config import SiteConfig
from sitepipe.watch import WatchRule


def build_orchestrator(config: SiteConfig, runs_dir: str | Path | None = None) -> Orchestrator:
    if runs_dir is None and config.runs_dir:
        runs_dir = config.path(config.runs_dir)
    orch = Orchestrator(config, runs_dir=runs_dir)
    for spec in discover_tasks("sitetasks").values():
        orch.add(spec)
    orch.define(
        "assets",
        parallel("build_scripts", "build_styles", "generate_previews", "copy_files"),
    )
    orch.define("default", series("clean_dist", "assets"))
    orch.define("build", series("clean_dist", parallel("assets", "optimize_images")))
    orch.define("watch", series("default", "copy_images", "start_server"))
    orch.define("deploy_git", series("build", "validate_html", "publish_git"))
    orch.define("deploy_ftp", series("build", "validate_html", "upload_ftp"))
    return orch


def watch_rules(config: SiteConfig, full: bool = False) -> List[WatchRule]:
    """Rules for `sitepipe watch`.

    With `full`, any change under the input folder rebuilds everything. Otherwise
    only the asset type that changed is rebuilt.
    """
    if full:
        return [WatchRule([config.input], series("default", "copy_images", "reload_browser"))]
    return [
        WatchRule([config.styles.input], series("build_styles", "reload_browser")),
        WatchRule([config.scripts.input, config.scripts.input + "/*.js"], series("build_scripts", "reload_browser")),
        WatchRule(
            [config.images.input],
            series(parallel("copy_images", "generate_previews"), "reload_browser"),
        ),
        WatchRule([config.copy.input], series("copy_files", "reload_browser")),
    ]
