"""Sass compilation task.

Every non-partial `.scss`/`.sass` file under the styles input is compiled to
expanded CSS, optionally piped through the autoprefix command, written as
`name.css`, then compressed and written again as `name.min.css`. Output keeps
the source's directory structure relative to the styles base.
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from sitepipe import task
from sitepipe.config import SiteConfig
from sitepipe.logging import get_logger
from sitepipe.tools import render, run_command, transform_bytes
from sitepipe.utils import expand_globs, static_base


log = get_logger("sitepipe.tasks.styles")


def _sources(config: SiteConfig) -> list[Path]:
    return [
        p
        for p in expand_globs([config.styles.input], Path(config.root))
        if p.is_file() and not p.name.startswith("_")
    ]


async def compile_sass(config: SiteConfig, src: Path, style: str = "expanded") -> bytes:
    with tempfile.TemporaryDirectory(prefix="sitepipe-sass-") as tmp:
        dest = Path(tmp) / (src.stem + ".css")
        await run_command(render(config.tools.sass, src=src, dest=dest, style=style))
        return dest.read_bytes()


@task(
    name="build_styles",
    inputs=lambda c: [c.styles.input],
    outputs=lambda c: [c.styles.output + "**/*.css"],
)
async def build_styles(config: SiteConfig):
    """Compile, prefix and minify Sass files."""
    base = config.path(static_base(config.styles.input))
    out_dir = config.path(config.styles.output)
    sources = _sources(config)
    if not sources:
        log.warning("No Sass sources match %s", config.styles.input)
        return
    for src in sources:
        css = await compile_sass(config, src)
        if config.tools.autoprefix:
            css = await transform_bytes(config.tools.autoprefix, css, ".css")
        rel = src.relative_to(base).with_suffix(".css")
        target = out_dir / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(css)
        minified = await transform_bytes(config.tools.sass, css, ".css", style="compressed")
        target.with_name(target.stem + ".min.css").write_bytes(minified)
        log.info("Compiled %s", rel)
