"""Script bundling task.

Entries directly under the scripts input are handled by kind: a file is
processed on its own, a directory has its `*.js` files concatenated into
`<dirname>.js`. Every resulting asset goes through the same chain: write,
rename to `.min.js`, minify, write.
"""

from __future__ import annotations

from pathlib import Path

from sitepipe import task
from sitepipe.config import SiteConfig
from sitepipe.logging import get_logger
from sitepipe.streams import Asset, StepChain, classify, tag, write_to
from sitepipe.tools import transform_bytes
from sitepipe.utils import expand_globs, static_base


log = get_logger("sitepipe.tasks.scripts")


def minify_with(config: SiteConfig):
    async def step(asset: Asset) -> Asset:
        out = await transform_bytes(config.tools.js_minify, asset.contents, ".js")
        return asset.with_contents(out)

    return step


def js_chain(config: SiteConfig) -> StepChain:
    out_dir = config.path(config.scripts.output)
    return (
        StepChain()
        .then(write_to(out_dir))
        .then(tag(".min"))
        .then(minify_with(config))
        .then(write_to(out_dir))
    )


def collect(config: SiteConfig) -> list[Asset]:
    base = config.path(static_base(config.scripts.input))
    assets: list[Asset] = []
    for entry in expand_globs([config.scripts.input], Path(config.root)):
        assets.extend(classify(entry, base).assets("*.js"))
    return assets


@task(
    name="build_scripts",
    inputs=lambda c: [c.scripts.input, c.scripts.input + "/*.js"],
    outputs=lambda c: [c.scripts.output + "*.js"],
)
async def build_scripts(config: SiteConfig):
    """Concatenate and minify scripts."""
    chain = js_chain(config)
    assets = collect(config)
    if not assets:
        log.warning("No scripts match %s", config.scripts.input)
        return
    for asset in assets:
        await chain.apply(asset)
        log.info("Bundled %s", asset.relative)
