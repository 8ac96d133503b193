"""Image tasks: previews, recompression, plain copy.

Previews are bounded thumbnails of the review images, always written as JPEG.
Optimisation re-saves JPEG/PNG/GIF with Pillow's encoder options and copies
every other file (e.g. SVG) untouched.
"""

from __future__ import annotations

import io
import shutil
from pathlib import Path
from typing import List

from PIL import Image

from sitepipe import task
from sitepipe.config import SiteConfig
from sitepipe.logging import get_logger
from sitepipe.utils import expand_globs, static_base


log = get_logger("sitepipe.tasks.images")

JPEG_QUALITY_STEP = 5
RASTER = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tif", ".tiff"}


def _files(pattern: str, root: Path) -> List[Path]:
    return [p for p in expand_globs([pattern], root) if p.is_file()]


@task(
    name="generate_previews",
    inputs=lambda c: [c.previews.input],
    outputs=lambda c: [c.previews.output + "**/*.jpg"],
)
def generate_previews(config: SiteConfig):
    """Scale review images down to preview thumbnails."""
    opts = config.image
    base = config.path(static_base(config.previews.input))
    out_dir = config.path(config.previews.output)
    count = 0
    for src in _files(config.previews.input, Path(config.root)):
        if src.suffix.lower() not in RASTER:
            continue
        target = (out_dir / src.relative_to(base)).with_suffix(".jpg")
        target.parent.mkdir(parents=True, exist_ok=True)
        with Image.open(src) as img:
            img.thumbnail((opts.preview_max_width, opts.preview_max_height), Image.Resampling.LANCZOS)
            img.convert("RGB").save(target, opts.preview_format, quality=opts.jpeg_quality_max)
        count += 1
    log.info("Generated %d previews", count)


def _jpeg_bytes(img: Image.Image, quality: int) -> bytes:
    buf = io.BytesIO()
    img.save(buf, "JPEG", quality=quality, optimize=True, progressive=True)
    return buf.getvalue()


def recompress_jpeg(img: Image.Image, original_size: int, opts) -> bytes | None:
    """Step quality down from max to min; first encoding smaller than the source wins."""
    rgb = img.convert("RGB")
    quality = opts.jpeg_quality_max
    while quality >= opts.jpeg_quality_min:
        data = _jpeg_bytes(rgb, quality)
        if len(data) < original_size:
            return data
        quality -= JPEG_QUALITY_STEP
    return None


def optimize_file(src: Path, target: Path, config: SiteConfig) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    suffix = src.suffix.lower()
    if suffix not in (".jpg", ".jpeg", ".png", ".gif"):
        shutil.copy2(src, target)
        return
    size = src.stat().st_size
    with Image.open(src) as img:
        if suffix in (".jpg", ".jpeg"):
            data = recompress_jpeg(img, size, config.image)
        elif suffix == ".png":
            img.save(target, "PNG", optimize=True)
        else:
            img.save(target, "GIF", optimize=True, save_all=getattr(img, "is_animated", False))
    if suffix in (".jpg", ".jpeg"):
        if data is None:
            shutil.copy2(src, target)
        else:
            target.write_bytes(data)
        return
    # keep the original when recompression does not help
    if target.stat().st_size >= size:
        shutil.copy2(src, target)


@task(
    name="optimize_images",
    inputs=lambda c: [c.images.input],
    outputs=lambda c: [c.images.output + "**/*"],
)
def optimize_images(config: SiteConfig):
    """Recompress images into the output tree."""
    base = config.path(static_base(config.images.input))
    out_dir = config.path(config.images.output)
    files = _files(config.images.input, Path(config.root))
    for src in files:
        optimize_file(src, out_dir / src.relative_to(base), config)
    log.info("Optimized %d images", len(files))


@task(name="copy_images")
def copy_images(config: SiteConfig):
    """Copy images without optimisation."""
    base = config.path(static_base(config.images.input))
    out_dir = config.path(config.images.output)
    files = _files(config.images.input, Path(config.root))
    for src in files:
        target = out_dir / src.relative_to(base)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, target)
    log.info("Copied %d images", len(files))
