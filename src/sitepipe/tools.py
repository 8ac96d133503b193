"""Run external commands (sass, terser, ghp-import, ...) as task steps."""

from __future__ import annotations

import asyncio
import tempfile
from pathlib import Path
from typing import List, Sequence

from .errors import ToolError
from .logging import get_logger


log = get_logger("sitepipe.tools")


def render(template: Sequence[str], **values: object) -> List[str]:
    """Fill `{name}` placeholders in each argv token."""
    return [str(tok).format(**values) for tok in template]


async def run_command(
    argv: Sequence[str], cwd: Path | None = None, stdin: bytes | None = None
) -> bytes:
    """Run `argv`, return stdout; raise ToolError on non-zero exit."""
    if not argv:
        raise ValueError("Empty command")
    log.debug("exec: %s", " ".join(argv))
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.PIPE if stdin is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise ToolError(list(argv), 127, f"command not found: {argv[0]}") from None
    out, err = await proc.communicate(stdin)
    if proc.returncode != 0:
        raise ToolError(list(argv), proc.returncode, err.decode(errors="replace"))
    return out


async def transform_bytes(template: Sequence[str], data: bytes, suffix: str, **values: object) -> bytes:
    """Pipe `data` through a file-to-file command template.

    The template gets `{src}` and `{dest}` temp paths plus any extra `values`.
    """
    with tempfile.TemporaryDirectory(prefix="sitepipe-") as tmp:
        src = Path(tmp) / f"in{suffix}"
        dest = Path(tmp) / f"out{suffix}"
        src.write_bytes(data)
        argv = render(template, src=src, dest=dest, **values)
        await run_command(argv)
        return dest.read_bytes()
