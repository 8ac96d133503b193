"""HTML validation against the W3C Nu checker.

Every `.html` file in the output tree is posted to the configured validator
(`?out=json`). Any message of type `error` fails the task; warnings and info
messages are logged only.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

import httpx

from sitepipe import task
from sitepipe.config import SiteConfig
from sitepipe.errors import SitepipeError
from sitepipe.logging import get_logger
from sitepipe.utils import expand_globs


log = get_logger("sitepipe.tasks.validate")


class HtmlValidationError(SitepipeError):
    """One or more HTML documents failed validation."""

    def __init__(self, problems: List[str]):
        super().__init__(f"HTML validation error(s) found: {len(problems)}\n" + "\n".join(problems))
        self.problems = problems


def format_message(path: Path, msg: dict) -> str:
    line = msg.get("lastLine") or msg.get("firstLine")
    where = f"{path}:{line}" if line else str(path)
    return f"{where}: {msg.get('message', '').strip()}"


async def check_document(client: httpx.AsyncClient, url: str, path: Path) -> List[str]:
    resp = await client.post(
        url,
        content=path.read_bytes(),
        headers={"Content-Type": "text/html; charset=utf-8"},
    )
    resp.raise_for_status()
    errors = []
    for msg in resp.json().get("messages", []):
        if msg.get("type") == "error" or msg.get("subType") == "fatal":
            errors.append(format_message(path, msg))
        else:
            log.debug(format_message(path, msg))
    return errors


@task(name="validate_html")
async def validate_html(config: SiteConfig, client: httpx.AsyncClient | None = None):
    """Validate generated HTML."""
    pages = [
        p
        for p in expand_globs([config.output.rstrip("/") + "/**/*.html"], Path(config.root))
        if p.is_file()
    ]
    if not pages:
        log.warning("No HTML files under %s", config.output)
        return
    problems: List[str] = []
    own_client = client is None
    client = client or httpx.AsyncClient(
        timeout=30.0, headers={"User-Agent": "sitepipe-validate"}
    )
    try:
        for page in pages:
            found = await check_document(client, config.validator_url, page)
            log.info("%s: %d error(s)", page, len(found))
            problems.extend(found)
    finally:
        if own_client:
            await client.aclose()
    if problems:
        raise HtmlValidationError(problems)
