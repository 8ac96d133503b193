from __future__ import annotations

import contextlib
import contextvars
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator
import os


ROOT_LOGGER = "sitepipe"
_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
_configured = False

# id of the run whose code is executing; asyncio tasks and to_thread inherit it
current_run: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "sitepipe_run", default=None
)


def _ensure_base_logger() -> None:
    global _configured
    if _configured:
        return
    level = os.getenv("SITEPIPE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=_FORMAT)
    _configured = True


def _file_handler(log_file: Path) -> RotatingFileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3)
    handler.setFormatter(logging.Formatter(_FORMAT))
    return handler


def get_logger(name: str, log_file: Path | None = None) -> logging.Logger:
    _ensure_base_logger()
    logger = logging.getLogger(name)
    # One handler per file, however often the logger is requested
    if log_file is not None:
        target = os.path.abspath(log_file)
        if not any(getattr(h, "baseFilename", None) == target for h in logger.handlers):
            logger.addHandler(_file_handler(Path(log_file)))
    return logger


def task_logger(node: str, task: str) -> logging.Logger:
    return get_logger(f"{ROOT_LOGGER}.run.{node}.{task}")


class RunFilter(logging.Filter):
    """Pass only records emitted while `run_id` is the current run."""

    def __init__(self, run_id: str):
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        return current_run.get() == self.run_id


@contextlib.contextmanager
def run_log(log_file: Path, run_id: str) -> Iterator[Path]:
    """Write the sitepipe records of run `run_id` to `log_file`.

    Runs overlapping in the same process each get only their own records.
    """
    _ensure_base_logger()
    logger = logging.getLogger(ROOT_LOGGER)
    handler = _file_handler(Path(log_file))
    handler.addFilter(RunFilter(run_id))
    token = current_run.set(run_id)
    logger.addHandler(handler)
    try:
        yield Path(log_file)
    finally:
        logger.removeHandler(handler)
        handler.close()
        current_run.reset(token)
