from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Iterable


CACHE_DIR = ".sitepipe-cache"


def file_digest(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _entry(path: Path) -> dict:
    entry: dict = {"path": path.as_posix()}
    if path.is_file():
        st = path.stat()
        entry["digest"] = file_digest(path)
        entry["size"] = st.st_size
    else:
        entry["digest"] = None
        entry["size"] = None
    return entry


def compute_task_hash(
    name: str, input_paths: Iterable[Path], code_paths: Iterable[Path], config: dict
) -> str:
    """Hash of everything a task's output depends on.

    Inputs and code are hashed by content, so touching a file without changing
    it does not invalidate the cache.
    """
    payload: dict = {
        "name": name,
        "inputs": [_entry(Path(p)) for p in sorted({str(p) for p in input_paths})],
        "code": [_entry(Path(p)) for p in sorted({str(p) for p in code_paths})],
        "config": config,
    }
    data = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _record_path(cache_dir: Path, name: str) -> Path:
    return cache_dir / f"{name}.json"


def is_cached(
    cache_dir: Path, name: str, task_hash: str, output_paths: Iterable[Path]
) -> bool:
    outputs = list(output_paths)
    if not outputs:
        return False
    if not all(p.exists() for p in outputs):
        return False
    record = _record_path(cache_dir, name)
    if not record.exists():
        return False
    try:
        data = json.loads(record.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return False
    if data.get("hash") != task_hash:
        return False
    return sorted(data.get("outputs", [])) == sorted(p.as_posix() for p in outputs)


def write_record(
    cache_dir: Path, name: str, task_hash: str, output_paths: Iterable[Path]
) -> None:
    cache_dir.mkdir(parents=True, exist_ok=True)
    record = {"hash": task_hash, "outputs": sorted(p.as_posix() for p in output_paths)}
    _record_path(cache_dir, name).write_text(json.dumps(record, indent=2), encoding="utf-8")


def invalidate(cache_dir: Path, name: str | None = None) -> None:
    """Drop the record for one task, or all records."""
    if name is not None:
        _record_path(cache_dir, name).unlink(missing_ok=True)
        return
    if cache_dir.exists():
        for p in cache_dir.glob("*.json"):
            p.unlink()
