"""Per-file transform chains.

An Asset is one file in flight: where it came from, its path relative to the
source base, and its current contents. A StepChain is an ordered list of steps
built once and applied to every asset; each step takes an Asset and returns an
Asset (a step that writes to disk returns its input unchanged).
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Union


@dataclass(frozen=True)
class Asset:
    path: Path
    base: Path
    contents: bytes

    @classmethod
    def read(cls, path: Path, base: Path) -> "Asset":
        return cls(path=Path(path), base=Path(base), contents=Path(path).read_bytes())

    @property
    def relative(self) -> Path:
        return self.path.relative_to(self.base)

    def with_contents(self, contents: bytes) -> "Asset":
        return replace(self, contents=contents)

    def with_suffix_tag(self, tag: str) -> "Asset":
        """`app.js` + `.min` -> `app.min.js`."""
        return replace(self, path=self.path.with_name(self.path.stem + tag + self.path.suffix))

    def write(self, dest_dir: Path) -> Path:
        target = Path(dest_dir) / self.relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.contents)
        return target


class FileInput:
    """A single source file; yields itself as one asset."""

    kind = "file"

    def __init__(self, path: Path, base: Path):
        self.path = Path(path)
        self.base = Path(base)

    def assets(self, pattern: str = "*") -> List[Asset]:
        return [Asset.read(self.path, self.base)]


class DirectoryInput:
    """A source directory; its matching children are concatenated into one
    asset named after the directory (`src/js/vendor/*.js` -> `vendor.js`)."""

    kind = "directory"

    def __init__(self, path: Path, base: Path):
        self.path = Path(path)
        self.base = Path(base)

    def assets(self, pattern: str = "*.js") -> List[Asset]:
        parts = sorted(p for p in self.path.glob(pattern) if p.is_file())
        if not parts:
            return []
        joined = b"\n".join(p.read_bytes().rstrip(b"\n") for p in parts) + b"\n"
        suffix = Path(pattern).suffix
        target = self.path.with_name(self.path.name + suffix)
        return [Asset(path=target, base=self.base, contents=joined)]


InputKind = Union[FileInput, DirectoryInput]


def classify(path: Path, base: Path) -> InputKind:
    path = Path(path)
    if path.is_dir():
        return DirectoryInput(path, base)
    return FileInput(path, base)


Step = Callable[[Asset], Union[Asset, Awaitable[Asset]]]


class StepChain:
    """Ordered, reusable sequence of asset transforms.

        chain = StepChain().then(write_to(out)).then(tag(".min")).then(minify)
        for asset in assets:
            await chain.apply(asset)
    """

    def __init__(self, steps: Iterable[Step] = ()):
        self.steps: List[Step] = list(steps)

    def then(self, step: Step) -> "StepChain":
        return StepChain(self.steps + [step])

    def __len__(self) -> int:
        return len(self.steps)

    async def apply(self, asset: Asset) -> Asset:
        for step in self.steps:
            out = step(asset)
            if inspect.isawaitable(out):
                out = await out
            asset = out
        return asset

    async def apply_all(self, assets: Iterable[Asset]) -> List[Asset]:
        return [await self.apply(a) for a in assets]


def write_to(dest_dir: Path) -> Step:
    def step(asset: Asset) -> Asset:
        asset.write(dest_dir)
        return asset

    return step


def tag(suffix: str) -> Step:
    return lambda asset: asset.with_suffix_tag(suffix)
