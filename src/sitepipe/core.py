from __future__ import annotations

import asyncio
import contextlib
import importlib
import inspect
import json
import pkgutil
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from . import cache as cache_mod
from .config import SiteConfig
from .errors import (
    CompletionError,
    CompositionFailure,
    CycleError,
    DuplicateNameError,
    TaskFailure,
    UnknownTaskError,
)
from .logging import get_logger, run_log, task_logger
from .utils import expand_globs


# Allow static lists or callables that build paths from the site config
PathSpec = Union[List[str], Callable[[SiteConfig], List[str]]]


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class TaskSpec:
    name: str
    fn: Callable[..., Any]
    inputs: PathSpec = field(default_factory=list)
    outputs: PathSpec = field(default_factory=list)
    description: str = ""


def task(
    name: str,
    inputs: PathSpec | None = None,
    outputs: PathSpec | None = None,
    description: str | None = None,
):
    """Decorator to declare a task on a function.

    The wrapped function receives the `SiteConfig` as its only argument and may
    be a plain function or a coroutine function. When both `inputs` and
    `outputs` are given the task is skipped while its outputs are up to date.
    """

    def deco(fn: Callable[..., Any]):
        doc = (fn.__doc__ or "").strip().splitlines()
        spec = TaskSpec(
            name=name,
            fn=fn,
            inputs=inputs or [],
            outputs=outputs or [],
            description=description or (doc[0] if doc else ""),
        )
        setattr(fn, "_task_spec", spec)
        return fn

    return deco


def discover_tasks(package: str) -> Dict[str, TaskSpec]:
    """Import all modules of `package` and collect decorated functions."""
    log = get_logger("sitepipe.discover")
    pkg = importlib.import_module(package)
    specs: Dict[str, TaskSpec] = {}
    for m in pkgutil.iter_modules(pkg.__path__, prefix=f"{package}."):
        mod = importlib.import_module(m.name)
        for attr_name in dir(mod):
            spec = getattr(getattr(mod, attr_name), "_task_spec", None)
            if isinstance(spec, TaskSpec):
                if spec.name in specs and specs[spec.name].fn is not spec.fn:
                    raise DuplicateNameError(spec.name)
                specs[spec.name] = spec
    log.debug("Discovered %d tasks in %s", len(specs), package)
    return specs


@dataclass(eq=False)
class Task:
    """A registered unit of work. `body` is called with no arguments.

    `status` is the last status any run observed for this task. Runs may
    overlap, so per-run status is only reliable on that run's RunResult.
    """

    name: str
    body: Callable[..., Any]
    description: str = ""
    spec: Optional[TaskSpec] = None
    status: TaskStatus = TaskStatus.PENDING


@dataclass(frozen=True)
class Series:
    children: tuple
    name: Optional[str] = None


@dataclass(frozen=True)
class Parallel:
    children: tuple
    name: Optional[str] = None


Node = Union[Task, Series, Parallel, str]


def series(*nodes: Node, name: str | None = None) -> Series:
    return Series(children=tuple(nodes), name=name)


def parallel(*nodes: Node, name: str | None = None) -> Parallel:
    return Parallel(children=tuple(nodes), name=name)


class CompletionLatch:
    """Single-use completion signal handed to callback-style task bodies.

    `latch()` signals success, `latch(error)` failure. It may be called from any
    thread; a second call raises CompletionError and leaves the first result.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, name: str):
        self.name = name
        self._loop = loop
        self._future: asyncio.Future = loop.create_future()
        self._lock = threading.Lock()
        self._signalled = False

    @property
    def signalled(self) -> bool:
        return self._signalled

    def __call__(self, error: object = None) -> None:
        with self._lock:
            if self._signalled:
                get_logger("sitepipe.orchestrator").error(
                    "Task '%s' signalled completion twice, keeping the first result", self.name
                )
                raise CompletionError(f"Task '{self.name}' signalled completion twice")
            self._signalled = True
        self._loop.call_soon_threadsafe(self._resolve, error)

    def _resolve(self, error: object) -> None:
        if not self._future.done():
            self._future.set_result(error)

    async def wait(self, timeout: float | None = None) -> object:
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)


def _wants_done(body: Callable[..., Any]) -> bool:
    try:
        params = inspect.signature(body).parameters
    except (TypeError, ValueError):
        return False
    return "done" in params


@dataclass
class RunResult:
    name: str
    path: str
    kind: str
    status: TaskStatus = TaskStatus.PENDING
    error: Any = None
    cached: bool = False
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    children: List["RunResult"] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == TaskStatus.SUCCEEDED

    @property
    def started(self) -> bool:
        return self.started_at is not None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def walk(self) -> Iterable["RunResult"]:
        yield self
        for child in self.children:
            yield from child.walk()

    def find(self, name: str) -> Optional["RunResult"]:
        """First result in the tree with this name (depth first)."""
        for r in self.walk():
            if r.name == name:
                return r
        return None

    def failed_leaves(self) -> List["RunResult"]:
        return [r for r in self.walk() if r.kind == "task" and r.status == TaskStatus.FAILED]

    def failure(self) -> TaskFailure | CompositionFailure | None:
        if self.ok:
            return None
        if self.kind == "task":
            return TaskFailure(self.name, self.error, path=self.path)
        leaves = [TaskFailure(r.name, r.error, path=r.path) for r in self.failed_leaves()]
        return CompositionFailure(self.name, leaves, path=self.path)

    def raise_for_failure(self) -> None:
        err = self.failure()
        if err is not None:
            raise err

    def to_dict(self) -> dict:
        out: dict = {
            "name": self.name,
            "path": self.path,
            "kind": self.kind,
            "status": self.status.value,
        }
        if self.cached:
            out["cached"] = True
        if self.error is not None:
            out["error"] = str(self.error)
        if self.duration is not None:
            out["duration"] = round(self.duration, 3)
        if self.children:
            out["children"] = [c.to_dict() for c in self.children]
        return out


class RunContext:
    """State owned by one invocation of `Orchestrator.run`."""

    def __init__(self, root: str, force: set[str]):
        self.root = root
        self.force = force
        self.run_id = time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]
        self.started: List[str] = []
        self.finished: List[str] = []
        self._result: Optional[RunResult] = None

    def complete(self, result: RunResult) -> None:
        if self._result is not None:
            raise CompletionError(f"Run {self.run_id} completed twice")
        self._result = result

    @property
    def result(self) -> Optional[RunResult]:
        return self._result


def _child_paths(parent: str, labels: List[str]) -> List[str]:
    seen: Dict[str, int] = {}
    for label in labels:
        seen[label] = seen.get(label, 0) + 1
    out = []
    for i, label in enumerate(labels):
        out.append(f"{parent}/{label}#{i}" if seen[label] > 1 else f"{parent}/{label}")
    return out


class Orchestrator:
    def __init__(
        self,
        config: SiteConfig | None = None,
        runs_dir: str | Path | None = None,
        cache_dir: str | Path | None = None,
        completion_timeout: float | None = None,
    ):
        self.config = config or SiteConfig()
        self.runs_dir = Path(runs_dir) if runs_dir else None
        self.cache_dir = Path(cache_dir or self.config.path(cache_mod.CACHE_DIR))
        self.completion_timeout = completion_timeout
        self.tasks: Dict[str, Task] = {}
        self.compositions: Dict[str, Union[Series, Parallel, Task]] = {}
        self.logger = get_logger("sitepipe.orchestrator")

    # -- registry -----------------------------------------------------------

    def _check_free(self, name: str) -> None:
        if name in self.tasks or name in self.compositions:
            raise DuplicateNameError(name)

    def register(
        self, name: str, body: Callable[..., Any], description: str = ""
    ) -> Task:
        self._check_free(name)
        t = Task(name=name, body=body, description=description)
        self.tasks[name] = t
        return t

    def add(self, spec: TaskSpec) -> Task:
        """Register a decorated task, binding the site config as its argument."""
        self._check_free(spec.name)
        t = Task(
            name=spec.name,
            body=partial(spec.fn, self.config),
            description=spec.description,
            spec=spec,
        )
        self.tasks[spec.name] = t
        return t

    def define(self, name: str, node: Node) -> Node:
        """Register a named composition (or alias) usable by name elsewhere."""
        self._check_free(name)
        if isinstance(node, (Series, Parallel)) and node.name is None:
            node = replace(node, name=name)
        self.compositions[name] = node
        return node

    def get(self, name: str) -> Node:
        if name in self.tasks:
            return self.tasks[name]
        if name in self.compositions:
            return self.compositions[name]
        raise UnknownTaskError(name)

    def names(self) -> List[str]:
        return sorted(list(self.tasks) + list(self.compositions))

    series = staticmethod(series)
    parallel = staticmethod(parallel)

    # -- validation ---------------------------------------------------------

    def _label(self, node: Node) -> str:
        if isinstance(node, str):
            return node
        if isinstance(node, Task):
            return node.name
        if node.name:
            return node.name
        return "series" if isinstance(node, Series) else "parallel"

    def validate(self, node: Node, _stack: Optional[List[str]] = None) -> None:
        """Resolve every name reachable from `node`; raise on unknown or cyclic."""
        stack = _stack or []
        if isinstance(node, str):
            if node in stack:
                raise CycleError(stack[stack.index(node):] + [node])
            target = self.get(node)
            self.validate(target, stack + [node])
        elif isinstance(node, (Series, Parallel)):
            for child in node.children:
                self.validate(child, stack)
        elif not isinstance(node, Task):
            raise TypeError(f"Not a task or composition: {node!r}")

    # -- execution ----------------------------------------------------------

    async def run(self, node: Node, force: Iterable[str] | None = None) -> RunResult:
        """Run `node` to completion and return its result tree.

        Task failures are reported in the result, never raised; call
        `raise_for_failure()` on the result to turn them into exceptions.
        """
        self.validate(node)
        root = self._label(node)
        ctx = RunContext(root, set(force or ()))
        run_dir = self._run_dir(ctx)
        log_ctx = run_log(run_dir / "run.log", ctx.run_id) if run_dir else contextlib.nullcontext()
        with log_ctx:
            self.logger.info("Run %s (%s)", root, ctx.run_id)
            result = await self._execute(node, root, root, ctx)
            ctx.complete(result)
            if result.ok:
                self.logger.info("Finished %s in %.2fs", root, result.duration or 0.0)
            else:
                names = ", ".join(r.path for r in result.failed_leaves())
                self.logger.error("Failed %s: %s", root, names)
        if run_dir:
            self._write_state(run_dir, ctx, result)
        return result

    def run_sync(self, node: Node, force: Iterable[str] | None = None) -> RunResult:
        return asyncio.run(self.run(node, force=force))

    async def _execute(self, node: Node, name: str, path: str, ctx: RunContext) -> RunResult:
        if isinstance(node, str):
            return await self._execute(self.get(node), node, path, ctx)
        if isinstance(node, Task):
            return await self._run_task(node, path, ctx)
        if isinstance(node, Series):
            return await self._run_series(node, name, path, ctx)
        return await self._run_parallel(node, name, path, ctx)

    def _children(self, node: Union[Series, Parallel], path: str):
        labels = [self._label(c) for c in node.children]
        return list(zip(node.children, labels, _child_paths(path, labels)))

    async def _run_series(self, node: Series, name: str, path: str, ctx: RunContext) -> RunResult:
        result = RunResult(name=name, path=path, kind="series", status=TaskStatus.RUNNING)
        result.started_at = time.time()
        children = self._children(node, path)
        # Placeholders so unstarted children still show up as pending
        result.children = [RunResult(name=lbl, path=p, kind=self._kind(c)) for c, lbl, p in children]
        for i, (child, label, child_path) in enumerate(children):
            child_result = await self._execute(child, label, child_path, ctx)
            result.children[i] = child_result
            if not child_result.ok:
                result.status = TaskStatus.FAILED
                result.error = child_result.failure()
                break
        else:
            result.status = TaskStatus.SUCCEEDED
        result.finished_at = time.time()
        return result

    async def _run_parallel(self, node: Parallel, name: str, path: str, ctx: RunContext) -> RunResult:
        result = RunResult(name=name, path=path, kind="parallel", status=TaskStatus.RUNNING)
        result.started_at = time.time()
        children = self._children(node, path)
        # Siblings are never cancelled: every child runs to its own end
        result.children = list(
            await asyncio.gather(
                *(self._execute(child, label, p, ctx) for child, label, p in children)
            )
        )
        failed = [c for c in result.children if not c.ok]
        if failed:
            result.status = TaskStatus.FAILED
            result.error = result.failure()
        else:
            result.status = TaskStatus.SUCCEEDED
        result.finished_at = time.time()
        return result

    def _kind(self, node: Node) -> str:
        if isinstance(node, str):
            node = self.get(node)
        if isinstance(node, Task):
            return "task"
        return "series" if isinstance(node, Series) else "parallel"

    async def _run_task(self, t: Task, path: str, ctx: RunContext) -> RunResult:
        log = task_logger(ctx.root, t.name)
        result = RunResult(name=t.name, path=path, kind="task", status=TaskStatus.RUNNING)
        result.started_at = time.time()
        ctx.started.append(path)
        t.status = TaskStatus.RUNNING
        try:
            task_hash = None
            outputs: List[Path] = []
            if t.spec is not None and t.spec.inputs and t.spec.outputs:
                task_hash, outputs = await asyncio.to_thread(self._task_hash, t.spec)
                if t.name not in ctx.force and cache_mod.is_cached(
                    self.cache_dir, t.name, task_hash, outputs
                ):
                    log.info("Skip (cached): %s", t.name)
                    result.cached = True
                    result.status = TaskStatus.SUCCEEDED
                    return result
            log.info("Run: %s", t.name)
            await self._invoke(t)
            if task_hash is not None:
                outputs = await asyncio.to_thread(self._outputs, t.spec)
                cache_mod.write_record(self.cache_dir, t.name, task_hash, outputs)

            result.status = TaskStatus.SUCCEEDED
        except Exception as e:  # noqa: BLE001
            result.status = TaskStatus.FAILED
            result.error = e.reason if isinstance(e, TaskFailure) else e
            log.error("Task failed (%s): %s", path, e, exc_info=not isinstance(e, CompletionError))
        finally:
            result.finished_at = time.time()
            t.status = result.status
            ctx.finished.append(path)
            if result.ok and not result.cached:
                log.info("Done: %s (%.2fs)", t.name, result.duration or 0.0)
        return result

    async def _invoke(self, t: Task) -> None:
        body = t.body
        if _wants_done(body):
            latch = CompletionLatch(asyncio.get_running_loop(), t.name)
            try:
                if inspect.iscoroutinefunction(body):
                    await body(done=latch)
                else:
                    ret = await asyncio.to_thread(body, done=latch)
                    if inspect.isawaitable(ret):
                        await ret
            except CompletionError:
                # a repeated signal; the first one decides the outcome
                if not latch.signalled:
                    raise
            if not latch.signalled:
                self.logger.warning(
                    "Task '%s' returned without signalling completion", t.name
                )
            try:
                error = await latch.wait(self.completion_timeout)
            except asyncio.TimeoutError:
                raise CompletionError(
                    f"Task '{t.name}' never signalled completion"
                ) from None
            if error is not None:
                if isinstance(error, BaseException):
                    raise error
                raise TaskFailure(t.name, error)
            return
        if inspect.iscoroutinefunction(body):
            await body()
            return
        ret = await asyncio.to_thread(body)
        if inspect.isawaitable(ret):
            await ret

    def _task_hash(self, spec: TaskSpec) -> tuple[str, List[Path]]:
        root = Path(self.config.root)
        inputs = expand_globs(_resolve_paths(spec.inputs, self.config), root)
        code_path = Path(inspect.getsourcefile(spec.fn) or "")
        task_hash = cache_mod.compute_task_hash(
            name=spec.name,
            input_paths=[p for p in inputs if p.is_file()],
            code_paths=[code_path] if code_path.is_file() else [],
            config=self.config.as_dict(),
        )
        return task_hash, self._outputs(spec)

    def _outputs(self, spec: TaskSpec) -> List[Path]:
        found = expand_globs(_resolve_paths(spec.outputs, self.config), Path(self.config.root))
        return [p for p in found if p.is_file()]

    def _run_dir(self, ctx: RunContext) -> Optional[Path]:
        if self.runs_dir is None:
            return None
        return self.runs_dir / ctx.root / ctx.run_id

    def _write_state(self, run_dir: Path, ctx: RunContext, result: RunResult) -> None:
        run_dir.mkdir(parents=True, exist_ok=True)
        state = {"run_id": ctx.run_id, "root": ctx.root, "result": result.to_dict()}
        with open(run_dir / "state.json", "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2)

    # -- watch --------------------------------------------------------------

    def watch(self, rules, debounce: float | None = None, observe: bool = True):
        """Start watching; returns the running Watcher (see `sitepipe.watch`)."""
        from .watch import Watcher

        w = Watcher(
            self,
            rules,
            debounce=self.config.watch_debounce if debounce is None else debounce,
        )
        w.start(observe=observe)
        return w


def _resolve_paths(paths_spec: PathSpec, config: SiteConfig) -> list[str]:
    """Resolve a static list of paths or a callable(config) into a list[str]."""
    paths = paths_spec(config) if callable(paths_spec) else paths_spec
    return [str(p) for p in paths or []]
