"""File watching: re-run a composition when matching paths change.

A watchdog Observer thread publishes ChangeEvents into an EventChannel; the
Watcher consumes the channel on the event loop, debounces per rule and runs the
rule's action. While an action is running, further triggers collapse into a
single pending re-run.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .logging import get_logger
from .utils import matches_any, normalize, static_base

if TYPE_CHECKING:
    from .core import Node, Orchestrator, RunResult


CREATED = "created"
MODIFIED = "modified"
DELETED = "deleted"
MOVED = "moved"


@dataclass(frozen=True)
class ChangeEvent:
    path: str
    kind: str


@dataclass(frozen=True)
class WatchRule:
    patterns: tuple
    action: "Node"

    def __init__(self, patterns: Sequence[str] | str, action: "Node"):
        if isinstance(patterns, str):
            patterns = (patterns,)
        # ordered, without duplicates
        object.__setattr__(self, "patterns", tuple(dict.fromkeys(patterns)))
        object.__setattr__(self, "action", action)

    def matches(self, path: str) -> bool:
        return matches_any(path, self.patterns)


class EventChannel:
    """Queue of ChangeEvents; `publish` is safe to call from any thread."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()

    def publish(self, event: ChangeEvent) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def get(self) -> Optional[ChangeEvent]:
        return await self._queue.get()

    def empty(self) -> bool:
        return self._queue.empty()

    def close(self) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, None)


class ChannelEventHandler(FileSystemEventHandler):
    """Forwards watchdog events into an EventChannel with root-relative paths."""

    def __init__(self, channel: EventChannel, root: Path):
        super().__init__()
        self.channel = channel
        self.root = root.resolve()

    def _relative(self, src: str | bytes) -> str:
        p = Path(src.decode() if isinstance(src, bytes) else src).resolve()
        try:
            return normalize(p.relative_to(self.root))
        except ValueError:
            return normalize(p)

    def on_created(self, event: FileSystemEvent):
        self.channel.publish(ChangeEvent(self._relative(event.src_path), CREATED))

    def on_modified(self, event: FileSystemEvent):
        # Directory mtime changes duplicate the file events beneath them
        if event.is_directory:
            return
        self.channel.publish(ChangeEvent(self._relative(event.src_path), MODIFIED))

    def on_deleted(self, event: FileSystemEvent):
        self.channel.publish(ChangeEvent(self._relative(event.src_path), DELETED))

    def on_moved(self, event: FileSystemEvent):
        self.channel.publish(ChangeEvent(self._relative(event.src_path), MOVED))
        self.channel.publish(ChangeEvent(self._relative(event.dest_path), MOVED))


@dataclass
class _RuleState:
    rule: WatchRule
    timer: Optional[asyncio.TimerHandle] = None
    running: Optional[asyncio.Task] = None
    pending: bool = False
    runs: int = 0
    results: List["RunResult"] = field(default_factory=list)


class Watcher:
    def __init__(self, orchestrator: "Orchestrator", rules: Sequence[WatchRule], debounce: float = 0.2):
        self.orchestrator = orchestrator
        self.rules = list(rules)
        self.debounce = debounce
        self.logger = get_logger("sitepipe.watch")
        self.channel: Optional[EventChannel] = None
        self.observer: Optional[Observer] = None
        self._states: Dict[int, _RuleState] = {}
        self._consumer: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # -- lifecycle ----------------------------------------------------------

    def start(self, observe: bool = True) -> None:
        """Start consuming events; with `observe`, also start the Observer.

        Must be called from within the running event loop.
        """
        for rule in self.rules:
            self.orchestrator.validate(rule.action)
        self._loop = asyncio.get_running_loop()
        self.channel = EventChannel(self._loop)
        self._states = {i: _RuleState(rule) for i, rule in enumerate(self.rules)}
        self._consumer = self._loop.create_task(self._consume())
        if observe:
            self._start_observer()

    def _start_observer(self) -> None:
        root = Path(self.orchestrator.config.root)
        handler = ChannelEventHandler(self.channel, root)
        self.observer = Observer()
        scheduled: set[Path] = set()
        for rule in self.rules:
            for pattern in rule.patterns:
                base = static_base(normalize(root / pattern))
                if not base.is_dir():
                    self.logger.warning("Watch path does not exist: %s", base)
                    continue
                if base in scheduled:
                    continue
                scheduled.add(base)
                self.observer.schedule(handler, str(base), recursive=True)
                self.logger.info("Watching %s", base)
        self.observer.start()

    async def stop(self) -> None:
        """Stop observing and wait for in-flight runs to finish."""
        if self.observer is not None:
            self.observer.stop()
            await asyncio.to_thread(self.observer.join)
            self.observer = None
        for state in self._states.values():
            if state.timer is not None:
                state.timer.cancel()
                state.timer = None
            state.pending = False
        if self.channel is not None:
            self.channel.close()
        if self._consumer is not None:
            await self._consumer
            self._consumer = None
        running = [s.running for s in self._states.values() if s.running is not None]
        if running:
            await asyncio.gather(*running)

    async def serve_forever(self) -> None:
        """Block until cancelled (e.g. Ctrl-C), then stop cleanly."""
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    # -- events -------------------------------------------------------------

    def notify(self, path: str, kind: str = MODIFIED) -> None:
        """Feed an event by hand (used by tests and by non-watchdog sources)."""
        if self.channel is None:
            raise RuntimeError("Watcher is not started")
        self.channel.publish(ChangeEvent(normalize(path), kind))

    async def _consume(self) -> None:
        while True:
            event = await self.channel.get()
            if event is None:
                return
            for state in self._states.values():
                if state.rule.matches(event.path):
                    self.logger.debug("Change %s (%s)", event.path, event.kind)
                    self._arm(state)

    def _arm(self, state: _RuleState) -> None:
        if state.timer is not None:
            state.timer.cancel()
        state.timer = self._loop.call_later(self.debounce, self._fire, state)

    def _fire(self, state: _RuleState) -> None:
        state.timer = None
        if state.running is not None and not state.running.done():
            if not state.pending:
                self.logger.info("Run in flight, queueing one re-run")
            state.pending = True
            return
        self._launch(state)

    def _launch(self, state: _RuleState) -> None:
        state.runs += 1
        state.running = self._loop.create_task(self._run(state))

    async def _run(self, state: _RuleState) -> None:
        label = self.orchestrator._label(state.rule.action)
        self.logger.info("Change detected, running %s", label)
        try:
            result = await self.orchestrator.run(state.rule.action)
        except Exception:
            self.logger.exception("Watch run of %s raised", label)
        else:
            state.results.append(result)
            if not result.ok:
                self.logger.error(
                    "Watch run of %s failed: %s",
                    label,
                    ", ".join(r.path for r in result.failed_leaves()),
                )
        finally:
            if state.pending:
                state.pending = False
                self._launch(state)

    # -- introspection ------------------------------------------------------

    def run_count(self, index: int = 0) -> int:
        return self._states[index].runs

    def results(self, index: int = 0) -> List["RunResult"]:
        return list(self._states[index].results)

    async def idle(self) -> None:
        """Wait until no timers are armed and no runs are in flight or pending."""
        while True:
            # let queued callbacks and events reach the consumer first
            await asyncio.sleep(0.01)
            if self.channel is not None and not self.channel.empty():
                continue
            busy = [
                s for s in self._states.values()
                if s.timer is not None or s.pending or (s.running is not None and not s.running.done())
            ]
            if not busy:
                return
