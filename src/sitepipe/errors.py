"""
Error classes for sitepipe.

Registration-time errors (DuplicateNameError, UnknownTaskError, CycleError) are
programmer errors and are raised eagerly, before any task body starts.

Run-time errors are reported, not raised, by the orchestrator:
- TaskFailure: a task body signalled failure
- CompositionFailure: one or more leaf tasks inside a Series/Parallel failed

`RunResult.raise_for_failure()` turns a failed result into one of these.
"""

from __future__ import annotations


class SitepipeError(Exception):
    """Base exception for sitepipe."""

    pass


class DuplicateNameError(SitepipeError):
    """A task or composition with this name is already registered."""

    def __init__(self, name: str):
        super().__init__(f"Name already registered: {name}")
        self.name = name


class UnknownTaskError(SitepipeError, KeyError):
    """A composition references a name that is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Unknown task or composition: {name}")
        self.name = name

    def __str__(self) -> str:
        return self.args[0]


class CycleError(SitepipeError):
    """Named compositions reference each other in a loop."""

    def __init__(self, chain: list[str]):
        super().__init__("Cycle detected in compositions: " + " -> ".join(chain))
        self.chain = chain


class CompletionError(SitepipeError):
    """A task body broke the single-signal completion contract."""

    pass


class ToolError(SitepipeError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: list[str], returncode: int, stderr: str = ""):
        tail = stderr.strip().splitlines()[-5:]
        msg = f"{command[0]} exited with status {returncode}"
        if tail:
            msg += ": " + " | ".join(tail)
        super().__init__(msg)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class TaskFailure(SitepipeError):
    """
    A task body signalled failure.

    `reason` is whatever the body reported (an exception or a string) and is
    forwarded for reporting only.
    """

    def __init__(self, name: str, reason: object, path: str | None = None):
        self.name = name
        self.reason = reason
        self.path = path or name
        super().__init__(f"Task '{self.path}' failed: {reason}")


class CompositionFailure(SitepipeError):
    """
    One or more children of a Series/Parallel node failed.

    `failures` lists every failed leaf task, each carrying its path in the
    composition tree.
    """

    def __init__(self, name: str, failures: list[TaskFailure], path: str | None = None):
        self.name = name
        self.path = path or name
        self.failures = list(failures)
        names = ", ".join(f.path for f in self.failures) or "unknown"
        super().__init__(f"Composition '{self.path}' failed at: {names}")

    @property
    def failed_names(self) -> list[str]:
        return [f.name for f in self.failures]
