import asyncio

import pytest

from sitepipe.config import SiteConfig
from sitepipe.core import Orchestrator


@pytest.fixture
def site_config(tmp_path):
    return SiteConfig(root=str(tmp_path), runs_dir=None)


@pytest.fixture
def orch(site_config):
    return Orchestrator(site_config)


class Recorder:
    """Builds task bodies that log start/end events in order."""

    def __init__(self):
        self.events = []

    def started(self, name):
        return ("start", name) in self.events

    def finished(self, name):
        return ("end", name) in self.events

    def ok(self, name, delay=0.0):
        async def body():
            self.events.append(("start", name))
            await asyncio.sleep(delay)
            self.events.append(("end", name))

        return body

    def fail(self, name, reason="boom", delay=0.0):
        async def body():
            self.events.append(("start", name))
            await asyncio.sleep(delay)
            self.events.append(("end", name))
            raise RuntimeError(reason)

        return body


@pytest.fixture
def recorder():
    return Recorder()
