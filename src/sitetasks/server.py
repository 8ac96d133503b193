"""Local dev server for the output tree.

`start_server` serves the reload directory with Flask on a background werkzeug
server. `reload_browser` bumps a token exposed at `/__reload`; pages can poll
it and refresh when it changes.
"""

from __future__ import annotations

import itertools
import threading
from pathlib import Path
from typing import Optional

from flask import Flask, abort, jsonify, send_from_directory
from werkzeug.serving import BaseWSGIServer, make_server

from sitepipe import task
from sitepipe.config import SiteConfig
from sitepipe.logging import get_logger


log = get_logger("sitepipe.tasks.server")


class ReloadToken:
    def __init__(self):
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self.value = 0

    def bump(self) -> int:
        with self._lock:
            self.value = next(self._counter)
            return self.value


def create_app(root: Path, token: ReloadToken) -> Flask:
    app = Flask(__name__, static_folder=None)
    root = Path(root).resolve()

    @app.get("/__reload")
    def reload_state():
        return jsonify({"token": token.value})

    @app.get("/")
    @app.get("/<path:path>")
    def static_file(path: str = ""):
        target = root / path
        if target.is_dir():
            path = (Path(path) / "index.html").as_posix()
            target = root / path
        if not target.is_file():
            abort(404)
        return send_from_directory(root, path)

    return app


class DevServer:
    def __init__(self, root: Path, host: str, port: int):
        self.root = Path(root)
        self.token = ReloadToken()
        self.app = create_app(self.root, self.token)
        self._server: BaseWSGIServer = make_server(host, port, self.app, threaded=True)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def url(self) -> str:
        return f"http://{self._server.host}:{self._server.server_port}/"

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._server.shutdown()
        self._thread.join(timeout=5)


_active: Optional[DevServer] = None


def active_server() -> Optional[DevServer]:
    return _active


def stop_server() -> None:
    global _active
    if _active is not None:
        _active.stop()
        _active = None


@task(name="start_server")
def start_server(config: SiteConfig, done):
    """Serve the output folder locally."""
    global _active
    if _active is None:
        _active = DevServer(config.path(config.reload), config.server.host, config.server.port)
        _active.start()
        log.info("Serving %s at %s", _active.root, _active.url)
    done()


@task(name="reload_browser")
def reload_browser(config: SiteConfig):
    """Tell connected pages to reload."""
    if _active is None:
        log.debug("No dev server running, nothing to reload")
        return
    value = _active.token.bump()
    log.info("Reload #%d", value)
