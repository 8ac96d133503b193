from __future__ import annotations

"""Immutable site configuration built once at startup and passed to every task."""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict

import yaml
from dotenv import load_dotenv


DEFAULT_CONFIG_PATH = "sitepipe.yaml"


@dataclass(frozen=True)
class PathPair:
    input: str
    output: str


@dataclass(frozen=True)
class ToolCommands:
    # Each command is a list of argv tokens; {src}/{dest} are filled per file.
    sass: tuple = ("sass", "--no-source-map", "--style={style}", "{src}", "{dest}")
    autoprefix: tuple = ("postcss", "{src}", "--use", "autoprefixer", "--no-map", "--output", "{dest}")
    js_minify: tuple = ("terser", "{src}", "--compress", "--mangle", "--output", "{dest}")
    ghpages: tuple = ("ghp-import", "--no-jekyll", "--push", "--force", "{dir}")


@dataclass(frozen=True)
class ImageOptions:
    jpeg_quality_min: int = 70
    jpeg_quality_max: int = 80
    preview_max_width: int = 200
    preview_max_height: int = 200
    preview_format: str = "JPEG"


@dataclass(frozen=True)
class ServerOptions:
    host: str = "127.0.0.1"
    port: int = 3000


@dataclass(frozen=True)
class FtpOptions:
    host: str = ""
    port: int = 21
    user: str = ""
    password: str = ""
    remote_dir: str = "/public_html"
    parallel: int = 5
    timeout: float = 30.0


@dataclass(frozen=True)
class SiteConfig:
    input: str = "src/"
    output: str = "dist/"
    reload: str = "dist/"
    deploy_src: str = "dist/**/*"
    scripts: PathPair = PathPair("src/js/*", "dist/js/")
    styles: PathPair = PathPair("src/sass/**/*.{scss,sass}", "dist/css/")
    images: PathPair = PathPair("src/img/**/*", "dist/img/")
    previews: PathPair = PathPair("src/img/reviews/**/*", "dist/img/previews/")
    copy: PathPair = PathPair("src/copy/**/*", "dist/")
    tools: ToolCommands = field(default_factory=ToolCommands)
    image: ImageOptions = field(default_factory=ImageOptions)
    server: ServerOptions = field(default_factory=ServerOptions)
    ftp: FtpOptions = field(default_factory=FtpOptions)
    validator_url: str = "https://validator.w3.org/nu/?out=json"
    watch_debounce: float = 0.2
    runs_dir: str | None = "runs"
    root: str = "."

    def path(self, rel: str) -> Path:
        """Resolve a configured path relative to the project root."""
        return Path(self.root) / rel

    def as_dict(self) -> dict:
        """Plain-dict view, used as the config part of cache hashes."""
        out: Dict[str, object] = {}
        for f in fields(self):
            val = getattr(self, f.name)
            if hasattr(val, "__dataclass_fields__"):
                val = {k.name: _plain(getattr(val, k.name)) for k in fields(val)}
                # never hash credentials
                val.pop("password", None)
            out[f.name] = _plain(val)
        return out


def _plain(val):
    if isinstance(val, tuple):
        return list(val)
    return val


_NESTED = {
    "scripts": PathPair,
    "styles": PathPair,
    "images": PathPair,
    "previews": PathPair,
    "copy": PathPair,
    "tools": ToolCommands,
    "image": ImageOptions,
    "server": ServerOptions,
    "ftp": FtpOptions,
}


def _build_nested(cls, default, raw: dict):
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"Unknown keys for {cls.__name__}: {sorted(unknown)}")
    values = {}
    for k, v in raw.items():
        values[k] = tuple(v) if isinstance(v, list) else v
    return replace(default, **values)


def from_dict(raw: dict, root: str | Path = ".") -> SiteConfig:
    base = SiteConfig(root=str(root))
    known = {f.name for f in fields(SiteConfig)}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"Unknown config keys: {sorted(unknown)}")
    values = {}
    for key, val in raw.items():
        if key in _NESTED:
            if not isinstance(val, dict):
                raise ValueError(f"Config section '{key}' must be a mapping")
            values[key] = _build_nested(_NESTED[key], getattr(base, key), val)
        else:
            values[key] = val
    return replace(base, **values)


def _apply_env(cfg: SiteConfig) -> SiteConfig:
    env = {
        "host": os.getenv("SITEPIPE_FTP_HOST"),
        "user": os.getenv("SITEPIPE_FTP_USER"),
        "password": os.getenv("SITEPIPE_FTP_PASSWORD"),
    }
    port = os.getenv("SITEPIPE_FTP_PORT")
    overrides = {k: v for k, v in env.items() if v}
    if port:
        overrides["port"] = int(port)
    if not overrides:
        return cfg
    return replace(cfg, ftp=replace(cfg.ftp, **overrides))


def load_config(path: str | Path = DEFAULT_CONFIG_PATH, use_env: bool = True) -> SiteConfig:
    """Load YAML config merged over defaults; a missing file yields defaults.

    FTP credentials are read from SITEPIPE_FTP_* variables (a `.env` file in the
    working directory is honoured) and take precedence over the YAML values.
    """
    p = Path(path)
    raw: dict = {}
    if p.exists():
        with open(p, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {p} must contain a mapping")
    raw.setdefault("root", str(p.parent))
    cfg = from_dict(raw, root=raw.pop("root"))
    if use_env:
        load_dotenv()
        cfg = _apply_env(cfg)
    return cfg
