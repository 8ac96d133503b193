"""Tests for the site task bodies, with external tools replaced by fakes."""

import dataclasses
import ftplib
import json
import threading
from pathlib import Path

import httpx
import pytest
from PIL import Image

from sitepipe import Orchestrator, TaskStatus
from sitepipe.config import SiteConfig
from sitepipe.errors import ToolError
from sitepipe.tools import render, run_command
from sitetasks import deploy, images, scripts, server, styles
from sitetasks.clean import clean_dist
from sitetasks.files import copy_files
from sitetasks.images import copy_images, generate_previews, optimize_images
from sitetasks.pipelines import build_orchestrator, watch_rules
from sitetasks.validate import HtmlValidationError, validate_html


def write(path: Path, data="x"):
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, bytes):
        path.write_bytes(data)
    else:
        path.write_text(data)
    return path


def make_image(path: Path, size=(800, 600), fmt="PNG"):
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, (200, 30, 30)).save(path, fmt)
    return path


def single(config, fn):
    orch = Orchestrator(config)
    orch.add(fn._task_spec)
    return orch.run_sync(fn._task_spec.name, force=[fn._task_spec.name])


class TestFiles:
    def test_clean_dist(self, site_config, tmp_path):
        write(tmp_path / "dist" / "css" / "old.css")
        result = single(site_config, clean_dist)
        assert result.ok
        assert not (tmp_path / "dist").exists()

    def test_clean_dist_without_output(self, site_config):
        assert single(site_config, clean_dist).ok

    def test_copy_files(self, site_config, tmp_path):
        write(tmp_path / "src/copy/index.html", "<html></html>")
        write(tmp_path / "src/copy/docs/about.html", "<p>about</p>")
        assert single(site_config, copy_files).ok
        assert (tmp_path / "dist/index.html").read_text() == "<html></html>"
        assert (tmp_path / "dist/docs/about.html").exists()


class TestImages:
    def test_previews_are_bounded_jpegs(self, site_config, tmp_path):
        make_image(tmp_path / "src/img/reviews/r1.png")
        write(tmp_path / "src/img/reviews/readme.txt")

        assert single(site_config, generate_previews).ok

        out = tmp_path / "dist/img/previews/r1.jpg"
        with Image.open(out) as img:
            assert img.format == "JPEG"
            assert img.size == (200, 150)
        assert not (tmp_path / "dist/img/previews/readme.jpg").exists()

    def test_optimize_images(self, site_config, tmp_path):
        make_image(tmp_path / "src/img/photo.jpg", fmt="JPEG")
        make_image(tmp_path / "src/img/icons/dot.png", size=(16, 16))
        write(tmp_path / "src/img/logo.svg", "<svg/>")

        assert single(site_config, optimize_images).ok

        assert (tmp_path / "dist/img/photo.jpg").exists()
        assert (tmp_path / "dist/img/icons/dot.png").exists()
        assert (tmp_path / "dist/img/logo.svg").read_text() == "<svg/>"
        assert (tmp_path / "dist/img/photo.jpg").stat().st_size <= (tmp_path / "src/img/photo.jpg").stat().st_size

    def test_copy_images(self, site_config, tmp_path):
        src = make_image(tmp_path / "src/img/a/b.png", size=(4, 4))
        assert single(site_config, copy_images).ok
        assert (tmp_path / "dist/img/a/b.png").read_bytes() == src.read_bytes()

    def test_jpeg_quality_steps_down_to_minimum(self, site_config, monkeypatch):
        tried = []

        def fake_encode(img, quality):
            tried.append(quality)
            return b"x" * 100

        monkeypatch.setattr(images, "_jpeg_bytes", fake_encode)
        with Image.new("RGB", (8, 8)) as img:
            assert images.recompress_jpeg(img, 50, site_config.image) is None
            assert tried == [80, 75, 70]

            tried.clear()
            assert images.recompress_jpeg(img, 101, site_config.image) == b"x" * 100
            assert tried == [80]

    def test_high_quality_jpeg_is_shrunk(self, site_config, tmp_path):
        src = tmp_path / "src/img/noise.jpg"
        src.parent.mkdir(parents=True)
        Image.effect_noise((128, 128), 64).convert("RGB").save(src, "JPEG", quality=100)

        target = tmp_path / "dist/img/noise.jpg"
        images.optimize_file(src, target, site_config)

        assert target.stat().st_size < src.stat().st_size
        with Image.open(target) as img:
            assert img.format == "JPEG"


class TestScripts:
    def test_build_scripts(self, site_config, tmp_path, monkeypatch):
        write(tmp_path / "src/js/main.js", "window.onload = init;\n")
        write(tmp_path / "src/js/vendor/b.js", "var b = 2;\n")
        write(tmp_path / "src/js/vendor/a.js", "var a = 1;\n")

        async def fake_minify(template, data, suffix, **values):
            assert template == site_config.tools.js_minify
            return data.replace(b" ", b"")

        monkeypatch.setattr(scripts, "transform_bytes", fake_minify)

        assert single(site_config, scripts.build_scripts).ok

        out = tmp_path / "dist/js"
        assert (out / "main.js").read_text() == "window.onload = init;\n"
        assert (out / "main.min.js").read_text() == "window.onload=init;\n"
        assert (out / "vendor.js").read_text() == "var a = 1;\nvar b = 2;\n"
        assert (out / "vendor.min.js").read_text() == "vara=1;\nvarb=2;\n"

    def test_minifier_failure_fails_task(self, site_config, tmp_path, monkeypatch):
        write(tmp_path / "src/js/main.js", "syntax error(")

        async def broken(template, data, suffix, **values):
            raise ToolError(["terser"], 1, "Unexpected token")

        monkeypatch.setattr(scripts, "transform_bytes", broken)
        result = single(site_config, scripts.build_scripts)
        assert result.status == TaskStatus.FAILED
        assert "Unexpected token" in str(result.error)


class TestStyles:
    def test_build_styles(self, site_config, tmp_path, monkeypatch):
        write(tmp_path / "src/sass/main.scss", "body { color: red; }")
        write(tmp_path / "src/sass/pages/home.sass", "h1\n  margin: 0")
        write(tmp_path / "src/sass/_vars.scss", "$c: red;")
        compiled = []

        async def fake_sass(argv, cwd=None, stdin=None):
            src, dest = Path(argv[-2]), Path(argv[-1])
            compiled.append(src.name)
            assert "--style=expanded" in argv
            dest.write_text(f"/* {src.name} */\n" + src.read_text())
            return b""

        prefixed = []

        async def fake_transform(template, data, suffix, **values):
            if template == site_config.tools.autoprefix:
                prefixed.append(data)
                return b"/* prefixed */\n" + data
            assert values == {"style": "compressed"}
            return data.replace(b"\n", b"")

        monkeypatch.setattr(styles, "run_command", fake_sass)
        monkeypatch.setattr(styles, "transform_bytes", fake_transform)

        assert single(site_config, styles.build_styles).ok

        assert sorted(compiled) == ["home.sass", "main.scss"]
        out = tmp_path / "dist/css"
        assert len(prefixed) == 2
        assert (out / "main.css").read_text().startswith("/* prefixed */\n/* main.scss */")
        assert "\n" not in (out / "main.min.css").read_text()
        assert (out / "pages/home.css").exists()
        assert (out / "pages/home.min.css").exists()
        assert not (out / "_vars.css").exists()

    def test_empty_autoprefix_skips_prefixing(self, site_config, tmp_path, monkeypatch):
        write(tmp_path / "src/sass/main.scss", "a { b: c; }")
        config = dataclasses.replace(
            site_config, tools=dataclasses.replace(site_config.tools, autoprefix=())
        )
        templates = []

        async def fake_sass(argv, cwd=None, stdin=None):
            Path(argv[-1]).write_text("a{b:c}")
            return b""

        async def fake_transform(template, data, suffix, **values):
            templates.append(template)
            return data

        monkeypatch.setattr(styles, "run_command", fake_sass)
        monkeypatch.setattr(styles, "transform_bytes", fake_transform)

        assert single(config, styles.build_styles).ok
        assert templates == [config.tools.sass]


class TestValidate:
    @staticmethod
    def client(bad_marker="BAD"):
        def handler(request: httpx.Request) -> httpx.Response:
            body = request.content.decode()
            messages = [{"type": "info", "message": "fine"}]
            if bad_marker in body:
                messages.append({"type": "error", "lastLine": 3, "message": "Stray end tag"})
            return httpx.Response(200, json={"messages": messages})

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_valid_pages_pass(self, site_config, tmp_path):
        write(tmp_path / "dist/index.html", "<!doctype html><title>ok</title>")
        await validate_html(site_config, client=self.client())

    @pytest.mark.asyncio
    async def test_errors_fail_with_locations(self, site_config, tmp_path):
        write(tmp_path / "dist/index.html", "<!doctype html><title>ok</title>")
        write(tmp_path / "dist/about/index.html", "BAD")
        with pytest.raises(HtmlValidationError) as exc:
            await validate_html(site_config, client=self.client())
        (problem,) = exc.value.problems
        assert "about" in problem and ":3:" in problem and "Stray end tag" in problem

    @pytest.mark.asyncio
    async def test_no_pages_is_not_an_error(self, site_config):
        await validate_html(site_config, client=self.client())


class FakeFTP:
    lock = threading.Lock()

    def __init__(self, log):
        self.log = log
        self.dirs = log.setdefault("dirs", set())

    def mkd(self, d):
        with self.lock:
            if d in self.dirs:
                raise ftplib.error_perm("550 Directory exists")
            self.dirs.add(d)

    def storbinary(self, cmd, f):
        with self.lock:
            self.log.setdefault("stored", {})[cmd.split(" ", 1)[1]] = f.read()

    def quit(self):
        with self.lock:
            self.log["quits"] = self.log.get("quits", 0) + 1


class TestDeploy:
    def ftp_config(self, site_config, **kw):
        return dataclasses.replace(
            site_config, ftp=dataclasses.replace(site_config.ftp, host="ftp.example", user="u", **kw)
        )

    def test_upload_ftp(self, site_config, tmp_path):
        write(tmp_path / "dist/index.html", "home")
        write(tmp_path / "dist/css/main.css", "css")
        write(tmp_path / "dist/img/previews/r.jpg", b"\xff\xd8")
        log = {}
        config = self.ftp_config(site_config, parallel=2)

        deploy.upload_ftp(config, connect=lambda opts: FakeFTP(log))

        assert log["stored"] == {
            "/public_html/index.html": b"home",
            "/public_html/css/main.css": b"css",
            "/public_html/img/previews/r.jpg": b"\xff\xd8",
        }
        assert "/public_html/img/previews" in log["dirs"]
        assert log["quits"] == 2

    def test_upload_requires_host(self, site_config, tmp_path):
        write(tmp_path / "dist/index.html")
        with pytest.raises(ValueError, match="SITEPIPE_FTP_HOST"):
            deploy.upload_ftp(site_config)

    def test_upload_requires_files(self, site_config):
        with pytest.raises(FileNotFoundError):
            deploy.upload_ftp(self.ftp_config(site_config), connect=lambda opts: FakeFTP({}))

    @pytest.mark.asyncio
    async def test_publish_git(self, site_config, tmp_path, monkeypatch):
        write(tmp_path / "dist/index.html")
        calls = []

        async def fake_run(argv, cwd=None, stdin=None):
            calls.append((argv, cwd))
            return b""

        monkeypatch.setattr(deploy, "run_command", fake_run)
        await deploy.publish_git(site_config)

        (argv, cwd), = calls
        assert argv[0] == "ghp-import"
        assert argv[-1] == str(tmp_path / "dist/")
        assert cwd == tmp_path

    @pytest.mark.asyncio
    async def test_publish_git_without_output(self, site_config):
        with pytest.raises(FileNotFoundError):
            await deploy.publish_git(site_config)


class TestServer:
    def test_serves_output_and_reload_token(self, tmp_path):
        write(tmp_path / "index.html", "<h1>home</h1>")
        write(tmp_path / "blog/index.html", "<h1>blog</h1>")
        token = server.ReloadToken()
        client = server.create_app(tmp_path, token).test_client()

        assert client.get("/").data == b"<h1>home</h1>"
        assert client.get("/blog/").data == b"<h1>blog</h1>"
        assert client.get("/missing.css").status_code == 404
        assert json.loads(client.get("/__reload").data) == {"token": 0}
        token.bump()
        assert json.loads(client.get("/__reload").data) == {"token": 1}

    def test_start_and_reload(self, tmp_path):
        write(tmp_path / "dist/index.html", "hi")
        config = SiteConfig(root=str(tmp_path), server=dataclasses.replace(SiteConfig().server, port=0))
        orch = Orchestrator(config)
        orch.add(server.start_server._task_spec)
        orch.add(server.reload_browser._task_spec)
        try:
            assert orch.run_sync("start_server").ok
            srv = server.active_server()
            assert srv is not None
            assert orch.run_sync("reload_browser").ok
            assert srv.token.value == 1
            resp = httpx.get(srv.url + "__reload", trust_env=False)
            assert resp.json() == {"token": 1}
        finally:
            server.stop_server()
        assert server.active_server() is None


class TestTools:
    def test_render(self):
        assert render(("sass", "--style={style}", "{src}"), style="compressed", src=Path("a.scss")) == [
            "sass",
            "--style=compressed",
            "a.scss",
        ]

    @pytest.mark.asyncio
    async def test_missing_command(self):
        with pytest.raises(ToolError) as exc:
            await run_command(["definitely-not-a-real-tool-xyz"])
        assert exc.value.returncode == 127


class TestPipelines:
    def test_registry(self, site_config):
        orch = build_orchestrator(site_config)
        assert set(orch.tasks) == {
            "clean_dist",
            "build_styles",
            "build_scripts",
            "generate_previews",
            "optimize_images",
            "copy_images",
            "copy_files",
            "validate_html",
            "start_server",
            "reload_browser",
            "publish_git",
            "upload_ftp",
        }
        assert set(orch.compositions) == {"assets", "default", "build", "watch", "deploy_git", "deploy_ftp"}
        for name in orch.compositions:
            orch.validate(name)

    def test_watch_rules_are_valid(self, site_config):
        orch = build_orchestrator(site_config)
        for full in (True, False):
            for rule in watch_rules(site_config, full=full):
                orch.validate(rule.action)
        (rule,) = watch_rules(site_config, full=True)
        assert rule.matches("src/sass/main.scss")

    @pytest.mark.parametrize("pipeline,final", [("deploy_git", "publish_git"), ("deploy_ftp", "upload_ftp")])
    def test_validation_failure_blocks_deploy(self, site_config, pipeline, final):
        orch = build_orchestrator(site_config)
        ran = []
        for name, t in orch.tasks.items():
            t.spec = None
            t.body = (lambda n: lambda: ran.append(n))(name)

        def invalid():
            raise RuntimeError("HTML validation error(s) found")

        orch.tasks["validate_html"].body = invalid

        result = orch.run_sync(pipeline)

        assert not result.ok
        assert result.failure().failed_names == ["validate_html"]
        assert final not in ran
        assert ran[0] == "clean_dist"
        assert {"build_styles", "build_scripts", "optimize_images"} <= set(ran)
