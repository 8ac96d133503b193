import dataclasses

import pytest
import yaml

from sitepipe.config import SiteConfig, from_dict, load_config


def test_defaults_mirror_path_table():
    cfg = SiteConfig()
    assert cfg.output == "dist/"
    assert cfg.styles.input == "src/sass/**/*.{scss,sass}"
    assert cfg.previews.output == "dist/img/previews/"
    assert cfg.ftp.remote_dir == "/public_html"


def test_config_is_immutable():
    cfg = SiteConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.output = "public/"
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.styles.output = "public/css/"


def test_load_yaml_over_defaults(tmp_path):
    path = tmp_path / "sitepipe.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "output": "public/",
                "styles": {"output": "public/css/"},
                "tools": {"js_minify": ["uglifyjs", "{src}", "-o", "{dest}"]},
                "server": {"port": 8080},
            }
        )
    )
    cfg = load_config(path, use_env=False)
    assert cfg.root == str(tmp_path)
    assert cfg.output == "public/"
    assert cfg.styles.output == "public/css/"
    assert cfg.styles.input == "src/sass/**/*.{scss,sass}"
    assert cfg.tools.js_minify == ("uglifyjs", "{src}", "-o", "{dest}")
    assert cfg.server.port == 8080
    assert cfg.path(cfg.output) == tmp_path / "public/"


def test_missing_file_gives_defaults(tmp_path):
    cfg = load_config(tmp_path / "nope.yaml", use_env=False)
    assert cfg.output == SiteConfig().output
    assert cfg.root == str(tmp_path)


def test_unknown_keys_rejected():
    with pytest.raises(ValueError):
        from_dict({"outptu": "x"})
    with pytest.raises(ValueError):
        from_dict({"styles": {"inptu": "x"}})
    with pytest.raises(ValueError):
        from_dict({"styles": "src/sass"})


def test_env_overrides_ftp_credentials(tmp_path, monkeypatch):
    path = tmp_path / "sitepipe.yaml"
    path.write_text(yaml.safe_dump({"ftp": {"host": "yaml.example", "user": "yaml"}}))
    monkeypatch.setenv("SITEPIPE_FTP_HOST", "env.example")
    monkeypatch.setenv("SITEPIPE_FTP_PASSWORD", "s3cret")
    monkeypatch.setenv("SITEPIPE_FTP_PORT", "2121")
    monkeypatch.delenv("SITEPIPE_FTP_USER", raising=False)

    cfg = load_config(path)

    assert cfg.ftp.host == "env.example"
    assert cfg.ftp.user == "yaml"
    assert cfg.ftp.password == "s3cret"
    assert cfg.ftp.port == 2121


def test_as_dict_omits_password():
    cfg = from_dict({"ftp": {"password": "hunter2"}})
    data = cfg.as_dict()
    assert "password" not in data["ftp"]
    assert data["tools"]["sass"][0] == "sass"
