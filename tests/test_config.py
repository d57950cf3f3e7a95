import logging
import os

import pytest

import timet_viewer as tv


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for var in ("TIMET_CONFIG_HOME", "XDG_CONFIG_HOME", "TIMET_API_KEY", "TIMET_COMMIT", "MOCK_FETCH"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


def _write_config(directory, body='api:\n  endpoint: "timet.test/api"\n'):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "config.yaml"
    path.write_text(body, encoding="utf-8")
    return path


def test_config_dir_precedence(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    assert tv.locate_config_dir() == os.path.join(str(tmp_path / "home"), ".config", "timet")
    monkeypatch.setenv("XDG_CONFIG_HOME", "/xdg")
    assert tv.locate_config_dir() == os.path.join("/xdg", "timet")
    monkeypatch.setenv("TIMET_CONFIG_HOME", "/custom")
    assert tv.locate_config_dir() == os.path.join("/custom", "timet")


def test_load_config_from_default_location(monkeypatch, tmp_path):
    monkeypatch.setenv("TIMET_CONFIG_HOME", str(tmp_path))
    monkeypatch.setenv("TIMET_API_KEY", "secret")
    monkeypatch.setenv("TIMET_COMMIT", "abc123")
    _write_config(tmp_path / "timet")
    cfg = tv.load_config()
    assert cfg.endpoint == "timet.test/api"
    assert cfg.api_key == "secret"
    assert cfg.config_location == str(tmp_path / "timet")
    assert (cfg.version, cfg.commit) == (tv.__version__, "abc123")


def test_api_key_from_dotenv(tmp_path):
    path = _write_config(tmp_path / "cfg")
    (tmp_path / "cfg" / ".env").write_text("# comment\nOTHER=1\nTIMET_API_KEY='from-file'\n", encoding="utf-8")
    cfg = tv.load_config(str(path))
    assert cfg.api_key == "from-file"
    assert cfg.commit == "dev"


def test_missing_key_is_config_error(tmp_path):
    path = _write_config(tmp_path / "cfg")
    with pytest.raises(tv.ConfigError, match="TIMET_API_KEY"):
        tv.load_config(str(path))
    assert tv.load_config(str(path), require_key=False).api_key == ""


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(tv.ConfigError, match="not found"):
        tv.load_config(str(tmp_path / "absent.yaml"))


@pytest.mark.parametrize('body', ["", "api: {}\n", "api: just-a-string\n", "- a\n- b\n"])
def test_missing_endpoint_is_config_error(tmp_path, monkeypatch, body):
    monkeypatch.setenv("TIMET_API_KEY", "k")
    path = _write_config(tmp_path / "cfg", body)
    with pytest.raises(tv.ConfigError):
        tv.load_config(str(path))


def test_malformed_yaml_is_config_error(tmp_path):
    path = _write_config(tmp_path / "cfg", "api: [unclosed\n")
    with pytest.raises(tv.ConfigError, match="cannot read"):
        tv.load_config(str(path))


def test_unreadable_config_is_config_error(tmp_path):
    # A directory in place of the file fails to open with an OSError.
    path = tmp_path / "cfg" / "config.yaml"
    path.mkdir(parents=True)
    with pytest.raises(tv.ConfigError, match="cannot read"):
        tv.load_config(str(path))


def test_main_exits_cleanly_on_malformed_config(monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("TIMET_CONFIG_HOME", str(tmp_path))
    _write_config(tmp_path / "timet", "api: [unclosed\n")
    assert tv.main(["--no-ui"]) == 1
    assert "cannot read" in capsys.readouterr().err


def test_setup_logging_resets_handlers(tmp_path):
    log_path = tmp_path / "logs" / "timet.log"
    tv.setup_logging(str(log_path), "INFO")
    tv.setup_logging(str(log_path), "WARNING")
    handlers = tv.logger.handlers
    try:
        assert len(handlers) == 1
        assert handlers[0].level == logging.WARNING
        assert handlers[0].maxBytes == 2000000
        tv.logger.warning("hello")
        handlers[0].flush()
        assert "hello" in log_path.read_text(encoding="utf-8")
    finally:
        for h in list(tv.logger.handlers):
            tv.logger.removeHandler(h)
            h.close()
