from mcsupervisor.core import config


def test_missing_settings_file_is_empty(tmp_path):
    assert config.load_supervisor_settings(tmp_path / "nope.yml") == {}


def test_settings_file_is_loaded(tmp_path):
    path = tmp_path / "supervisor.yml"
    path.write_text("stop_grace_seconds: 12\nlog_buffer_lines: 200\n", encoding="utf-8")

    assert config.load_supervisor_settings(path) == {"stop_grace_seconds": 12, "log_buffer_lines": 200}


def test_invalid_or_non_mapping_yaml_is_ignored(tmp_path):
    broken = tmp_path / "broken.yml"
    broken.write_text("stop_grace_seconds: [1, 2\n", encoding="utf-8")
    listing = tmp_path / "list.yml"
    listing.write_text("- a\n- b\n", encoding="utf-8")

    assert config.load_supervisor_settings(broken) == {}
    assert config.load_supervisor_settings(listing) == {}


def test_setting_precedence(monkeypatch):
    monkeypatch.setattr(config, "_settings", {"stop_grace_seconds": 12})
    monkeypatch.delenv("SUPERVISOR_STOP_GRACE_SEC", raising=False)
    assert config._setting("stop_grace_seconds", "SUPERVISOR_STOP_GRACE_SEC", 30.0) == 12.0

    monkeypatch.setenv("SUPERVISOR_STOP_GRACE_SEC", "7.5")
    assert config._setting("stop_grace_seconds", "SUPERVISOR_STOP_GRACE_SEC", 30.0) == 7.5

    monkeypatch.setattr(config, "_settings", {})
    monkeypatch.delenv("SUPERVISOR_STOP_GRACE_SEC")
    assert config._setting("stop_grace_seconds", "SUPERVISOR_STOP_GRACE_SEC", 30.0) == 30.0


def test_invalid_setting_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("LOG_BUFFER_LINES", "plenty")
    assert config._setting("log_buffer_lines", "LOG_BUFFER_LINES", 500) == 500
