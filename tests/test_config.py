import yaml

from pltracker.core.config import Config, default_config, diff_config


def test_creates_default_config(tmp_path):
    path = tmp_path / "conf" / "config.yaml"
    config = Config(config_path=str(path))
    assert path.exists()
    assert config.tracker["concurrency"] == 3
    assert config.browser["existing_tab_timeout"] == 10000
    assert config.data["api"]["port"] == 8765


def test_merges_defaults_and_substitutes_env(tmp_path, monkeypatch):
    monkeypatch.setenv("PL_SESSION", "secret-cookie")
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({
        "tracker": {"origin": "https://us.prairielearn.com", "cookies": {"pl_authn": "${PL_SESSION}"}},
        "database": {"path": "~/tracker.db"},
    }))

    config = Config(config_path=str(path))

    assert config.tracker["cookies"] == {"pl_authn": "secret-cookie"}
    assert config.tracker["refresh_interval"] == default_config()["tracker"]["refresh_interval"]
    assert not config.data["database"]["path"].startswith("~")


def test_env_file_does_not_override_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("PL_A", "from-env")
    monkeypatch.delenv("PL_B", raising=False)
    (tmp_path / ".env").write_text("PL_A=from-file\nPL_B='file-only'\n# comment\n")
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"tracker": {"user_agent": "$PL_A", "origin": "${PL_B}"}}))

    config = Config(config_path=str(path))

    assert config.tracker["user_agent"] == "from-env"
    assert config.tracker["origin"] == "file-only"


def test_invalid_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    config = Config(config_path=str(path))
    assert config.data == default_config()


def test_reload_notifies_callbacks(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"tracker": {"concurrency": 2}}))
    config = Config(config_path=str(path))
    seen = []
    config.register_change_callback(lambda data: seen.append(data["tracker"]["concurrency"]))

    path.write_text(yaml.dump({"tracker": {"concurrency": 5}}))
    config.reload()

    assert seen == [5]
    assert config.tracker["concurrency"] == 5


def test_diff_config_masks_secrets():
    old = default_config()
    new = default_config()
    new["tracker"]["cookies"] = {"pl_authn": "abc123"}
    new["tracker"]["concurrency"] = 4

    changes = diff_config(old, new)

    assert "changed tracker.cookies" in changes
    assert "changed tracker.concurrency: 3 -> 4" in changes
    assert not any("abc123" in change for change in changes)
