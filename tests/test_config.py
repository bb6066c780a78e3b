"""Tests for configuration loading."""

import json

import pytest

from termgate.config import (
    DEFAULT_MAX_SESSIONS,
    DEFAULT_SESSION_TIMEOUT_MS,
    config_from_env,
    deep_merge,
    find_config_file,
    load_settings,
    parse_bool,
    parse_list,
)


class TestParsing:

    @pytest.mark.parametrize("value, expected", [
        ("a, b ,,c ", ["a", "b", "c"]),
        ("", []),
        (None, []),
        (["x", " y "], ["x", "y"]),
    ])
    def test_parse_list(self, value, expected):
        assert parse_list(value) == expected

    @pytest.mark.parametrize("value, expected", [
        ("true", True), ("1", True), ("YES", True), (True, True),
        ("false", False), ("0", False), ("", False), (False, False),
    ])
    def test_parse_bool(self, value, expected):
        assert parse_bool(value) is expected

    def test_deep_merge(self):
        target = {"terminal": {"shell": "/bin/bash", "max_sessions": 5}, "port": 3000}
        source = {"terminal": {"shell": "/bin/zsh"}, "port": 8080}
        assert deep_merge(target, source) == {
            "terminal": {"shell": "/bin/zsh", "max_sessions": 5},
            "port": 8080,
        }
        assert target["terminal"]["shell"] == "/bin/bash"


class TestConfigFile:

    def test_priority(self, tmp_path):
        (tmp_path / "config.yaml").write_text("port: 1\n")
        assert find_config_file(tmp_path, "production").name == "config.yaml"

        (tmp_path / "config.production.json").write_text("{}")
        assert find_config_file(tmp_path, "production").name == "config.production.json"

        (tmp_path / "config.local.yml").write_text("port: 3\n")
        assert find_config_file(tmp_path, "production").name == "config.local.yml"

    def test_no_file(self, tmp_path):
        assert find_config_file(tmp_path, "development") is None


class TestLoadSettings:

    def test_defaults(self, tmp_path):
        settings = load_settings(tmp_path, environ={"SHELL": "/bin/zsh"})

        assert settings.host == "127.0.0.1"
        assert settings.port == 3000
        assert settings.terminal.session_timeout == DEFAULT_SESSION_TIMEOUT_MS
        assert settings.terminal.session_timeout_seconds == 1800
        assert settings.terminal.cleanup_interval_seconds == 300
        assert settings.terminal.max_sessions == DEFAULT_MAX_SESSIONS
        assert settings.terminal.folder_shortcuts == []
        assert settings.auth.enabled is False
        assert settings.config_path is None

    def test_yaml_file(self, tmp_path):
        (tmp_path / "config.yaml").write_text(
            "port: 4000\n"
            "terminal:\n"
            "  shell: /bin/sh\n"
            "  max_sessions: 2\n"
            "  folder_shortcuts: [~/src, /tmp]\n"
            "auth:\n"
            "  enabled: true\n"
            "  users:\n"
            "    alice:\n"
            "      password_hash: xyz\n"
        )
        settings = load_settings(tmp_path, environ={})

        assert settings.port == 4000
        assert settings.terminal.shell == "/bin/sh"
        assert settings.terminal.max_sessions == 2
        assert settings.terminal.folder_shortcuts == ["~/src", "/tmp"]
        assert settings.auth.enabled is True
        assert settings.auth.users == {"alice": {"password_hash": "xyz"}}
        assert settings.config_path == tmp_path / "config.yaml"

    def test_env_file_selected_by_environment(self, tmp_path):
        (tmp_path / "config.yaml").write_text("port: 1\n")
        (tmp_path / "config.staging.json").write_text(json.dumps({"port": 2}))

        assert load_settings(tmp_path, environ={"TERMGATE_ENV": "staging"}).port == 2
        assert load_settings(tmp_path, environ={}).port == 1

    def test_environment_overrides_file(self, tmp_path):
        (tmp_path / "config.yaml").write_text(
            "terminal:\n"
            "  shell: /bin/sh\n"
            "  max_sessions: 2\n"
        )
        settings = load_settings(tmp_path, environ={
            "PORT": "9000",
            "TERMINAL_MAX_SESSIONS": "7",
            "TERMINAL_SESSION_TIMEOUT": "60000",
            "FAV_CMDS": "git status, make test",
            "AUTH_ENABLE": "true",
            "AUTH_ALLOWED_EMAILS": "a@example.com,b@example.com",
        })

        assert settings.port == 9000
        assert settings.terminal.shell == "/bin/sh"  # kept from the file
        assert settings.terminal.max_sessions == 7
        assert settings.terminal.session_timeout_seconds == 60
        assert settings.terminal.favorite_commands == ["git status", "make test"]
        assert settings.auth.enabled is True
        assert settings.auth.allowed_identities == ["a@example.com", "b@example.com"]

    def test_broken_file_falls_back_to_environment(self, tmp_path):
        (tmp_path / "config.yaml").write_text("- just\n- a list\n")
        settings = load_settings(tmp_path, environ={"PORT": "5000"})

        assert settings.port == 5000
        assert settings.config_path is None

    def test_config_from_env_ignores_unset(self):
        assert config_from_env({}) == {"terminal": {}, "auth": {}}
