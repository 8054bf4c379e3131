"""
Tests for trace_config.py module.
"""

import json

import pytest

from trace_config import DEFAULT_EXCLUDED_SYSCALLS, ConfigManager, EtraceConfig


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for variable in ("ETRACE_STRACE", "ETRACE_NEO4J_URI", "ETRACE_NEO4J_USER", "ETRACE_NEO4J_PASSWORD"):
        monkeypatch.delenv(variable, raising=False)


class TestConfigDefaults:
    """Tests for default configuration values."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = ConfigManager(tmp_path / "missing.json").get()
        assert config == EtraceConfig()

    def test_default_excluded_syscalls(self):
        assert EtraceConfig().excluded_syscalls == DEFAULT_EXCLUDED_SYSCALLS
        assert DEFAULT_EXCLUDED_SYSCALLS.startswith("!select,")

    def test_default_exclude_programs_are_copied(self):
        first, second = EtraceConfig(), EtraceConfig()
        first.exclude_programs.append("/extra")
        assert "/extra" not in second.exclude_programs


class TestConfigFile:
    """Tests for the JSON config file."""

    def test_overrides(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"strace_binary": "strace-static", "window_wait_attempts": 3}))
        config = ConfigManager(config_file).get()
        assert config.strace_binary == "strace-static"
        assert config.window_wait_attempts == 3
        assert config.merge_binary == "strace-log-merge"

    def test_unknown_keys_ignored(self, tmp_path, caplog):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"colour": "blue"}))
        config = ConfigManager(config_file).get()
        assert not hasattr(config, "colour")
        assert "colour" in caplog.text

    def test_invalid_json_ignored(self, tmp_path, caplog):
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")
        assert ConfigManager(config_file).get() == EtraceConfig()
        assert "Could not load config file" in caplog.text

    def test_non_object_ignored(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text("[1, 2]")
        assert ConfigManager(config_file).get() == EtraceConfig()

    def test_string_for_list_ignored(self, tmp_path, caplog):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"exclude_programs": "/usr/lib/snapd/*"}))
        config = ConfigManager(config_file).get()
        assert config.exclude_programs == EtraceConfig().exclude_programs
        assert "exclude_programs" in caplog.text

    def test_string_for_timeout_ignored(self, tmp_path, caplog):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"window_wait_timeout": "60"}))
        assert ConfigManager(config_file).get().window_wait_timeout == 60.0
        assert "window_wait_timeout" in caplog.text

    def test_int_timeout_becomes_float(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"window_wait_timeout": 30}))
        timeout = ConfigManager(config_file).get().window_wait_timeout
        assert timeout == 30.0
        assert isinstance(timeout, float)

    def test_wrong_types_ignored(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "window_wait_attempts": True,
            "drop_caches": 0,
            "exclude_programs": ["/snap/*", 3],
            "strace_binary": None,
        }))
        assert ConfigManager(config_file).get() == EtraceConfig()

    def test_valid_values_kept_beside_invalid(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"window_wait_timeout": "soon", "exclude_programs": ["/opt/*"]}))
        config = ConfigManager(config_file).get()
        assert config.exclude_programs == ["/opt/*"]
        assert config.window_wait_timeout == 60.0

    def test_save_round_trip(self, tmp_path):
        config_file = tmp_path / "nested" / "config.json"
        manager = ConfigManager(config_file)
        manager.config.drop_caches = False
        manager.save_config()
        assert ConfigManager(config_file).get().drop_caches is False


class TestConfigEnvironmentOverride:
    """Tests for environment variable overrides."""

    def test_strace_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ETRACE_STRACE", "/opt/strace")
        assert ConfigManager(tmp_path / "missing.json").get().strace_binary == "/opt/strace"

    def test_environment_beats_file(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"neo4j_uri": "bolt://file:7687"}))
        monkeypatch.setenv("ETRACE_NEO4J_URI", "bolt://env:7687")
        assert ConfigManager(config_file).get().neo4j_uri == "bolt://env:7687"

    def test_empty_variable_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ETRACE_NEO4J_USER", "")
        assert ConfigManager(tmp_path / "missing.json").get().neo4j_user == "neo4j"
